import json
import logging
from typing import AsyncIterator

import httpx

from cubechat.config import ChatConfig
from cubechat.models import GenerateChunk, GenerateRequest, ModelInfo

logger = logging.getLogger(__name__)

GENERATE_PATH = "/api/generate"
TAGS_PATH = "/api/tags"

DEFAULT_MODELS = (
    ModelInfo(
        name="llama2",
        description="General purpose open model for chat and code generation",
        temperature=0.7,
        max_tokens=2048,
    ),
    ModelInfo(
        name="mistral",
        description="Efficient open model, strong on code and reasoning",
        temperature=0.5,
        max_tokens=4096,
    ),
    ModelInfo(
        name="codellama",
        description="Model tuned for code generation and understanding",
        temperature=0.3,
        max_tokens=4096,
    ),
)


class OllamaError(Exception):
    pass


class OllamaStatusError(OllamaError):
    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        message = f"Ollama returned HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ModelUnavailableError(Exception):
    pass


def _error_detail(body: bytes) -> str:
    text = body.decode("utf-8", errors="replace").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text[:500]
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return text[:500]


class OllamaClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 300.0,
        connect_timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.connect_timeout = connect_timeout
        self._timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def stream_generate(self, request: GenerateRequest) -> AsyncIterator[bytes]:
        try:
            async with self.client.stream("POST", GENERATE_PATH, json=request.to_payload()) as response:
                if response.is_error:
                    raise OllamaStatusError(response.status_code, _error_detail(await response.aread()))
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.TimeoutException as e:
            raise OllamaError(f"Request to {self.base_url}{GENERATE_PATH} timed out") from e
        except httpx.HTTPError as e:
            raise OllamaError(f"Request to {self.base_url}{GENERATE_PATH} failed: {e}") from e

    async def generate(self, request: GenerateRequest) -> GenerateChunk:
        payload = request.model_copy(update={"stream": False}).to_payload()
        try:
            response = await self.client.post(GENERATE_PATH, json=payload)
        except httpx.TimeoutException as e:
            raise OllamaError(f"Request to {self.base_url}{GENERATE_PATH} timed out") from e
        except httpx.HTTPError as e:
            raise OllamaError(f"Request to {self.base_url}{GENERATE_PATH} failed: {e}") from e
        if response.is_error:
            raise OllamaStatusError(response.status_code, _error_detail(response.content))
        try:
            chunk = GenerateChunk.model_validate(response.json())
        except ValueError as e:
            raise OllamaError(f"Invalid response from {GENERATE_PATH}: {e}") from e
        if chunk.error:
            raise OllamaError(chunk.error)
        return chunk

    async def list_models(self) -> list[ModelInfo]:
        try:
            response = await self.client.get(TAGS_PATH)
        except httpx.HTTPError as e:
            raise OllamaError(f"Request to {self.base_url}{TAGS_PATH} failed: {e}") from e
        if response.is_error:
            raise OllamaStatusError(response.status_code, _error_detail(response.content))
        try:
            data = response.json()
        except ValueError as e:
            raise OllamaError(f"Invalid response from {TAGS_PATH}: {e}") from e

        models: list[ModelInfo] = []
        for item in data.get("models") or []:
            name = item.get("name") if isinstance(item, dict) else None
            if not name:
                continue
            models.append(
                ModelInfo(
                    name=name,
                    description=f"Ollama model: {name}",
                    is_available=True,
                )
            )
        return models

    async def ping(self) -> bool:
        try:
            response = await self.client.get(TAGS_PATH, timeout=self.connect_timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Ollama ping to {self.base_url} failed: {e}")
            return False
        return response.is_success

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


class OllamaConnection:
    """Connection state and model selection for one Ollama server."""

    def __init__(self, config: ChatConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport
        self.client = self._build_client()
        self.connected = False
        self.available_models: list[ModelInfo] = [m.model_copy() for m in DEFAULT_MODELS]
        self.current_model: str | None = config.model

    def _build_client(self) -> OllamaClient:
        return OllamaClient(
            self.config.base_url,
            timeout=self.config.request_timeout,
            connect_timeout=self.config.connect_timeout,
            transport=self._transport,
        )

    async def connect(self, host: str | None = None, port: int | None = None) -> None:
        if host is not None or port is not None:
            await self.client.aclose()
            if host is not None:
                self.config.ollama_host = host
            if port is not None:
                self.config.ollama_port = port
            self.client = self._build_client()

        if not await self.client.ping():
            self.connected = False
            raise OllamaError(f"Cannot connect to Ollama at {self.config.base_url}")

        self.connected = True
        logger.info(f"Connected to Ollama at {self.config.base_url}")
        await self.fetch_models()

    async def disconnect(self) -> None:
        await self.client.aclose()
        self.connected = False
        self.current_model = None
        self.available_models = [m.model_copy() for m in DEFAULT_MODELS]

    async def test_connection(self) -> bool:
        return await self.client.ping()

    async def fetch_models(self) -> list[ModelInfo]:
        try:
            models = await self.client.list_models()
        except OllamaError as e:
            logger.warning(f"Failed to fetch models: {e}")
            self.connected = False
            self.available_models = [m.model_copy() for m in DEFAULT_MODELS]
            return self.available_models

        if not models:
            models = [m.model_copy() for m in DEFAULT_MODELS]
        self.available_models = models

        available = [m.name for m in models if m.is_available]
        if self.current_model not in available:
            self.current_model = available[0] if available else None
        return self.available_models

    def select_model(self, name: str) -> ModelInfo:
        for model in self.available_models:
            if model.name == name:
                if not model.is_available:
                    raise ModelUnavailableError(f"Model {name} is not installed on the server")
                self.current_model = name
                return model
        raise ModelUnavailableError(f"Unknown model: {name}")

    def require_model(self) -> str:
        if not self.connected:
            raise ModelUnavailableError("Chat service is not connected")
        if not self.current_model:
            raise ModelUnavailableError("No model selected")
        return self.current_model

    async def aclose(self) -> None:
        await self.client.aclose()
