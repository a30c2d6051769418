import json
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
import pytest

from cubechat.config import ChatConfig
from cubechat.controller import GenerationController
from cubechat.ollama import OllamaConnection
from cubechat.store import SessionStore


def ndjson(*records: dict) -> bytes:
    return b"".join(json.dumps(r).encode("utf-8") + b"\n" for r in records)


@dataclass
class FakeOllama:
    """Serves /api/tags and /api/generate from canned data."""

    chunks: list[bytes] = field(default_factory=list)
    status_code: int = 200
    models: list[str] = field(default_factory=lambda: ["llama3", "qwen3:8b"])
    generate_json: dict | None = None
    body: Callable[[], Any] | None = None
    requests: list[dict] = field(default_factory=list)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": name} for name in self.models]})

        payload = json.loads(request.content)
        self.requests.append(payload)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"error": "model 'missing' not found"})
        if not payload.get("stream", True) and self.generate_json is not None:
            return httpx.Response(200, json=self.generate_json)
        if self.body is not None:
            return httpx.Response(200, content=self.body())

        async def body():
            for chunk in self.chunks:
                yield chunk

        return httpx.Response(200, content=body())

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def config(tmp_path) -> ChatConfig:
    return ChatConfig(
        ollama_host="localhost",
        ollama_port=11434,
        model="llama3",
        data_path=str(tmp_path / "state.json"),
        locale="en",
    )


@pytest.fixture
def fake_ollama() -> FakeOllama:
    return FakeOllama()


@pytest.fixture
def store() -> SessionStore:
    return SessionStore()


@pytest.fixture
def connection(config, fake_ollama) -> OllamaConnection:
    conn = OllamaConnection(config, transport=fake_ollama.transport)
    conn.connected = True
    conn.current_model = "llama3"
    return conn


@pytest.fixture
def controller(store, connection, config) -> GenerationController:
    return GenerationController(store, connection, config)
