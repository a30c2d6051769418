import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from pydantic import ValidationError

from cubechat.config import ChatConfig
from cubechat.decoder import StreamDecoder
from cubechat.events import (
    AssistantDeltaEvent,
    ErrorEvent,
    EventCallback,
    EventEmitter,
    GenerationFinishedEvent,
    GenerationStartedEvent,
    ReasoningDeltaEvent,
)
from cubechat.models import (
    ChatFeature,
    ChatMessage,
    GenerateChunk,
    GenerateOptions,
    GenerateRequest,
    Role,
)
from cubechat.ollama import OllamaConnection, OllamaError
from cubechat.prompts import (
    analyze_data_prompt,
    build_prompt,
    dsl_query_prompt,
    explain_error_prompt,
    optimize_query_prompt,
)
from cubechat.splitter import ReasoningSplitter, strip_reasoning
from cubechat.store import SessionError, SessionStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None] | None


class GenerationBusyError(Exception):
    pass


class GenerationState(str, Enum):
    IDLE = "idle"
    AWAITING_FIRST_BYTE = "awaiting_first_byte"
    STREAMING = "streaming"
    FINALIZING = "finalizing"


@dataclass
class _Run:
    session_id: str
    message_id: str
    splitter: ReasoningSplitter
    started: float = field(default_factory=time.monotonic)
    raw: str = ""
    total_duration: int | None = None
    emitted: str = ""


class GenerationController:
    """Drive one streamed exchange at a time into the session store.

    The controller only remembers the ids of the session and message it is
    filling; every change goes through ``SessionStore.update_message`` so a
    session deleted mid-stream simply stops receiving updates.
    """

    def __init__(
        self,
        store: SessionStore,
        connection: OllamaConnection,
        config: ChatConfig,
        *,
        on_event: EventCallback = None,
    ):
        self.store = store
        self.connection = connection
        self.config = config
        self.emitter = EventEmitter(on_event)
        self.state = GenerationState.IDLE
        self.session_id: str | None = None
        self.message_id: str | None = None

    @property
    def is_generating(self) -> bool:
        return self.state is not GenerationState.IDLE

    def _require_idle(self) -> None:
        if self.state is not GenerationState.IDLE:
            raise GenerationBusyError(
                f"A response is already being generated (state: {self.state.value})"
            )

    def _options(self) -> GenerateOptions:
        return GenerateOptions(
            temperature=self.config.temperature,
            num_predict=self.config.num_predict,
        )

    def _splitter(self) -> ReasoningSplitter:
        return ReasoningSplitter(self.config.reasoning_open_tag, self.config.reasoning_close_tag)

    def _reset(self) -> None:
        self.state = GenerationState.IDLE
        self.session_id = None
        self.message_id = None

    async def send_message(
        self,
        text: str,
        *,
        feature: ChatFeature = ChatFeature.GENERAL_CHAT,
        on_progress: ProgressCallback = None,
    ) -> ChatMessage | None:
        self._require_idle()
        model = self.connection.require_model()
        session = self.store.current_session or self.store.create_session(model=model)
        return await self.start(session.id, text, feature=feature, on_progress=on_progress)

    async def start(
        self,
        session_id: str,
        user_text: str,
        *,
        feature: ChatFeature = ChatFeature.GENERAL_CHAT,
        on_progress: ProgressCallback = None,
    ) -> ChatMessage | None:
        self._require_idle()
        text = (user_text or "").strip()
        if not text:
            raise ValueError("Message must not be empty")
        model = self.connection.require_model()

        session = self.store.get_session(session_id)
        if session is None:
            raise SessionError(f"Session {session_id} not found")
        if session.streaming_message() is not None:
            raise GenerationBusyError(f"Session {session_id} already has a response in progress")

        history = session.messages
        self.store.append_message(session_id, ChatMessage(role=Role.USER, content=text, feature=feature))
        placeholder = self.store.append_message(
            session_id,
            ChatMessage(role=Role.ASSISTANT, is_streaming=True, feature=feature),
        )

        self.state = GenerationState.AWAITING_FIRST_BYTE
        self.session_id = session_id
        self.message_id = placeholder.id
        run = _Run(session_id=session_id, message_id=placeholder.id, splitter=self._splitter())

        request = GenerateRequest(
            model=model,
            prompt=build_prompt(feature, history, text, self.config.max_history_messages),
            stream=self.config.stream,
            options=self._options(),
        )
        logger.info(f"Generating reply in session {session_id} with {model} ({feature.value})")
        self.emitter.emit(
            GenerationStartedEvent(session_id=session_id, message_id=placeholder.id, model=model)
        )

        try:
            await self._stream(run, request, on_progress)
        except (Exception, asyncio.CancelledError) as e:
            self._finalize(run, error=e)
            raise
        else:
            return self._finalize(run)
        finally:
            self._reset()

    async def _stream(self, run: _Run, request: GenerateRequest, on_progress: ProgressCallback) -> None:
        decoder = StreamDecoder()
        async with aclosing(self.connection.client.stream_generate(request)) as chunks:
            async for chunk in chunks:
                for record in decoder.feed(chunk):
                    if self._handle_record(run, record, on_progress):
                        return
        for record in decoder.flush():
            if self._handle_record(run, record, on_progress):
                return

    def _handle_record(self, run: _Run, record: dict[str, Any], on_progress: ProgressCallback) -> bool:
        if self.state is GenerationState.AWAITING_FIRST_BYTE:
            self.state = GenerationState.STREAMING

        try:
            chunk = GenerateChunk.model_validate(record)
        except ValidationError as e:
            logger.debug(f"Ignoring unexpected record shape: {e}")
            return False

        if chunk.error:
            raise OllamaError(chunk.error)
        if chunk.total_duration is not None:
            run.total_duration = chunk.total_duration

        if chunk.response:
            previous = run.splitter.last
            run.raw += chunk.response
            result = run.splitter.consume(run.raw)
            self.store.update_message(
                run.session_id,
                run.message_id,
                content=result.visible,
                reasoning=result.reasoning or None,
            )
            self._emit_visible(run, run.splitter.settled_visible(result.visible))
            if len(result.reasoning) > len(previous.reasoning):
                self.emitter.emit(
                    ReasoningDeltaEvent(
                        message_id=run.message_id, text=result.reasoning[len(previous.reasoning):]
                    )
                )
            if on_progress is not None:
                on_progress(result.visible)

        return chunk.done

    def _emit_visible(self, run: _Run, visible: str) -> None:
        if len(visible) <= len(run.emitted) or not visible.startswith(run.emitted):
            return
        self.emitter.emit(AssistantDeltaEvent(message_id=run.message_id, text=visible[len(run.emitted):]))
        run.emitted = visible

    def _finalize(self, run: _Run, error: BaseException | None = None) -> ChatMessage | None:
        self.state = GenerationState.FINALIZING
        result = run.splitter.consume(run.raw, final=True)
        # Content must stay an extension of every value streamed before it.
        content = result.visible
        self._emit_visible(run, content)

        if run.total_duration is not None:
            execution_time_ms = run.total_duration // 1_000_000
        else:
            execution_time_ms = int((time.monotonic() - run.started) * 1000)

        fields: dict[str, Any] = {
            "is_streaming": False,
            "content": content,
            "reasoning": result.reasoning.strip() or None,
            "execution_time_ms": execution_time_ms,
        }
        error_text = None
        if error is not None:
            error_text = str(error) or type(error).__name__
            fields["error"] = error_text
            if not content.strip():
                fields["content"] = self.config.fallback_message
            logger.warning(f"Generation in session {run.session_id} failed: {error_text}")
            self.emitter.emit(ErrorEvent(message=error_text, source="generation"))

        updated = self.store.update_message(run.session_id, run.message_id, **fields)
        if updated is None:
            logger.info(f"Session {run.session_id} changed during generation; reply discarded")
        self.emitter.emit(
            GenerationFinishedEvent(
                session_id=run.session_id,
                message_id=run.message_id,
                content=fields["content"],
                execution_time_ms=execution_time_ms,
                error=error_text,
            )
        )
        return updated

    async def _one_shot(self, prompt: str) -> str:
        self._require_idle()
        model = self.connection.require_model()
        self.state = GenerationState.AWAITING_FIRST_BYTE
        try:
            chunk = await self.connection.client.generate(
                GenerateRequest(model=model, prompt=prompt, stream=False, options=self._options())
            )
            self.state = GenerationState.FINALIZING
            return strip_reasoning(
                chunk.response or "",
                self.config.reasoning_open_tag,
                self.config.reasoning_close_tag,
            )
        finally:
            self._reset()

    async def generate_dsl_query(self, natural_language: str, context: Any = None) -> str:
        return await self._one_shot(dsl_query_prompt(natural_language, context))

    async def analyze_data(self, data: Any, question: str) -> str:
        return await self._one_shot(analyze_data_prompt(data, question))

    async def optimize_query(self, query: str) -> str:
        return await self._one_shot(optimize_query_prompt(query))

    async def explain_error(self, error: str, context: Any = None) -> str:
        return await self._one_shot(explain_error_prompt(error, context))
