import logging
import sys
from typing import TextIO

import httpx

from cubechat.config import ChatConfig
from cubechat.controller import GenerationController
from cubechat.events import Event, ReasoningDeltaEvent
from cubechat.models import ChatFeature, ChatMessage
from cubechat.ollama import OllamaConnection, OllamaError
from cubechat.persistence import ClientSettings, SessionPersistence
from cubechat.splitter import drop_partial_tag
from cubechat.store import SessionStore

logger = logging.getLogger(__name__)

DIM = "\033[2m"
RESET = "\033[0m"


class StreamPrinter:
    """Print the visible text of a streaming reply as it grows."""

    def __init__(self, open_tag: str, out: TextIO | None = None):
        self.open_tag = open_tag
        self.out = out or sys.stdout
        self.printed = ""

    def update(self, visible: str) -> None:
        safe = drop_partial_tag(visible, self.open_tag)
        if len(safe) <= len(self.printed) or not safe.startswith(self.printed):
            return
        self.out.write(safe[len(self.printed):])
        self.out.flush()
        self.printed = safe

    def finish(self, message: ChatMessage | None) -> None:
        if message is not None and message.content.startswith(self.printed):
            self.out.write(message.content[len(self.printed):].rstrip())
        elif message is not None and message.error:
            self.out.write(f"\n{message.content}")
        self.out.write("\n")
        self.out.flush()
        self.printed = ""


class ChatRuntime:
    def __init__(
        self,
        config: ChatConfig,
        *,
        store: SessionStore | None = None,
        persistence: SessionPersistence | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        show_reasoning: bool = False,
        out: TextIO | None = None,
    ):
        self.config = config
        self.out = out or sys.stdout
        self.persistence = persistence
        self.store = store or SessionStore()
        self.connection = OllamaConnection(config, transport=transport)
        self.feature = ChatFeature.GENERAL_CHAT
        self.show_reasoning = show_reasoning
        self._thinking_shown = False
        self.controller = GenerationController(
            self.store, self.connection, config, on_event=self._on_event
        )
        self._detach = None
        if persistence is not None:
            self._detach = persistence.attach(self.store, self.settings)

    @classmethod
    def from_config(
        cls, config: ChatConfig, *, restore_connection: bool = False, **kwargs
    ) -> "ChatRuntime":
        """Build a runtime on the persisted sessions and settings.

        The saved model is used only when none is configured. The saved host
        and port replace the configured ones only with ``restore_connection``,
        which callers pass when neither the environment nor the command line
        chose a server.
        """
        persistence = SessionPersistence(config.data_path)
        state = persistence.load()
        store = SessionStore(state.store if state else None)
        settings = state.settings if state else None
        if settings is not None:
            if settings.model and not config.model:
                config.model = settings.model
            if restore_connection:
                config.ollama_host = settings.host
                config.ollama_port = settings.port
                logger.debug(f"Using saved Ollama server {config.base_url}")
        return cls(config, store=store, persistence=persistence, **kwargs)

    def settings(self) -> ClientSettings:
        return ClientSettings(
            host=self.config.ollama_host,
            port=self.config.ollama_port,
            model=self.connection.current_model,
        )

    def _on_event(self, event: Event) -> None:
        if not isinstance(event, ReasoningDeltaEvent):
            return
        if self.show_reasoning:
            self.out.write(f"{DIM}{event.text}{RESET}")
            self.out.flush()
        elif not self._thinking_shown:
            self.out.write(f"{DIM}💭 thinking...{RESET}\n")
            self.out.flush()
            self._thinking_shown = True

    async def connect(self) -> bool:
        try:
            await self.connection.connect()
        except OllamaError as e:
            logger.warning(f"{e}")
            return False
        return True

    async def process_user_message(self, text: str) -> ChatMessage | None:
        printer = StreamPrinter(self.config.reasoning_open_tag, self.out)
        self._thinking_shown = False
        try:
            message = await self.controller.send_message(
                text, feature=self.feature, on_progress=printer.update
            )
        except OllamaError:
            session = self.store.current_session
            printer.finish(session.messages[-1] if session and session.messages else None)
            raise
        printer.finish(message)
        return message

    async def aclose(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None
        await self.connection.aclose()
