import logging
from datetime import datetime
from typing import Any, Callable

from pydantic import BaseModel

from cubechat.models import ChatMessage, ChatSession, utc_now

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "interrupted"

Listener = Callable[["SessionStore"], None]


class SessionError(Exception):
    pass


class StoreSnapshot(BaseModel):
    sessions: tuple[ChatSession, ...] = ()
    current_session_id: str | None = None


def _default_title() -> str:
    return f"Chat {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"


class SessionStore:
    """In-memory chat sessions, newest first.

    Sessions and messages are frozen pydantic models. A mutation replaces the
    touched session with a new object and leaves the others shared, so
    listeners can detect changes by identity.
    """

    def __init__(self, snapshot: StoreSnapshot | None = None):
        self._sessions: tuple[ChatSession, ...] = ()
        self._current_id: str | None = None
        self._listeners: list[Listener] = []
        self.version = 0
        if snapshot is not None:
            self.restore(snapshot)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        self.version += 1
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Session store listener failed")

    def list_sessions(self) -> tuple[ChatSession, ...]:
        return self._sessions

    def get_session(self, session_id: str) -> ChatSession | None:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    @property
    def current_session_id(self) -> str | None:
        return self._current_id

    @property
    def current_session(self) -> ChatSession | None:
        if self._current_id is None:
            return None
        return self.get_session(self._current_id)

    def streaming_message(self, session_id: str) -> ChatMessage | None:
        session = self.get_session(session_id)
        return session.streaming_message() if session else None

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(sessions=self._sessions, current_session_id=self._current_id)

    def create_session(self, title: str | None = None, model: str | None = None) -> ChatSession:
        session = ChatSession(title=title or _default_title(), model=model)
        self._sessions = (session, *self._sessions)
        self._current_id = session.id
        logger.info(f"Created session {session.id} ({session.title!r})")
        self._notify()
        return session

    def delete_session(self, session_id: str) -> None:
        remaining = tuple(s for s in self._sessions if s.id != session_id)
        if len(remaining) == len(self._sessions):
            logger.debug(f"delete_session: {session_id} not found")
            return
        self._sessions = remaining
        if self._current_id == session_id:
            self._current_id = remaining[0].id if remaining else None
        logger.info(f"Deleted session {session_id}")
        self._notify()

    def set_current_session(self, session_id: str | None) -> None:
        if session_id is not None and self.get_session(session_id) is None:
            raise SessionError(f"Session {session_id} not found")
        if session_id == self._current_id:
            return
        self._current_id = session_id
        self._notify()

    def update_session_title(self, session_id: str, title: str) -> None:
        session = self.get_session(session_id)
        if session is None:
            return
        self._replace(session.model_copy(update={"title": title, "updated_at": utc_now()}))

    def append_message(self, session_id: str, message: ChatMessage) -> ChatMessage:
        session = self.get_session(session_id)
        if session is None:
            raise SessionError(f"Session {session_id} not found")
        if message.is_streaming and session.streaming_message() is not None:
            raise SessionError(f"Session {session_id} already has a message being generated")
        if session.find_message(message.id) is not None:
            raise SessionError(f"Message {message.id} already exists in session {session_id}")

        self._replace(
            session.model_copy(
                update={"messages": (*session.messages, message), "updated_at": utc_now()}
            )
        )
        return message

    def update_message(self, session_id: str, message_id: str, **fields: Any) -> ChatMessage | None:
        if "id" in fields or "role" in fields:
            raise ValueError("message id and role cannot be changed")

        session = self.get_session(session_id)
        if session is None:
            logger.debug(f"update_message: session {session_id} is gone, ignoring")
            return None
        message = session.find_message(message_id)
        if message is None:
            logger.debug(f"update_message: message {message_id} is gone, ignoring")
            return None
        if not message.is_streaming:
            logger.debug(f"update_message: message {message_id} is finalized, ignoring")
            return None

        updated = message.model_copy(update=fields)
        messages = tuple(updated if m.id == message_id else m for m in session.messages)
        self._replace(session.model_copy(update={"messages": messages, "updated_at": utc_now()}))
        return updated

    def clear_messages(self, session_id: str) -> None:
        session = self.get_session(session_id)
        if session is None:
            return
        self._replace(session.model_copy(update={"messages": (), "updated_at": utc_now()}))

    def restore(self, snapshot: StoreSnapshot) -> None:
        sessions = tuple(_finalize_interrupted(s) for s in snapshot.sessions)
        current = snapshot.current_session_id
        if current is not None and not any(s.id == current for s in sessions):
            current = None
        self._sessions = sessions
        self._current_id = current
        logger.info(f"Restored {len(sessions)} session(s)")
        self._notify()

    def _replace(self, session: ChatSession) -> None:
        self._sessions = tuple(session if s.id == session.id else s for s in self._sessions)
        self._notify()


def _finalize_interrupted(session: ChatSession) -> ChatSession:
    if session.streaming_message() is None:
        return session
    messages = tuple(
        m.model_copy(update={"is_streaming": False, "error": m.error or INTERRUPTED_ERROR})
        if m.is_streaming
        else m
        for m in session.messages
    )
    return session.model_copy(update={"messages": messages})
