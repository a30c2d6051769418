from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, TypeAlias


@dataclass(frozen=True, slots=True)
class GenerationStartedEvent:
    session_id: str
    message_id: str
    model: str


@dataclass(frozen=True, slots=True)
class AssistantDeltaEvent:
    message_id: str
    text: str


@dataclass(frozen=True, slots=True)
class ReasoningDeltaEvent:
    message_id: str
    text: str


@dataclass(frozen=True, slots=True)
class GenerationFinishedEvent:
    session_id: str
    message_id: str
    content: str
    execution_time_ms: int | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    message: str
    source: str | None = None


Event: TypeAlias = (
    GenerationStartedEvent
    | AssistantDeltaEvent
    | ReasoningDeltaEvent
    | GenerationFinishedEvent
    | ErrorEvent
)
EventCallback: TypeAlias = Callable[[Event], None] | None


class EventEmitter:
    def __init__(self, callback: EventCallback = None):
        self._callback = callback

    def emit(self, event: Event) -> None:
        if self._callback is not None:
            self._callback(event)
