from cubechat.controller import GenerationBusyError, GenerationController, GenerationState
from cubechat.decoder import StreamDecoder
from cubechat.models import ChatFeature, ChatMessage, ChatSession, Role
from cubechat.splitter import ReasoningSplitter, SplitResult
from cubechat.store import SessionError, SessionStore

__version__ = "0.1.0"

__all__ = [
    "ChatFeature",
    "ChatMessage",
    "ChatSession",
    "GenerationBusyError",
    "GenerationController",
    "GenerationState",
    "ReasoningSplitter",
    "Role",
    "SessionError",
    "SessionStore",
    "SplitResult",
    "StreamDecoder",
]
