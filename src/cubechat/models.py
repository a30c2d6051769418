import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def generate_id() -> str:
    return str(uuid.uuid4())[:8]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ChatFeature(str, Enum):
    GENERAL_CHAT = "general-chat"
    QUERY_GENERATION = "query-generation"
    DATA_ANALYSIS = "data-analysis"
    QUERY_OPTIMIZATION = "query-optimization"
    ERROR_EXPLANATION = "error-explanation"


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    role: Role
    content: str = ""
    reasoning: str | None = None
    is_streaming: bool = False
    timestamp: datetime = Field(default_factory=utc_now)
    execution_time_ms: int | None = None
    error: str | None = None
    feature: ChatFeature = ChatFeature.GENERAL_CHAT


class ChatSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    title: str
    messages: tuple[ChatMessage, ...] = ()
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    model: str | None = None

    def find_message(self, message_id: str) -> ChatMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def streaming_message(self) -> ChatMessage | None:
        for message in self.messages:
            if message.is_streaming:
                return message
        return None


class ModelInfo(BaseModel):
    name: str
    description: str = ""
    provider: str = "ollama"
    is_available: bool = False
    temperature: float = 0.7
    max_tokens: int = 2048


class GenerateOptions(BaseModel):
    temperature: float | None = None
    num_predict: int | None = None


class GenerateRequest(BaseModel):
    model: str
    prompt: str
    stream: bool = True
    options: GenerateOptions | None = None

    def to_payload(self) -> dict:
        return self.model_dump(exclude_none=True)


class GenerateChunk(BaseModel):
    model_config = ConfigDict(extra="ignore")

    response: str | None = None
    done: bool = False
    total_duration: int | None = None
    error: str | None = None
