import logging
import os
from dataclasses import dataclass, field

from cubechat.splitter import DEFAULT_CLOSE_TAG, DEFAULT_OPEN_TAG

logger = logging.getLogger(__name__)

FALLBACK_MESSAGES = {
    "en": "Sorry, something went wrong while generating the response. Please try again.",
    "zh": "抱歉，生成响应时出现错误。请稍后重试。",
}


HOST_ENV = "CUBECHAT_OLLAMA_HOST"
PORT_ENV = "CUBECHAT_OLLAMA_PORT"


class ConfigError(Exception):
    pass


def connection_from_env() -> bool:
    return bool(os.environ.get(HOST_ENV, "").strip() or os.environ.get(PORT_ENV, "").strip())


def get_optional_env(name: str, default: str) -> str:
    return os.environ.get(name, default)


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"Environment variable {name} must be an integer, got {raw!r}") from e


@dataclass
class ChatConfig:
    ollama_host: str = field(
        default_factory=lambda: get_optional_env(HOST_ENV, "localhost")
    )
    ollama_port: int = field(default_factory=lambda: _int_env(PORT_ENV, 11434))
    model: str | None = field(default_factory=lambda: os.environ.get("CUBECHAT_MODEL") or None)
    data_path: str = field(
        default_factory=lambda: get_optional_env("CUBECHAT_DATA_PATH", ".cubechat/state.json")
    )
    locale: str = field(default_factory=lambda: get_optional_env("CUBECHAT_LOCALE", "en"))
    temperature: float = 0.7
    num_predict: int | None = 2048
    stream: bool = True
    request_timeout: float = 300.0
    connect_timeout: float = 5.0
    reasoning_open_tag: str = DEFAULT_OPEN_TAG
    reasoning_close_tag: str = DEFAULT_CLOSE_TAG
    max_history_messages: int = 20

    @property
    def base_url(self) -> str:
        return f"http://{self.ollama_host}:{self.ollama_port}"

    @property
    def fallback_message(self) -> str:
        return FALLBACK_MESSAGES.get(self.locale, FALLBACK_MESSAGES["en"])

    def validate(self) -> None:
        if not self.ollama_host.strip():
            raise ConfigError("ollama_host must not be empty")
        if not 0 < self.ollama_port < 65536:
            raise ConfigError("ollama_port must be between 1 and 65535")
        if not 0.0 <= self.temperature <= 2.0:
            raise ConfigError("temperature must be between 0 and 2")
        if self.num_predict is not None and self.num_predict < 1:
            raise ConfigError("num_predict must be at least 1 when set")
        if self.request_timeout <= 0 or self.connect_timeout <= 0:
            raise ConfigError("timeouts must be > 0")
        if not self.reasoning_open_tag or not self.reasoning_close_tag:
            raise ConfigError("reasoning tags must not be empty")
        if self.reasoning_open_tag == self.reasoning_close_tag:
            raise ConfigError("reasoning open and close tags must differ")
        if self.max_history_messages < 0:
            raise ConfigError("max_history_messages must be >= 0")
        if self.locale not in FALLBACK_MESSAGES:
            raise ConfigError(
                f"Unknown locale: {self.locale} (available: {', '.join(sorted(FALLBACK_MESSAGES))})"
            )
        logger.debug("Configuration validated successfully")
