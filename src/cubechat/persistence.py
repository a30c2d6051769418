import json
import logging
import os
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from cubechat.store import SessionStore, StoreSnapshot

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class ClientSettings(BaseModel):
    host: str = "localhost"
    port: int = 11434
    model: str | None = None


class PersistedState(BaseModel):
    version: int = STATE_VERSION
    store: StoreSnapshot = StoreSnapshot()
    settings: ClientSettings | None = None


def load_json(path: str | Path) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring corrupt state file {path}: {e}")
        return None


def atomic_write_json(path: str | Path, data: Any) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_suffix(f"{target.suffix}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2, ensure_ascii=False)
    os.replace(tmp_path, target)


class SessionPersistence:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> PersistedState | None:
        data = load_json(self.path)
        if data is None:
            return None
        try:
            state = PersistedState.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid state file {self.path}: {e}")
            return None
        logger.debug(f"Loaded {len(state.store.sessions)} session(s) from {self.path}")
        return state

    def save(self, state: PersistedState) -> None:
        atomic_write_json(self.path, state.model_dump(mode="json"))

    def save_store(self, store: SessionStore, settings: ClientSettings | None = None) -> None:
        self.save(PersistedState(store=store.snapshot(), settings=settings))

    def attach(
        self,
        store: SessionStore,
        settings_provider: Callable[[], ClientSettings | None] | None = None,
    ) -> Callable[[], None]:
        def _on_change(changed: SessionStore) -> None:
            settings = settings_provider() if settings_provider is not None else None
            self.save_store(changed, settings)

        return store.subscribe(_on_change)
