from datetime import date
from pathlib import Path
from typing import Any

from cubechat.models import ChatSession, utc_now
from cubechat.persistence import atomic_write_json


def default_export_name(today: date | None = None) -> str:
    return f"chat-export-{(today or date.today()).isoformat()}.json"


def export_session(session: ChatSession) -> dict[str, Any]:
    return {
        "export_time": utc_now().isoformat(),
        "session": {
            "id": session.id,
            "title": session.title,
            "model": session.model,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
        },
        "messages": [m.model_dump(mode="json", exclude_none=True) for m in session.messages],
    }


def write_export(session: ChatSession, path: str | Path | None = None) -> Path:
    target = Path(path) if path else Path(default_export_name())
    if target.is_dir():
        target = target / default_export_name()
    atomic_write_json(target, export_session(session))
    return target
