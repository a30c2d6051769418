from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv

from cubechat.config import ChatConfig, ConfigError, connection_from_env
from cubechat.controller import GenerationBusyError
from cubechat.export import write_export
from cubechat.models import ChatFeature
from cubechat.ollama import ModelUnavailableError, OllamaError
from cubechat.persistence import PersistedState, SessionPersistence
from cubechat.runtime.repl import ChatREPL
from cubechat.runtime.runtime import ChatRuntime
from cubechat.store import SessionError, SessionStore


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        payload = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(verbose: bool = False, quiet: bool = False, log_format: str = "text") -> None:
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    logging.basicConfig(level=level, handlers=[handler], force=True)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def main() -> int:
    load_dotenv()
    return _main(sys.argv[1:])


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("-q", "--quiet", action="store_true")
    parser.add_argument("--log-format", default="text", choices=["text", "json"])
    parser.add_argument("--data-path", default=None, help="State file (default: $CUBECHAT_DATA_PATH)")


def _add_connection(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--host", default=None, help="Ollama host (default: $CUBECHAT_OLLAMA_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Ollama port (default: $CUBECHAT_OLLAMA_PORT)")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cubechat", description="cubechat - local model chat for Elasticsearch admins")
    subparsers = parser.add_subparsers(dest="command", required=False)

    repl = subparsers.add_parser("repl", help="Start interactive chat (default)")
    repl.add_argument("--model", default=None, help="Model name (default: $CUBECHAT_MODEL or first installed)")
    repl.add_argument("--message", "-m", help="Single prompt (non-interactive)")
    repl.add_argument("--no-stream", action="store_true", help="Request a single non-streamed response")
    repl.add_argument("--feature", default=ChatFeature.GENERAL_CHAT.value, choices=[f.value for f in ChatFeature])
    repl.add_argument("--show-reasoning", action="store_true", help="Print <think> reasoning as it streams")
    _add_connection(repl)
    _add_common(repl)

    sessions = subparsers.add_parser("sessions", help="List saved sessions")
    sessions.add_argument("--limit", type=int, default=50)
    _add_common(sessions)

    models = subparsers.add_parser("models", help="List models installed on the Ollama server")
    _add_connection(models)
    _add_common(models)

    export = subparsers.add_parser("export", help="Export a session to JSON")
    export.add_argument("session_id")
    export.add_argument("-o", "--output", default=None, help="Output file or directory")
    _add_common(export)

    delete = subparsers.add_parser("delete", help="Delete a saved session")
    delete.add_argument("session_id")
    _add_common(delete)

    return parser


def _main(argv: list[str]) -> int:
    parser = _build_parser()
    if not argv or argv[0].startswith("-") and argv[0] not in ("-h", "--help"):
        argv = ["repl", *argv]
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.quiet, args.log_format)
    try:
        config = _config_from_args(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    cmd = args.command or "repl"
    if cmd == "repl":
        try:
            return asyncio.run(_cmd_repl(args, config))
        except KeyboardInterrupt:
            print("\n\n⚠️  Interrupted")
            return 130
    if cmd == "sessions":
        return _cmd_sessions(args, config)
    if cmd == "models":
        return asyncio.run(_cmd_models(args, config))
    if cmd == "export":
        return _cmd_export(args, config)
    if cmd == "delete":
        return _cmd_delete(args, config)

    parser.print_help(sys.stderr)
    return 2


def _config_from_args(args: argparse.Namespace) -> ChatConfig:
    config = ChatConfig()
    if args.data_path:
        config.data_path = args.data_path
    if getattr(args, "host", None):
        config.ollama_host = args.host
    if getattr(args, "port", None):
        config.ollama_port = args.port
    if getattr(args, "model", None):
        config.model = args.model
    if getattr(args, "no_stream", False):
        config.stream = False
    config.validate()
    return config


def _use_saved_connection(args: argparse.Namespace) -> bool:
    if getattr(args, "host", None) or getattr(args, "port", None):
        return False
    return not connection_from_env()


def _load_store(config: ChatConfig) -> tuple[SessionPersistence, PersistedState | None, SessionStore]:
    persistence = SessionPersistence(config.data_path)
    state = persistence.load()
    return persistence, state, SessionStore(state.store if state else None)


async def _cmd_repl(args: argparse.Namespace, config: ChatConfig) -> int:
    runtime = ChatRuntime.from_config(
        config,
        restore_connection=_use_saved_connection(args),
        show_reasoning=bool(args.show_reasoning),
    )
    runtime.feature = ChatFeature(args.feature)
    try:
        if not await runtime.connect():
            print(f"⚠️  Ollama is not reachable at {config.base_url}; chat is unavailable", file=sys.stderr)

        if args.message:
            try:
                message = await runtime.process_user_message(args.message)
            except (ModelUnavailableError, GenerationBusyError, SessionError, OllamaError, ValueError) as e:
                print(f"Error: {e}", file=sys.stderr)
                return 1
            return 0 if message is None or not message.error else 1

        await ChatREPL(runtime).run()
        return 0
    finally:
        await runtime.aclose()


def _cmd_sessions(args: argparse.Namespace, config: ChatConfig) -> int:
    _, _, store = _load_store(config)
    rows = store.list_sessions()[: max(0, int(args.limit))]
    if not rows:
        print("No sessions found.")
        return 0
    current = store.current_session_id
    print(f"  {'ID':<10} {'Messages':<9} {'Updated':<26} {'Title'}")
    for session in rows:
        marker = "*" if session.id == current else " "
        updated = session.updated_at.isoformat(timespec="seconds")
        print(f"{marker} {session.id:<10} {len(session.messages):<9} {updated:<26} {session.title[:60]}")
    return 0


async def _cmd_models(args: argparse.Namespace, config: ChatConfig) -> int:
    runtime = ChatRuntime.from_config(config, restore_connection=_use_saved_connection(args))
    try:
        if not await runtime.connect():
            print(f"Error: cannot connect to Ollama at {config.base_url}", file=sys.stderr)
            return 1
        for model in runtime.connection.available_models:
            status = "" if model.is_available else " (not installed)"
            print(f"{model.name}{status}")
        return 0
    finally:
        await runtime.aclose()


def _cmd_export(args: argparse.Namespace, config: ChatConfig) -> int:
    _, _, store = _load_store(config)
    session = store.get_session(args.session_id)
    if session is None:
        print(f"Error: session {args.session_id} not found", file=sys.stderr)
        return 1
    path = write_export(session, args.output)
    print(path)
    return 0


def _cmd_delete(args: argparse.Namespace, config: ChatConfig) -> int:
    persistence, state, store = _load_store(config)
    if store.get_session(args.session_id) is None:
        print(f"Error: session {args.session_id} not found", file=sys.stderr)
        return 1
    persistence.attach(store, lambda: state.settings if state else None)
    store.delete_session(args.session_id)
    print(f"Deleted session {args.session_id}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
