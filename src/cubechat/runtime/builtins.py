from cubechat.export import write_export
from cubechat.models import ChatFeature
from cubechat.ollama import ModelUnavailableError, OllamaError
from cubechat.store import SessionError


class BuiltinCommands:
    def __init__(self, runtime):
        self.runtime = runtime
        self._handlers = {
            "quit": self.cmd_quit,
            "exit": self.cmd_quit,
            "new": self.cmd_new,
            "sessions": self.cmd_sessions,
            "switch": self.cmd_switch,
            "title": self.cmd_title,
            "clear": self.cmd_clear,
            "delete": self.cmd_delete,
            "export": self.cmd_export,
            "model": self.cmd_model,
            "models": self.cmd_models,
            "feature": self.cmd_feature,
            "help": self.cmd_help,
        }

    def list_commands(self) -> list[str]:
        return sorted(self._handlers.keys())

    def has_command(self, name: str) -> bool:
        return name in self._handlers

    async def handle(self, name: str, args: str) -> bool:
        handler = self._handlers.get(name)
        if not handler:
            return True
        return await handler(args)

    async def cmd_quit(self, args: str) -> bool:
        print("👋 Goodbye!")
        return False

    async def cmd_new(self, args: str) -> bool:
        session = self.runtime.store.create_session(
            title=args or None, model=self.runtime.connection.current_model
        )
        print(f"✅ Started session {session.id} - {session.title}")
        return True

    async def cmd_sessions(self, args: str) -> bool:
        sessions = self.runtime.store.list_sessions()
        if not sessions:
            print("No saved sessions")
            return True
        current = self.runtime.store.current_session_id
        print("Sessions:")
        for session in sessions:
            marker = "*" if session.id == current else " "
            print(f" {marker} {session.id} - {session.title} ({len(session.messages)} messages)")
        return True

    async def cmd_switch(self, args: str) -> bool:
        if not args:
            print("Usage: /switch <id>")
            return True
        try:
            self.runtime.store.set_current_session(args)
        except SessionError as e:
            print(f"❌ {e}")
            return True
        session = self.runtime.store.current_session
        print(f"✅ Switched to {session.id} - {session.title}")
        for message in session.messages[-4:]:
            print(f"  [{message.role.value}] {message.content.strip()[:200]}")
        return True

    async def cmd_title(self, args: str) -> bool:
        session = self.runtime.store.current_session
        if not args or session is None:
            print("Usage: /title <text> (requires a current session)")
            return True
        self.runtime.store.update_session_title(session.id, args)
        print(f"✅ Renamed session {session.id} to {args!r}")
        return True

    async def cmd_clear(self, args: str) -> bool:
        session = self.runtime.store.current_session
        if session is None:
            print("No current session")
            return True
        self.runtime.store.clear_messages(session.id)
        print("✅ Cleared chat history")
        return True

    async def cmd_delete(self, args: str) -> bool:
        session_id = args or self.runtime.store.current_session_id
        if not session_id or self.runtime.store.get_session(session_id) is None:
            print("Usage: /delete <id>")
            return True
        self.runtime.store.delete_session(session_id)
        print(f"✅ Deleted session {session_id}")
        return True

    async def cmd_export(self, args: str) -> bool:
        session = self.runtime.store.current_session
        if session is None:
            print("No current session")
            return True
        path = write_export(session, args or None)
        print(f"✅ Exported {len(session.messages)} messages to {path}")
        return True

    async def cmd_model(self, args: str) -> bool:
        connection = self.runtime.connection
        if not args:
            print(f"Current model: {connection.current_model or '(none)'}")
            return True
        try:
            connection.select_model(args)
        except ModelUnavailableError as e:
            print(f"❌ {e}")
            return True
        print(f"✅ Switched to model: {args}")
        return True

    async def cmd_models(self, args: str) -> bool:
        connection = self.runtime.connection
        try:
            if not connection.connected:
                await connection.connect()
            else:
                await connection.fetch_models()
        except OllamaError as e:
            print(f"❌ {e}")
            return True
        print("Models:")
        for model in connection.available_models:
            marker = "*" if model.name == connection.current_model else " "
            status = "" if model.is_available else " (not installed)"
            print(f" {marker} {model.name}{status}")
        return True

    async def cmd_feature(self, args: str) -> bool:
        if not args:
            print(f"Current feature: {self.runtime.feature.value}")
            print("Available: " + ", ".join(f.value for f in ChatFeature))
            return True
        try:
            self.runtime.feature = ChatFeature(args)
        except ValueError:
            print(f"❌ Unknown feature: {args}")
            return True
        print(f"✅ Feature set to {args}")
        return True

    async def cmd_help(self, args: str) -> bool:
        print("\nCommands:")
        for name in self.list_commands():
            print(f"  /{name}")
        print()
        return True
