import asyncio

from cubechat.controller import GenerationBusyError
from cubechat.ollama import ModelUnavailableError, OllamaError
from cubechat.runtime.builtins import BuiltinCommands
from cubechat.runtime.router import InputRouter
from cubechat.store import SessionError


class ChatREPL:
    def __init__(self, runtime):
        self.runtime = runtime
        self.builtins = BuiltinCommands(runtime)
        self.router = InputRouter(self.builtins)

    async def run(self, initial_message: str | None = None) -> None:
        model = self.runtime.connection.current_model or "no model"
        print(f"🤖 cubechat started ({self.runtime.config.base_url}, model: {model})")
        print("Commands: /help for all commands")
        print()

        if initial_message:
            await self.send(initial_message)

        while True:
            try:
                user_input = (await asyncio.to_thread(input, "\n> ")).strip()
            except (EOFError, KeyboardInterrupt):
                break

            if not user_input:
                continue

            route = self.router.route(user_input)
            if route.kind == "builtin":
                if not await self.builtins.handle(route.name, route.args):
                    break
                continue
            if route.kind == "ambiguous":
                matches = ", ".join(f"/{c}" for c in route.candidates)
                print(f"Ambiguous command: /{route.name} (matches: {matches})")
                continue
            if route.kind == "unknown":
                print(f"Unknown command: /{route.name}. Type /help for available commands.")
                continue

            await self.send(route.args)

    async def send(self, text: str) -> None:
        try:
            await self.runtime.process_user_message(text)
        except (ModelUnavailableError, GenerationBusyError, SessionError, ValueError) as e:
            print(f"❌ {e}")
        except OllamaError as e:
            print(f"\n❌ Error: {e}")
