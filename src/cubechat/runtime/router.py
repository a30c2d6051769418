from dataclasses import dataclass

COMMAND_PREFIX = "/"


@dataclass(frozen=True)
class RouteResult:
    kind: str
    name: str | None
    args: str
    candidates: tuple[str, ...] = ()


class InputRouter:
    """Classify a REPL line as a chat prompt or a slash command.

    Commands may be abbreviated to any unique prefix, so ``/sess`` runs
    ``/sessions``. A prefix shared by several commands is reported as
    ambiguous together with the names it matches.
    """

    def __init__(self, builtins):
        self.builtins = builtins

    def resolve(self, name: str) -> tuple[str, ...]:
        if self.builtins.has_command(name):
            return (name,)
        if not name:
            return ()
        return tuple(c for c in self.builtins.list_commands() if c.startswith(name))

    def route(self, line: str) -> RouteResult:
        if not line.startswith(COMMAND_PREFIX):
            return RouteResult(kind="prompt", name=None, args=line)

        head, _, rest = line[len(COMMAND_PREFIX):].partition(" ")
        args = rest.strip()
        matches = self.resolve(head)

        if len(matches) == 1:
            return RouteResult(kind="builtin", name=matches[0], args=args)
        if matches:
            return RouteResult(kind="ambiguous", name=head, args=args, candidates=matches)
        return RouteResult(kind="unknown", name=head, args=args)
