"""Interactive REPL on top of :class:`SessionEngine`."""

from __future__ import annotations

import json
import re
import shlex
import sys
from collections.abc import Callable
from typing import Any, TextIO

from pydantic import ValidationError

from . import __version__
from .config import ChatConfig
from .engine import SessionEngine
from .errors import ChatError, EngineBusyError
from .messages import DeltaEvent, DoneEvent, ErrorEvent, MetaEvent
from .registry import ProviderRegistry
from .roles import temporary_role
from .session import Session, validate_session_id
from .transport import Transport

COMMAND_RE = re.compile(r"^\s*(\.\S*)\s*")
MULTILINE_RE = re.compile(r"^\s*:::\s*(.*)\s*:::\s*$", re.DOTALL)

REPL_COMMANDS: list[tuple[str, str]] = [
    (".help", "Show this help message"),
    (".info", "View system info"),
    (".model", "Change the current LLM"),
    (".models", "List available models"),
    (".prompt", "Make a temporary role using a prompt"),
    (".role", "Switch to a role, or ask once with it"),
    (".info role", "View role info"),
    (".exit role", "Leave the role"),
    (".session", "Begin or resume a named chat session"),
    (".info session", "View session info"),
    (".save session", "Save the chat to a session"),
    (".clear messages", "Erase messages in the current session"),
    (".exit session", "End the current session"),
    (".file", "Include files with the message"),
    (".set", "Adjust settings"),
    (".exit", "Exit the REPL"),
]

# Settings adjustable through ``.set <key> <value>``.
SETTABLE_KEYS = ("temperature", "top_p", "stream", "compress_threshold", "save_session")


def parse_command(line: str) -> tuple[str, str | None] | None:
    """Split ``.cmd args`` into ``(cmd, args)``; ``None`` if *line* is not a command."""
    match = COMMAND_RE.match(line)
    if match is None:
        return None
    args = line[match.end() :].strip()
    return match.group(1), args or None


def unwrap_multiline(line: str) -> str:
    """Strip the ``:::`` markers around multi-line input."""
    match = MULTILINE_RE.match(line)
    if match is None:
        return line
    return match.group(1).strip()


def is_incomplete(text: str) -> bool:
    stripped = text.strip()
    return stripped.startswith(":::") and not stripped[3:].endswith(":::")


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def help_text() -> str:
    head = "\n".join(f"{name:<24} {desc}" for name, desc in REPL_COMMANDS)
    return (
        f"{head}\n\n"
        "Type ::: to start multi-line editing, type ::: to finish it.\n"
        "Press Ctrl+C to cancel the response, Ctrl+D to exit the REPL"
    )


class Repl:
    """Line-oriented chat loop.

    ``read_line`` and ``out`` are injectable so the loop can be driven
    without a terminal.
    """

    def __init__(
        self,
        config: ChatConfig,
        registry: ProviderRegistry,
        transport: Transport | None = None,
        read_line: Callable[[str], str] = input,
        out: TextIO | None = None,
        engine: SessionEngine | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self._transport = transport
        self._read_line = read_line
        self._out = out if out is not None else sys.stdout
        self.engine = engine if engine is not None else self._new_engine()

    def _new_engine(self, session: Session | None = None) -> SessionEngine:
        return SessionEngine(self.config, self.registry, transport=self._transport, session=session)

    def _print(self, text: str = "", end: str = "\n") -> None:
        self._out.write(text + end)
        self._out.flush()

    def prompt(self) -> str:
        status = self.engine.token_status()
        role = f"{self.engine.role.name}@" if self.engine.role else ""
        return f"{role}{self.engine.spec.key}({status.percent}%)> "

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def read_input(self) -> str:
        line = self._read_line(self.prompt())
        lines = [line]
        while is_incomplete("\n".join(lines)):
            lines.append(self._read_line("... "))
        return "\n".join(lines)

    def run(self) -> None:
        self._print(f"Welcome to chatmux {__version__}")
        self._print('Type ".help" for more information.')
        while True:
            try:
                line = self.read_input()
            except KeyboardInterrupt:
                self._print("\n(To exit, press Ctrl+D or type .exit)\n")
                continue
            except EOFError:
                self._print()
                break
            try:
                if self.handle(line):
                    break
            except (ChatError, EngineBusyError, KeyError, ValueError, OSError) as exc:
                self._print(f"Error: {exc}\n")
        self._end_session()

    def handle(self, line: str) -> bool:
        """Process one input; return True when the REPL should exit."""
        line = unwrap_multiline(line)
        parsed = parse_command(line)
        if parsed is None:
            self.ask(line)
            self._print()
            return False

        cmd, args = parsed
        if cmd == ".help":
            self._print(help_text())
        elif cmd == ".info":
            self._info(args)
        elif cmd == ".model":
            if args:
                self.engine.set_model(args)
            else:
                self._print("Usage: .model <name>")
        elif cmd == ".models":
            for spec in self.registry.list():
                self._print(f"{spec.key:<40} {spec.max_input_tokens}")
        elif cmd == ".prompt":
            if args:
                self.engine.set_role(temporary_role(args))
            else:
                self._print("Usage: .prompt <text>...")
        elif cmd == ".role":
            self._role(args)
        elif cmd == ".session":
            self._start_session(args)
        elif cmd == ".save":
            sub, _, name = (args or "").partition(" ")
            if sub == "session":
                path = self.engine.save(name.strip() or None)
                self._print(f"Saved session to {path}")
            else:
                self._print("Usage: .save session [name]")
        elif cmd == ".clear":
            if args == "messages":
                self.engine.clear_messages()
            else:
                self._unknown()
        elif cmd == ".file":
            if args:
                files_part, _, text = args.partition(" -- ")
                self.ask(text.strip(), shlex.split(files_part))
            else:
                self._print("Usage: .file <files>... [-- <text>...]")
        elif cmd == ".set":
            self._set(args)
        elif cmd == ".exit":
            if args is None:
                return True
            if args == "role":
                self.engine.set_role(None)
            elif args == "session":
                self._end_session()
                self.engine = self._new_engine()
            else:
                self._unknown()
        else:
            self._unknown()
        self._print()
        return False

    def _unknown(self) -> None:
        self._print('Unknown command. Type ".help" for more information.')

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _info(self, args: str | None) -> None:
        if args is None or args == "session":
            for key, value in self.engine.info().items():
                self._print(f"{key:<20} {value}")
        elif args == "role":
            role = self.engine.role
            if role is None:
                self._print("No role")
            else:
                self._print(f"name: {role.name}\nprompt: {role.prompt}")
        else:
            self._unknown()

    def _role(self, args: str | None) -> None:
        if not args:
            self._print("Usage: .role <name> [text]...")
            return
        name, _, text = args.replace("\n", " ", 1).partition(" ")
        if not text.strip():
            self.engine.set_role(name)
            return
        previous = self.engine.role
        self.engine.set_role(name)
        try:
            self.ask(text.strip())
        finally:
            self.engine.set_role(previous)

    def _set(self, args: str | None) -> None:
        key, _, raw = (args or "").partition(" ")
        if key not in SETTABLE_KEYS or not raw.strip():
            self._print(f"Usage: .set <key> <value>  (keys: {', '.join(SETTABLE_KEYS)})")
            return
        try:
            setattr(self.config, key, _parse_value(raw.strip()))
        except ValidationError as exc:
            self._print(f"Invalid value for {key}: {exc.errors()[0]['msg']}")

    def _start_session(self, name: str | None) -> None:
        if name:
            validate_session_id(name)
        self._end_session()
        sessions = self.engine.sessions
        if name and sessions.exists(name):
            self.engine = SessionEngine.open(
                self.config, self.registry, name, transport=self._transport, sessions=sessions
            )
            self._print(f"Resumed session {name}")
            return
        session = Session(model_id=self.engine.spec.key)
        if name:
            session.id = name
        self.engine = self._new_engine(session)

    def _end_session(self) -> None:
        """Offer to save a session with unsaved messages before leaving it."""
        engine = self.engine
        if self.config.save_session or not engine.store.non_system():
            return
        try:
            answer = self._read_line(f"Save session {engine.session.id}? [y/N] ")
        except (EOFError, KeyboardInterrupt):
            return
        if answer.strip().lower() in ("y", "yes"):
            path = engine.save()
            self._print(f"Saved session to {path}")

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def ask(self, text: str, files: list[str] | None = None) -> None:
        if not text.strip() and not files:
            return
        events = self.engine.ask(text, files or ())
        streamed = False
        try:
            for event in events:
                if isinstance(event, DeltaEvent):
                    streamed = True
                    self._print(event.text, end="")
                elif isinstance(event, MetaEvent) and event.info.get("type") == "compression":
                    self._print(
                        "Session compressed: "
                        f"{event.info['before_tokens']} -> {event.info['after_tokens']} tokens"
                    )
                elif isinstance(event, DoneEvent):
                    if not streamed and event.content:
                        self._print(event.content, end="")
                    self._print()
                elif isinstance(event, ErrorEvent):
                    self._print(f"\nError: {event.kind}: {event.detail}")
        except KeyboardInterrupt:
            events.close()
            self._print("\n(cancelled)")


def main() -> None:
    """Entry point for ``chatmux-repl``."""
    from .cli import setup_logging

    setup_logging()
    config = ChatConfig.from_env()
    registry = ProviderRegistry.from_providers(config.providers)
    Repl(config, registry).run()


if __name__ == "__main__":
    main()
