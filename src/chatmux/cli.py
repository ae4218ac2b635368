"""One-shot command line interface."""

from __future__ import annotations

import argparse
import logging
import os
import subprocess
import sys

from .config import ChatConfig
from .engine import SessionEngine
from .errors import ChatError
from .messages import DeltaEvent, DoneEvent, ErrorEvent
from .registry import ProviderRegistry
from .repl import Repl
from .roles import SHELL_ROLE, RoleRegistry, detect_shell, extract_shell_command
from .session import SessionStore, validate_session_id
from .telemetry import ChatTracer, TelemetryConfig, set_tracer

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    level = os.environ.get("CHATMUX_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chatmux", description="Chat with many LLM providers")
    parser.add_argument("-m", "--model", help="Model id, e.g. openai:gpt-4o")
    parser.add_argument("-r", "--role", help="Use a role")
    parser.add_argument(
        "-s", "--session", nargs="?", const="", default=None, help="Create or reuse a session"
    )
    parser.add_argument("-e", "--execute", action="store_true", help="Generate and run a shell command")
    parser.add_argument("-f", "--file", action="append", default=[], help="Attach a file")
    parser.add_argument("--no-stream", action="store_true", help="Wait for the full answer")
    parser.add_argument("--list-models", action="store_true", help="List all available models")
    parser.add_argument("--list-roles", action="store_true", help="List all roles")
    parser.add_argument("--list-sessions", action="store_true", help="List saved sessions")
    parser.add_argument("text", nargs="*", help="Input text")
    return parser


def _read_stdin() -> str:
    if sys.stdin is None or sys.stdin.isatty():
        return ""
    return sys.stdin.read()


def _stream(engine: SessionEngine, text: str, files: list[str]) -> str | None:
    """Print a turn as it streams; return the answer, or ``None`` on error."""
    parts: list[str] = []
    events = engine.ask(text, files)
    try:
        for event in events:
            if isinstance(event, DeltaEvent):
                parts.append(event.text)
                print(event.text, end="", flush=True)  # noqa: T201
            elif isinstance(event, DoneEvent):
                if not parts and event.content:
                    parts.append(event.content)
                    print(event.content, end="")  # noqa: T201
                print()  # noqa: T201
            elif isinstance(event, ErrorEvent):
                print(f"Error: {event.kind}: {event.detail}", file=sys.stderr)  # noqa: T201
                return None
    except KeyboardInterrupt:
        events.close()
        return None
    return "".join(parts)


def _execute(engine: SessionEngine, text: str) -> int:
    engine.set_role(SHELL_ROLE)
    try:
        answer = engine.chat(text)
    except (ChatError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)  # noqa: T201
        return 1
    command = extract_shell_command(answer)
    print(command)  # noqa: T201
    if not sys.stdin.isatty():
        return 0
    confirm = input("Execute? [y/N] ")
    if confirm.strip().lower() not in ("y", "yes"):
        return 0
    _os_name, shell = detect_shell()
    if shell in ("cmd", "powershell"):
        argv = [shell, "/C" if shell == "cmd" else "-Command", command]
    else:
        argv = [shell, "-c", command]
    logger.info("executing generated command with %s", shell)
    return subprocess.run(argv, check=False).returncode


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``chatmux``."""
    args = build_parser().parse_args(argv)
    setup_logging()
    tracer = ChatTracer(TelemetryConfig.from_env())
    tracer.init()
    set_tracer(tracer)
    try:
        return _run(args)
    finally:
        tracer.shutdown()


def _run(args: argparse.Namespace) -> int:
    config = ChatConfig.from_env()
    if args.model:
        config.model = args.model
    if args.no_stream:
        config.stream = False
    registry = ProviderRegistry.from_providers(config.providers)
    sessions = SessionStore(config.sessions_dir)

    if args.list_models:
        for spec in registry.list():
            print(spec.key)  # noqa: T201
        return 0
    if args.list_roles:
        for name in RoleRegistry(config.roles).names():
            print(name)  # noqa: T201
        return 0
    if args.list_sessions:
        for name in sessions.list():
            print(name)  # noqa: T201
        return 0

    try:
        if args.session and sessions.exists(args.session):
            engine = SessionEngine.open(config, registry, args.session, sessions=sessions)
            if args.model:
                engine.set_model(args.model)
        else:
            engine = SessionEngine(config, registry, sessions=sessions)
            if args.session:
                engine.session.id = validate_session_id(args.session)
        if args.role and not args.execute:
            engine.set_role(args.role)
    except (ChatError, KeyError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)  # noqa: T201
        return 1

    text = " ".join(args.text)
    piped = _read_stdin()
    if piped:
        text = f"{piped}\n{text}" if text else piped

    if args.execute:
        return _execute(engine, text)
    if not text and not args.file:
        Repl(config, registry, engine=engine).run()
        return 0

    try:
        answer = _stream(engine, text, args.file)
    except (ChatError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)  # noqa: T201
        return 1
    if args.session is not None and answer is not None:
        engine.save()
    return 0 if answer is not None else 1


if __name__ == "__main__":
    sys.exit(main())
