"""Command dispatcher and interactive shell for geminiflow."""

from __future__ import annotations

import asyncio
import atexit
import logging
import os
import shlex
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from rich.console import Console

from ..core.config import AppConfig
from ..core.models import AgentMode, RateLimitConfigError, UsageSnapshot
from ..services.container import ServiceContainer
from ..services.gemini_client import GeminiConfigError, GeminiError

console = Console()

PROMPT = "gf> "
DEFAULT_MODE = AgentMode.ASK
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class CommandError(Exception):
    """Raised when command parsing or validation fails."""


_GLOBAL_LOOP = asyncio.new_event_loop()
asyncio.set_event_loop(_GLOBAL_LOOP)


def _shutdown_loop() -> None:
    pending = [task for task in asyncio.all_tasks(_GLOBAL_LOOP) if not task.done()]
    for task in pending:
        task.cancel()
    if pending:
        _GLOBAL_LOOP.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
    _GLOBAL_LOOP.close()


atexit.register(_shutdown_loop)


def _run(coro):
    task = _GLOBAL_LOOP.create_task(coro)
    try:
        return _GLOBAL_LOOP.run_until_complete(task)
    except KeyboardInterrupt:
        # a task left pending here would still record permits on the next run
        task.cancel()
        _GLOBAL_LOOP.run_until_complete(asyncio.gather(task, return_exceptions=True))
        raise


def _timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _format_reset(snapshot: UsageSnapshot) -> str:
    if snapshot.remaining > 0:
        return "now"
    return datetime.fromtimestamp(snapshot.reset_at).strftime("%Y-%m-%d %H:%M:%S")


def configure_logging(verbose: bool = False) -> None:
    level_name = "DEBUG" if verbose else os.environ.get("GEMINIFLOW_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.WARNING), format=LOG_FORMAT)


@dataclass(slots=True)
class CliSession:
    """Context manager owning the service container for one CLI run."""

    services: ServiceContainer

    @classmethod
    def create(cls) -> "CliSession":
        config = AppConfig.load()
        return cls(services=ServiceContainer.build(config))

    def __enter__(self) -> "CliSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        _run(self.services.aclose())


class CommandDispatcher:
    """Parse and execute prompt commands."""

    def __init__(self, session: CliSession) -> None:
        self.session = session
        self.services = session.services

    def execute(self, tokens: Sequence[str]) -> int:
        if not tokens:
            return 0
        command = tokens[0].lower()
        handler = getattr(self, f"do_{command}", None)
        if handler is None:
            raise CommandError(f"Unknown command: {command}")
        return handler(tokens[1:]) or 0

    def do_help(self, _: Sequence[str]) -> int:
        console.print("Available commands: ask, stream, status, wait, health, modes, help, quit")
        console.print("ask/stream accept --mode MODE before the prompt. Ctrl+D or 'quit' exits.")
        return 0

    def do_ask(self, args: Sequence[str]) -> int:
        mode, prompt = self._parse_prompt_args(args, "ask")
        text = _run(self.services.client.execute(prompt, mode))
        console.print(text, markup=False, highlight=False)
        return 0

    def do_stream(self, args: Sequence[str]) -> int:
        mode, prompt = self._parse_prompt_args(args, "stream")

        async def _consume() -> None:
            async for chunk in self.services.client.stream_execute(prompt, mode):
                console.print(chunk, end="", markup=False, highlight=False)
            console.print()

        _run(_consume())
        return 0

    def do_status(self, _: Sequence[str]) -> int:
        usage = self.services.client.get_rate_limit_status()
        console.print(f"[{_timestamp()}] RATE LIMITS")
        self._render_tier("minute", usage.short, self.services.limiter.short.limit.max_requests)
        self._render_tier("daily", usage.long, self.services.limiter.long.limit.max_requests)
        return 0

    def do_wait(self, _: Sequence[str]) -> int:
        _run(self.services.limiter.check_limit())
        console.print(f"[{_timestamp()}] Ready: a request would be admitted now.")
        return 0

    def do_health(self, _: Sequence[str]) -> int:
        healthy = _run(self.services.client.check_health())
        status = "OK" if healthy else "FAIL"
        console.print(f"[{_timestamp()}] HEALTH {status} (model {self.services.config.model})")
        return 0 if healthy else 1

    def do_modes(self, _: Sequence[str]) -> int:
        for mode in AgentMode:
            console.print(f"- {mode.value}: temperature={self.services.client.mode_temperature(mode):.1f}")
        return 0

    def do_quit(self, _: Sequence[str]) -> int:
        raise SystemExit(0)

    # Parsing helpers -------------------------------------------------

    def _parse_prompt_args(self, args: Sequence[str], action: str) -> Tuple[AgentMode, str]:
        tokens = list(args)
        mode = DEFAULT_MODE
        if tokens and tokens[0] in {"--mode", "-m"}:
            if len(tokens) < 2:
                raise CommandError(f"Usage: {action} [--mode MODE] PROMPT")
            mode = self._parse_mode(tokens[1])
            tokens = tokens[2:]
        prompt = " ".join(tokens).strip()
        if not prompt:
            raise CommandError(f"Usage: {action} [--mode MODE] PROMPT")
        return mode, prompt

    def _parse_mode(self, token: str) -> AgentMode:
        try:
            return AgentMode(token.lower())
        except ValueError as exc:
            raise CommandError(f"Unknown mode: {token}; see 'modes'") from exc

    def _render_tier(self, label: str, snapshot: UsageSnapshot, limit: int) -> None:
        console.print(
            f"- {label}: used={snapshot.used}/{limit} remaining={snapshot.remaining} reset={_format_reset(snapshot)}"
        )


def _extract_flags(argv: Sequence[str]) -> Tuple[bool, List[str]]:
    verbose = False
    remaining: List[str] = []
    for arg in argv:
        if arg in {"-v", "--verbose"}:
            verbose = True
            continue
        if arg in {"-h", "--help"}:
            return verbose, ["help"]
        remaining.append(arg)
    return verbose, remaining


def _open_session() -> Optional[CliSession]:
    try:
        return CliSession.create()
    except (GeminiConfigError, RateLimitConfigError) as exc:
        console.print(f"Configuration error: {exc}")
        return None


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    argv = list(argv if argv is not None else sys.argv[1:])
    verbose, remaining = _extract_flags(argv)
    configure_logging(verbose)

    if not remaining:
        return run_repl()

    session = _open_session()
    if session is None:
        return 1
    with session:
        dispatcher = CommandDispatcher(session)
        try:
            return dispatcher.execute(remaining)
        except CommandError as exc:
            console.print(f"Error: {exc}")
            return 1
        except GeminiError as exc:
            console.print(f"Gemini error: {exc}")
            return 1


def run_repl() -> int:
    session = _open_session()
    if session is None:
        return 1
    with session:
        dispatcher = CommandDispatcher(session)
        console.print("Type 'help' for available commands, 'quit' to exit.")
        while True:
            try:
                raw = input(PROMPT)
            except EOFError:
                console.print("\nExited.")
                return 0
            except KeyboardInterrupt:
                console.print("\nInterrupted. Type 'quit' to exit.")
                continue
            command_line = raw.strip()
            if not command_line:
                continue
            try:
                tokens = shlex.split(command_line)
            except ValueError as exc:
                console.print(f"Parse error: {exc}")
                continue
            if not tokens:
                continue
            if tokens[0].lower() in {"quit", "exit"}:
                console.print("Bye.")
                return 0
            try:
                dispatcher.execute(tokens)
            except CommandError as exc:
                console.print(f"Error: {exc}")
            except SystemExit:
                console.print("Bye.")
                return 0
            except GeminiError as exc:
                console.print(f"Gemini error: {exc}")
            except KeyboardInterrupt:
                console.print("\nInterrupted. Type 'quit' to exit.")
    return 0


__all__ = ["run_cli", "run_repl", "configure_logging"]
