"""Operator input sources.

The console never reads stdin directly; it asks an :class:`InputProvider`.
:class:`ConsoleInput` talks to a terminal through Rich, :class:`ScriptedInput`
replays canned answers (tests, dry runs). Both treat confirmation as a plain
boolean that is only True for an explicit ``y``/``yes``.
"""
from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from typing import Protocol

from rich.console import Console

AFFIRMATIVE_ANSWERS = frozenset({"y", "yes"})


def is_affirmative(answer: str | None) -> bool:
    """Return True only for an explicit yes; everything else means no."""
    return (answer or "").strip().lower() in AFFIRMATIVE_ANSWERS


class InputProvider(Protocol):
    """Blocking source of operator answers."""

    def ask(self, prompt: str, *, default: str = "") -> str:
        """Return a line of input, or *default* when the answer is blank."""

    def secret(self, prompt: str) -> str:
        """Return input without echoing it."""

    def confirm(self, prompt: str) -> bool:
        """Return True only when the operator explicitly agrees."""

    def pause(self) -> None:
        """Wait for the operator before redrawing the menu."""


class ConsoleInput:
    """Read answers from the terminal through a Rich console."""

    def __init__(self, console: Console) -> None:
        """Bind to *console*."""
        self.console = console

    def ask(self, prompt: str, *, default: str = "") -> str:
        """Prompt for a line; blank answers fall back to *default*."""
        answer = self.console.input(f"{prompt}: ").strip()
        return answer or default

    def secret(self, prompt: str) -> str:
        """Prompt for a password without echo."""
        return self.console.input(f"{prompt}: ", password=True)

    def confirm(self, prompt: str) -> bool:
        """Prompt with a ``(y/N)`` suffix; end of input counts as no."""
        try:
            answer = self.console.input(f"{prompt} (y/N): ")
        except EOFError:
            return False
        return is_affirmative(answer)

    def pause(self) -> None:
        """Wait for Enter."""
        try:
            self.console.input("Press Enter to continue...")
        except EOFError:
            return


class ScriptedInput:
    """Replay a fixed list of answers; raises EOFError once exhausted."""

    def __init__(self, answers: Iterable[str]) -> None:
        """Queue *answers* in order."""
        self._answers: deque[str] = deque(answers)
        self.prompts: list[str] = []

    @property
    def remaining(self) -> int:
        """Return how many answers are still queued."""
        return len(self._answers)

    def _next(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self._answers:
            raise EOFError(f"No scripted answer for prompt {prompt!r}.")
        return self._answers.popleft()

    def ask(self, prompt: str, *, default: str = "") -> str:
        """Return the next answer, or *default* when it is blank."""
        return self._next(prompt).strip() or default

    def secret(self, prompt: str) -> str:
        """Return the next answer verbatim."""
        return self._next(prompt)

    def confirm(self, prompt: str) -> bool:
        """Consume the next answer as a yes/no."""
        return is_affirmative(self._next(prompt))

    def pause(self) -> None:
        """Pauses do not consume answers."""


__all__ = ["ConsoleInput", "InputProvider", "ScriptedInput", "is_affirmative"]
