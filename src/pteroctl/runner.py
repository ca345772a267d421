"""Synchronous execution of external tools.

Every external program pteroctl touches (tar, mysqldump, systemctl, php
artisan, composer, curl) goes through :class:`CommandRunner`. Commands are
waited on without a timeout; callers only look at the exit status, except
where a caller documents that it reads ``stdout``.
"""
from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .errors import CommandError, PteroctlError

MISSING_EXECUTABLE_RC = 127


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of one external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return True when the command exited with status zero."""
        return self.returncode == 0

    @property
    def message(self) -> str:
        """Return the most useful diagnostic text for a failed command."""
        return self.stderr.strip() or self.stdout.strip() or f"exit status {self.returncode}"


class CommandRunner:
    """Run external commands and report their exit status."""

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        stdin_path: Path | None = None,
        capture_output: bool = True,
    ) -> CommandResult:
        """Run *args* to completion and return the result.

        *env* is merged over the current process environment. *stdin_path*
        feeds a file to the child's standard input. With
        ``capture_output=False`` the child writes straight to the terminal,
        which long-running update steps use so the operator sees progress.
        A missing executable is reported as exit status 127 rather than an
        exception.
        """
        command = [str(arg) for arg in args]
        child_env: dict[str, str] | None = None
        if env:
            child_env = os.environ.copy()
            child_env.update(env)
        try:
            if stdin_path is not None:
                with stdin_path.open("rb") as stdin:
                    completed = self._spawn(command, cwd, child_env, stdin, capture_output)
            else:
                completed = self._spawn(command, cwd, child_env, None, capture_output)
        except FileNotFoundError as exc:
            return CommandResult(
                args=tuple(command),
                returncode=MISSING_EXECUTABLE_RC,
                stderr=f"{command[0]} not found: {exc}",
            )
        return CommandResult(
            args=tuple(command),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def check(
        self,
        args: Sequence[str],
        *,
        error_prefix: str | None = None,
        error_cls: type[PteroctlError] = CommandError,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        stdin_path: Path | None = None,
        capture_output: bool = True,
    ) -> CommandResult:
        """Run *args* and raise *error_cls* when the exit status is non-zero."""
        result = self.run(
            args,
            cwd=cwd,
            env=env,
            stdin_path=stdin_path,
            capture_output=capture_output,
        )
        if not result.ok:
            prefix = error_prefix or " ".join(str(arg) for arg in args[:2])
            raise error_cls(f"{prefix} failed (exit {result.returncode}): {result.message}")
        return result

    @staticmethod
    def _spawn(
        command: list[str],
        cwd: Path | None,
        env: dict[str, str] | None,
        stdin: object,
        capture_output: bool,
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.run(  # noqa: S603 - arguments are never passed through a shell
            command,
            cwd=str(cwd) if cwd is not None else None,
            env=env,
            stdin=stdin,  # type: ignore[arg-type]
            capture_output=capture_output,
            text=True,
            check=False,
        )


__all__ = ["CommandResult", "CommandRunner", "MISSING_EXECUTABLE_RC"]
