"""Structured operation logging for pteroctl.

Every console action runs inside :meth:`StructuredLogger.operation`. When the
scope closes, one JSON record is appended to ``operations.jsonl`` and one
human-readable line (``YYYY-MM-DD HH:MM:SS - message``) to ``pteroctl.log``.
The human log is what the "View logs" menu shows for the tool itself.

Logging must never take the console down: if the log directory cannot be
created or a write fails, the logger disables itself and carries on.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import secrets
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime
from pathlib import Path
from types import TracebackType

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "pteroctl.log"
_REDACTED = "***"
_SENSITIVE_MARKERS = ("password", "secret", "token", "credential")


def _sanitize(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {
            str(key): _REDACTED if _is_sensitive(str(key)) else _sanitize(item)
            for key, item in value.items()
        }
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize(item) for item in value]
    return str(value)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SENSITIVE_MARKERS)


def _current_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - depends on passwd database
        user = "unknown"
    return {"user": user, "uid": os.geteuid() if hasattr(os, "geteuid") else None}


class OperationScope:
    """Collects steps and the final result of a single console operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Bind the scope to *logger* for *command*."""
        self._logger = logger
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.actor: dict[str, object] = _current_actor()
        self.operation_id = secrets.token_hex(6)
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started_at = logger.now()
        self._started_monotonic = time.monotonic()

    def __enter__(self) -> OperationScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self.result is None:
            if exc is not None:
                self.error(str(exc) or type(exc).__name__)
            else:
                self.success("Completed.")
        self._logger._write(self._record())

    # Result helpers ------------------------------------------------
    def add_step(self, name: str, *, status: str = "success", detail: str = "") -> None:
        """Record an intermediate step."""
        self.steps.append({"name": name, "status": status, "detail": detail})

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success", message, changed=changed, backups=backups, context=context
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=errors if errors is not None else [message],
            rc=rc,
            changed=changed,
            backups=backups,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
            "context": _sanitize(dict(context or {})),
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result

    def _record(self) -> dict[str, object]:
        duration_ms = int((time.monotonic() - self._started_monotonic) * 1000)
        return {
            "id": self.operation_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "actor": self.actor,
            "started_at": self._started_at.isoformat(timespec="seconds"),
            "duration_ms": duration_ms,
            "steps": list(self.steps),
            "result": self.result,
        }


class StructuredLogger:
    """Append operation records to the pteroctl log directory."""

    def __init__(
        self,
        logs_dir: Path,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Prepare *logs_dir*, disabling logging when it cannot be created."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._clock = clock or datetime.now
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self.logs_dir / HUMAN_LOG_NAME
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Logging disabled; cannot create %s: %s", self.logs_dir, exc)
            self._enabled = False

    @property
    def human_log_path(self) -> Path:
        """Return the path of the human-readable log file."""
        return self._human_log_path

    def now(self) -> datetime:
        """Return the current local time from the configured clock."""
        return self._clock()

    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> OperationScope:
        """Return a scope that records *command* when it exits."""
        return OperationScope(self, command, args=args, target=target)

    def message(self, text: str) -> None:
        """Append a free-form line to the human-readable log."""
        self._append(self._human_log_path, self._human_line(text))

    # ------------------------------------------------------------------
    def _write(self, record: Mapping[str, object]) -> None:
        payload = json.dumps(record, sort_keys=False) + "\n"
        if not self._append(self._operations_log_path, payload):
            return
        result = record.get("result")
        status = "unknown"
        message = ""
        if isinstance(result, Mapping):
            status = str(result.get("status", "unknown"))
            message = str(result.get("message", ""))
        self._append(
            self._human_log_path,
            self._human_line(f"[{status.upper()}] {record.get('command')}: {message}"),
        )

    def _human_line(self, text: str) -> str:
        return f"{self.now():%Y-%m-%d %H:%M:%S} - {text}\n"

    def _append(self, path: Path, text: str) -> bool:
        if not self._enabled:
            return False
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(text)
        except OSError as exc:
            LOGGER.warning("Logging disabled after write failure on %s: %s", path, exc)
            self._enabled = False
            return False
        return True


__all__ = ["OperationScope", "StructuredLogger"]
