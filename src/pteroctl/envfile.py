"""Line model and atomic editor for the panel's ``.env`` file.

The file is parsed into an ordered list of lines. Lines of the form
``KEY=VALUE`` become :class:`ConfigEntry` objects; everything else (comments,
blank lines, malformed lines) is kept verbatim. Rendering an unmodified parse
reproduces the input exactly, so a write touches only the lines it must.

Quoting convention on write: values made only of ``[A-Za-z0-9_./:@,+-]`` (or
empty) are written bare, anything else is wrapped in double quotes with
``\\``, ``"`` and ``$`` backslash-escaped. Reads reverse that, so
``set(key, value)`` followed by ``get(key)`` returns ``value`` for any value
without a line break.

When a key is defined more than once the first definition wins for reads, and
the next write to that key collapses the duplicates into the first line.
"""
from __future__ import annotations

import logging
import os
import re
import stat
import tempfile
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path

from .errors import FileAccessError, NotFoundError, ValidationError

LOGGER = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_.]*")
_ENTRY_PATTERN = re.compile(r"(?P<key>[A-Za-z_][A-Za-z0-9_.]*)=(?P<value>.*)", re.DOTALL)
_BARE_VALUE = re.compile(r"[A-Za-z0-9_./:@,+\-]*")
_ESCAPES = {"\\": "\\", '"': '"', "$": "$"}


def encode_value(value: str) -> str:
    """Return *value* formatted for the right-hand side of an assignment."""
    if _BARE_VALUE.fullmatch(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$")
    return f'"{escaped}"'


def decode_value(raw: str) -> str:
    """Return the logical value of an assignment's right-hand side."""
    text = raw.strip()
    if text.startswith('"'):
        chars: list[str] = []
        index = 1
        while index < len(text):
            char = text[index]
            if char == "\\" and index + 1 < len(text) and text[index + 1] in _ESCAPES:
                chars.append(_ESCAPES[text[index + 1]])
                index += 2
                continue
            if char == '"':
                return "".join(chars)
            chars.append(char)
            index += 1
        # Unterminated quote: hand back what the operator wrote.
        return text
    if text.startswith("'"):
        closing = text.find("'", 1)
        return text[1:closing] if closing != -1 else text
    comment = re.search(r"\s#", text)
    if comment:
        return text[: comment.start()].rstrip()
    return text


def validate_key(key: str) -> str:
    """Return *key* when it is a valid variable name, else raise."""
    if not isinstance(key, str) or not KEY_PATTERN.fullmatch(key):
        raise ValidationError(f"Invalid environment key {key!r}.")
    return key


def validate_value(key: str, value: str) -> str:
    """Return *value* when it can be stored on a single line, else raise."""
    if not isinstance(value, str):
        raise ValidationError(f"Value for {key} must be a string.")
    if "\n" in value or "\r" in value:
        raise ValidationError(f"Value for {key} must not contain a line break.")
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ValidationError(f"Value for {key} is not valid UTF-8 text.") from exc
    return value


def _split_eol(raw: str) -> tuple[str, str]:
    if raw.endswith("\r\n"):
        return raw[:-2], "\r\n"
    if raw.endswith("\n"):
        return raw[:-1], "\n"
    return raw, ""


@dataclass
class ConfigEntry:
    """A single ``KEY=VALUE`` line."""

    key: str
    value: str
    raw: str


class EnvironmentFile:
    """Ordered lines of an env file, entries and verbatim text alike."""

    def __init__(self, lines: list[ConfigEntry | str] | None = None) -> None:
        """Wrap pre-parsed *lines* (use :meth:`parse` for text)."""
        self.lines: list[ConfigEntry | str] = list(lines or [])

    @classmethod
    def parse(cls, text: str) -> EnvironmentFile:
        """Parse *text* without normalising line endings."""
        pieces = text.split("\n")
        raw_lines = [piece + "\n" for piece in pieces[:-1]]
        if pieces[-1]:
            raw_lines.append(pieces[-1])
        lines: list[ConfigEntry | str] = []
        for raw in raw_lines:
            body, _ = _split_eol(raw)
            match = _ENTRY_PATTERN.fullmatch(body)
            if match:
                lines.append(
                    ConfigEntry(
                        key=match.group("key"),
                        value=decode_value(match.group("value")),
                        raw=raw,
                    )
                )
            else:
                lines.append(raw)
        return cls(lines)

    def render(self) -> str:
        """Return the file contents."""
        return "".join(line.raw if isinstance(line, ConfigEntry) else line for line in self.lines)

    def entries(self) -> Iterator[ConfigEntry]:
        """Yield entries in file order."""
        for line in self.lines:
            if isinstance(line, ConfigEntry):
                yield line

    def get(self, key: str) -> str | None:
        """Return the value of the first definition of *key*."""
        for entry in self.entries():
            if entry.key == key:
                return entry.value
        return None

    def set(self, key: str, value: str) -> bool:
        """Update or append *key*; return True when the text changed."""
        validate_key(key)
        validate_value(key, value)
        before = self.render()
        body = f"{key}={encode_value(value)}"

        first: int | None = None
        duplicates: list[int] = []
        for index, line in enumerate(self.lines):
            if isinstance(line, ConfigEntry) and line.key == key:
                if first is None:
                    first = index
                else:
                    duplicates.append(index)

        if first is None:
            self._append(ConfigEntry(key=key, value=value, raw=f"{body}\n"))
        else:
            current = self.lines[first]
            assert isinstance(current, ConfigEntry)
            _, eol = _split_eol(current.raw)
            self.lines[first] = ConfigEntry(key=key, value=value, raw=f"{body}{eol}")
            for index in reversed(duplicates):
                del self.lines[index]
            if duplicates:
                self._terminate_last_line_if_needed(before)
        return self.render() != before

    def _append(self, entry: ConfigEntry) -> None:
        if self.lines:
            last = self.lines[-1]
            last_raw = last.raw if isinstance(last, ConfigEntry) else last
            if not last_raw.endswith("\n"):
                if isinstance(last, ConfigEntry):
                    last.raw = f"{last.raw}\n"
                else:
                    self.lines[-1] = f"{last}\n"
        self.lines.append(entry)

    def _terminate_last_line_if_needed(self, before: str) -> None:
        # Removing a trailing duplicate must not leave the file ending on a
        # line that originally had a terminator.
        if not before.endswith("\n") or not self.lines:
            return
        last = self.lines[-1]
        if isinstance(last, ConfigEntry):
            if not last.raw.endswith("\n"):
                last.raw = f"{last.raw}\n"
        elif not last.endswith("\n"):
            self.lines[-1] = f"{last}\n"


@dataclass(slots=True)
class EnvStore:
    """Read and atomically rewrite the panel's environment file."""

    path: Path

    def __post_init__(self) -> None:
        """Normalise the path after initialisation."""
        self.path = Path(self.path).expanduser()

    def load(self) -> EnvironmentFile:
        """Parse the file, raising NotFoundError when it does not exist."""
        try:
            with self.path.open("r", encoding="utf-8", newline="") as handle:
                text = handle.read()
        except FileNotFoundError as exc:
            raise NotFoundError(f"Environment file {self.path} does not exist.") from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise FileAccessError(f"Failed to read {self.path}: {exc}") from exc
        return EnvironmentFile.parse(text)

    def get(self, key: str) -> str | None:
        """Return the value for *key*, or None when absent."""
        return self.load().get(key)

    def entries(self) -> list[ConfigEntry]:
        """Return every entry in file order."""
        return list(self.load().entries())

    def set(self, key: str, value: str) -> bool:
        """Update or append *key* and persist; return True when changed."""
        return bool(self.set_many({key: value}))

    def set_many(self, values: Mapping[str, str]) -> list[str]:
        """Apply several updates with a single atomic write.

        Every key and value is validated before the file is touched. Returns
        the keys whose lines changed.
        """
        for key, value in values.items():
            validate_key(key)
            validate_value(key, value)
        document = self.load()
        changed = [key for key, value in values.items() if document.set(key, value)]
        if changed:
            self._persist(document.render())
        return changed

    def _persist(self, text: str) -> None:
        target = self.path.resolve()
        try:
            original = target.stat()
        except FileNotFoundError as exc:
            raise NotFoundError(f"Environment file {self.path} does not exist.") from exc
        except OSError as exc:
            raise FileAccessError(f"Failed to stat {self.path}: {exc}") from exc

        try:
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
        except OSError as exc:
            raise FileAccessError(f"Failed to write {self.path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, stat.S_IMODE(original.st_mode))
            _copy_ownership(tmp_path, original)
            os.replace(tmp_path, target)
        except OSError as exc:
            raise FileAccessError(f"Failed to write {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def _copy_ownership(path: Path, original: os.stat_result) -> None:
    current = path.stat()
    if (current.st_uid, current.st_gid) == (original.st_uid, original.st_gid):
        return
    try:
        os.chown(path, original.st_uid, original.st_gid)
    except PermissionError as exc:  # pragma: no cover - only root may hand files to other users
        LOGGER.warning("Could not restore ownership of %s: %s", path, exc)


__all__ = [
    "ConfigEntry",
    "EnvStore",
    "EnvironmentFile",
    "decode_value",
    "encode_value",
    "validate_key",
    "validate_value",
]
