"""File archives and database dumps of the panel.

Backups live flat in one directory and are identified by name::

    panel_backup_20250101_120000.tar.gz     # files (tar + gzip of panel_dir)
    database_backup_20250101_120000.sql     # database (mysqldump output)

The timestamp sorts lexicographically in chronological order. When a name is
already taken within the same second a ``-N`` suffix is added so an existing
backup is never overwritten.

Every create/restore call either succeeds or raises and removes whatever
partial output it produced. Nothing is retried automatically.
"""
from __future__ import annotations

import grp
import logging
import os
import pwd
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from .envfile import EnvStore
from .errors import (
    BackupError,
    ConfirmationDeclined,
    FileAccessError,
    NotFoundError,
    PteroctlError,
    ValidationError,
)
from .runner import CommandRunner

LOGGER = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
SECONDS_PER_DAY = 86400
_BACKUP_NAME = re.compile(
    r"(?P<prefix>panel|database)_backup_(?P<stamp>\d{8}_\d{6})(?:-(?P<seq>\d+))?"
    r"\.(?P<ext>tar\.gz|sql)"
)


class BackupKind(str, Enum):
    """Kinds of backup artefacts."""

    FILES = "files"
    DATABASE = "database"

    @property
    def prefix(self) -> str:
        """Return the file name prefix for this kind."""
        return "panel" if self is BackupKind.FILES else "database"

    @property
    def extension(self) -> str:
        """Return the file extension for this kind."""
        return "tar.gz" if self is BackupKind.FILES else "sql"


@dataclass(frozen=True)
class BackupRecord:
    """One backup artefact on disk."""

    kind: BackupKind
    created_at: datetime
    path: Path
    size_bytes: int = 0

    @property
    def name(self) -> str:
        """Return the file name, which doubles as the backup identifier."""
        return self.path.name

    @classmethod
    def from_path(cls, path: Path) -> BackupRecord | None:
        """Return a record for *path*, or None when the name is not a backup."""
        match = _BACKUP_NAME.fullmatch(path.name)
        if not match:
            return None
        kind = BackupKind.FILES if match.group("prefix") == "panel" else BackupKind.DATABASE
        if match.group("ext") != kind.extension:
            return None
        try:
            created_at = datetime.strptime(match.group("stamp"), TIMESTAMP_FORMAT)
        except ValueError:
            return None
        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        return cls(kind=kind, created_at=created_at, path=path, size_bytes=size)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "path": str(self.path),
            "size_bytes": self.size_bytes,
        }


@dataclass(frozen=True)
class DatabaseCredentials:
    """Secret supplied by the operator for one database operation."""

    password: str = field(repr=False)


@dataclass(frozen=True)
class DatabaseTarget:
    """Connection parameters read from the panel's env file."""

    host: str
    port: str
    name: str
    user: str

    def client_args(self) -> list[str]:
        """Return connection arguments shared by mysqldump and mysql."""
        return [f"--host={self.host}", f"--port={self.port}", f"--user={self.user}"]


@dataclass
class FullBackupResult:
    """Per-half outcome of a files + database backup."""

    files: BackupRecord | None = None
    database: BackupRecord | None = None
    files_error: str | None = None
    database_error: str | None = None

    @property
    def ok(self) -> bool:
        """Return True when both halves succeeded."""
        return self.files is not None and self.database is not None


@dataclass
class PruneResult:
    """Records removed by a retention sweep and those that could not be."""

    removed: list[BackupRecord] = field(default_factory=list)
    failed: list[tuple[BackupRecord, str]] = field(default_factory=list)


@dataclass(slots=True)
class BackupManager:
    """Create, list, restore and prune panel backups."""

    panel_dir: Path
    backup_dir: Path
    env_store: EnvStore
    runner: CommandRunner
    web_user: str = "www-data"
    web_group: str = "www-data"
    tar_bin: str = "tar"
    mysqldump_bin: str = "mysqldump"
    mysql_bin: str = "mysql"
    clock: Callable[[], datetime] = datetime.now

    def __post_init__(self) -> None:
        """Normalise paths after initialisation."""
        self.panel_dir = Path(self.panel_dir).expanduser()
        self.backup_dir = Path(self.backup_dir).expanduser()

    # Basic helpers -------------------------------------------------
    def ensure_root(self) -> None:
        """Ensure the backup directory exists with safe permissions."""
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.backup_dir, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupError(f"Failed to prepare backup directory {self.backup_dir}: {exc}") from exc

    def database_target(self) -> DatabaseTarget:
        """Resolve database connection parameters from the env file."""
        document = self.env_store.load()
        port = document.get("DB_PORT") or "3306"
        if not port.isdigit():
            raise ValidationError(f"DB_PORT must be numeric, got {port!r}.")
        return DatabaseTarget(
            host=document.get("DB_HOST") or "127.0.0.1",
            port=port,
            name=document.get("DB_DATABASE") or "panel",
            user=document.get("DB_USERNAME") or "pterodactyl",
        )

    # Creation ------------------------------------------------------
    def create_files_backup(self) -> BackupRecord:
        """Archive the whole panel directory into one ``.tar.gz`` file."""
        if not self.panel_dir.is_dir() or not os.access(self.panel_dir, os.R_OK | os.X_OK):
            raise BackupError(f"Panel directory {self.panel_dir} is missing or unreadable.")
        self.ensure_root()
        final_path = self._allocate_path(BackupKind.FILES)
        partial_path = final_path.with_name(f".{final_path.name}.partial")

        cmd = [self.tar_bin]
        excluded = self._nested_backup_dir()
        if excluded is not None:
            cmd.append(f"--exclude=./{excluded}")
        cmd.extend(["-czf", str(partial_path), "-C", str(self.panel_dir), "."])

        self._produce(partial_path, final_path, cmd, env=None, label="tar")
        return self._record_for(final_path)

    def create_database_backup(self, credentials: DatabaseCredentials) -> BackupRecord:
        """Dump the panel database with ``mysqldump``.

        The password travels to the child through ``MYSQL_PWD`` so it never
        shows up in the process list, the env file or the logs.
        """
        target = self.database_target()
        self.ensure_root()
        final_path = self._allocate_path(BackupKind.DATABASE)
        partial_path = final_path.with_name(f".{final_path.name}.partial")
        cmd = [
            self.mysqldump_bin,
            *target.client_args(),
            "--single-transaction",
            "--routines",
            "--triggers",
            f"--result-file={partial_path}",
            target.name,
        ]
        self._produce(
            partial_path,
            final_path,
            cmd,
            env=_password_env(credentials),
            label="mysqldump",
        )
        return self._record_for(final_path)

    def create_full_backup(self, credentials: DatabaseCredentials) -> FullBackupResult:
        """Back up files, then the database, reporting each half separately.

        Not transactional: a database failure leaves the file archive in
        place.
        """
        result = FullBackupResult()
        try:
            result.files = self.create_files_backup()
        except PteroctlError as exc:
            result.files_error = str(exc)
        try:
            result.database = self.create_database_backup(credentials)
        except PteroctlError as exc:
            result.database_error = str(exc)
        return result

    # Listing -------------------------------------------------------
    def iter_backups(self) -> Iterator[BackupRecord]:
        """Lazily yield backups found in the backup directory (unordered)."""
        if not self.backup_dir.is_dir():
            return
        try:
            with os.scandir(self.backup_dir) as entries:
                for entry in entries:
                    if not entry.is_file(follow_symlinks=False):
                        continue
                    record = BackupRecord.from_path(Path(entry.path))
                    if record is not None:
                        yield record
        except OSError as exc:
            raise FileAccessError(f"Cannot read backup directory {self.backup_dir}: {exc}") from exc

    def list_backups(self, kind: BackupKind | None = None) -> list[BackupRecord]:
        """Return backups newest first, optionally filtered by *kind*."""
        records = [
            record for record in self.iter_backups() if kind is None or record.kind is kind
        ]
        records.sort(key=lambda record: (record.created_at, record.name), reverse=True)
        return records

    def find(self, name: str) -> BackupRecord:
        """Return the backup called *name*."""
        cleaned = name.strip()
        if not cleaned or Path(cleaned).name != cleaned or cleaned in {".", ".."}:
            raise ValidationError(f"Backup name must be a plain file name, got {name!r}.")
        path = self.backup_dir / cleaned
        record = BackupRecord.from_path(path) if path.is_file() else None
        if record is None:
            raise NotFoundError(f"Backup '{cleaned}' not found in {self.backup_dir}.")
        return record

    # Restore and deletion ------------------------------------------
    def restore_files(
        self,
        backup: BackupRecord | str,
        *,
        confirmed: bool,
        destination: Path | None = None,
    ) -> BackupRecord:
        """Extract a file archive over the panel directory (or *destination*).

        Destructive: existing files are overwritten by the archive contents.
        Raises ConfirmationDeclined, before touching anything, unless
        *confirmed* is exactly True.
        """
        record = self._resolve(backup, BackupKind.FILES)
        if confirmed is not True:
            raise ConfirmationDeclined(f"Restore of {record.name} cancelled.")
        target = Path(destination) if destination is not None else self.panel_dir
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"Cannot create restore target {target}: {exc}") from exc
        self.runner.check(
            [self.tar_bin, "-xzf", str(record.path), "-C", str(target)],
            error_prefix="tar extract",
            error_cls=BackupError,
        )
        self._apply_ownership(target)
        return record

    def restore_database(
        self,
        backup: BackupRecord | str,
        credentials: DatabaseCredentials,
        *,
        confirmed: bool,
    ) -> BackupRecord:
        """Load a dump into the panel database through the ``mysql`` client."""
        record = self._resolve(backup, BackupKind.DATABASE)
        if confirmed is not True:
            raise ConfirmationDeclined(f"Restore of {record.name} cancelled.")
        target = self.database_target()
        self.runner.check(
            [self.mysql_bin, *target.client_args(), target.name],
            error_prefix="mysql import",
            error_cls=BackupError,
            env=_password_env(credentials),
            stdin_path=record.path,
        )
        return record

    def delete(self, backup: BackupRecord | str) -> BackupRecord:
        """Delete a single backup on operator request."""
        record = self._resolve(backup, None)
        try:
            record.path.unlink()
        except FileNotFoundError as exc:
            raise NotFoundError(f"Backup '{record.name}' no longer exists.") from exc
        except OSError as exc:
            raise FileAccessError(f"Failed to delete {record.path}: {exc}") from exc
        return record

    def prune_older_than(self, age_days: int) -> PruneResult:
        """Delete archives and dumps whose mtime is older than *age_days*.

        Best effort: a file that cannot be removed is logged and skipped.
        """
        if age_days < 0:
            raise ValidationError("Retention age must be zero or a positive number of days.")
        cutoff = self.clock().timestamp() - age_days * SECONDS_PER_DAY
        result = PruneResult()
        for record in list(self.iter_backups()):
            try:
                if record.path.stat().st_mtime >= cutoff:
                    continue
                record.path.unlink()
            except OSError as exc:
                LOGGER.warning("Could not prune backup %s: %s", record.path, exc)
                result.failed.append((record, str(exc)))
                continue
            result.removed.append(record)
        return result

    # ------------------------------------------------------------------
    def _allocate_path(self, kind: BackupKind) -> Path:
        stamp = self.clock().strftime(TIMESTAMP_FORMAT)
        base = f"{kind.prefix}_backup_{stamp}"
        candidate = self.backup_dir / f"{base}.{kind.extension}"
        sequence = 2
        while candidate.exists():
            candidate = self.backup_dir / f"{base}-{sequence}.{kind.extension}"
            sequence += 1
        return candidate

    def _nested_backup_dir(self) -> str | None:
        try:
            relative = self.backup_dir.resolve().relative_to(self.panel_dir.resolve())
        except ValueError:
            return None
        text = relative.as_posix()
        return text if text != "." else None

    def _produce(
        self,
        partial_path: Path,
        final_path: Path,
        cmd: list[str],
        *,
        env: dict[str, str] | None,
        label: str,
    ) -> None:
        try:
            self.runner.check(cmd, error_prefix=label, error_cls=BackupError, env=env)
            os.replace(partial_path, final_path)
        except OSError as exc:
            partial_path.unlink(missing_ok=True)
            raise BackupError(f"Failed to create {final_path.name}: {exc}") from exc
        except BaseException:
            partial_path.unlink(missing_ok=True)
            raise
        try:
            os.chmod(final_path, 0o640)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            LOGGER.warning("Could not restrict permissions on %s: %s", final_path, exc)

    def _record_for(self, path: Path) -> BackupRecord:
        record = BackupRecord.from_path(path)
        if record is None:  # pragma: no cover - names are generated above
            raise BackupError(f"Unexpected backup name {path.name}.")
        return record

    def _resolve(self, backup: BackupRecord | str, kind: BackupKind | None) -> BackupRecord:
        if isinstance(backup, BackupRecord):
            if not backup.path.is_file():
                raise NotFoundError(f"Backup '{backup.name}' not found.")
            record = backup
        else:
            record = self.find(backup)
        if kind is not None and record.kind is not kind:
            raise ValidationError(f"Backup '{record.name}' is not a {kind.value} backup.")
        return record

    def _apply_ownership(self, root: Path) -> None:
        try:
            uid = pwd.getpwnam(self.web_user).pw_uid
            gid = grp.getgrnam(self.web_group).gr_gid
        except KeyError as exc:
            raise BackupError(
                f"Unknown web user/group {self.web_user}:{self.web_group}."
            ) from exc
        try:
            _chown(root, uid, gid)
            for current, dirs, files in os.walk(root):
                for name in (*dirs, *files):
                    _chown(Path(current) / name, uid, gid)
        except OSError as exc:
            raise BackupError(f"Failed to reset ownership under {root}: {exc}") from exc


def _chown(path: Path, uid: int, gid: int) -> None:
    info = path.lstat()
    if (info.st_uid, info.st_gid) == (uid, gid):
        return
    os.chown(path, uid, gid, follow_symlinks=False)


def _password_env(credentials: DatabaseCredentials) -> dict[str, str] | None:
    if not credentials.password:
        return None
    return {"MYSQL_PWD": credentials.password}


__all__ = [
    "BackupError",
    "BackupKind",
    "BackupManager",
    "BackupRecord",
    "DatabaseCredentials",
    "DatabaseTarget",
    "FullBackupResult",
    "PruneResult",
]
