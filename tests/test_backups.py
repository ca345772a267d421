"""Tests for backup creation, listing, restore and pruning."""
from __future__ import annotations

import filecmp
import grp
import os
import pwd
import shutil
import tarfile
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import pytest

from pteroctl import backups as backups_module
from pteroctl.backups import (
    SECONDS_PER_DAY,
    BackupKind,
    BackupManager,
    BackupRecord,
    DatabaseCredentials,
)
from pteroctl.envfile import EnvStore
from pteroctl.errors import (
    BackupError,
    ConfirmationDeclined,
    FileAccessError,
    NotFoundError,
    ValidationError,
)
from pteroctl.runner import CommandRunner

from conftest import FakeRunner, RecordedCall

requires_tar = pytest.mark.skipif(shutil.which("tar") is None, reason="tar is not installed")


def _current_user() -> tuple[str, str]:
    return pwd.getpwuid(os.getuid()).pw_name, grp.getgrgid(os.getgid()).gr_name


def _manager(
    panel_dir: Path,
    backup_dir: Path,
    env_store: EnvStore,
    runner: CommandRunner,
    clock: Callable[[], datetime],
) -> BackupManager:
    user, group = _current_user()
    return BackupManager(
        panel_dir=panel_dir,
        backup_dir=backup_dir,
        env_store=env_store,
        runner=runner,
        web_user=user,
        web_group=group,
        clock=clock,
    )


def _write_tar_output(call: RecordedCall) -> None:
    index = call.args.index("-czf")
    Path(call.args[index + 1]).write_bytes(b"archive")


def _write_dump_output(call: RecordedCall) -> None:
    for arg in call.args:
        if arg.startswith("--result-file="):
            Path(arg.split("=", 1)[1]).write_text("-- dump\n", encoding="utf-8")


def _assert_same_tree(left: Path, right: Path) -> None:
    comparison = filecmp.dircmp(left, right)
    assert comparison.left_only == []
    assert comparison.right_only == []
    assert comparison.funny_files == []
    _, mismatch, errors = filecmp.cmpfiles(left, right, comparison.common_files, shallow=False)
    assert mismatch == []
    assert errors == []
    for name in comparison.common_dirs:
        _assert_same_tree(left / name, right / name)


def _touch_backup(directory: Path, name: str, *, age_days: float, now: datetime) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_bytes(b"x")
    stamp = now.timestamp() - age_days * SECONDS_PER_DAY
    os.utime(path, (stamp, stamp))
    return path


def test_files_backup_name_and_collision_suffix(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """Archives are named from the clock and never overwrite each other."""
    fake_runner.on("tar", effect=_write_tar_output)
    manager = _manager(panel_dir, tmp_path / "backups", env_store, fake_runner, fixed_clock)

    first = manager.create_files_backup()
    second = manager.create_files_backup()

    assert first.name == "panel_backup_20250102_030405.tar.gz"
    assert second.name == "panel_backup_20250102_030405-2.tar.gz"
    assert first.kind is BackupKind.FILES
    assert first.created_at == datetime(2025, 1, 2, 3, 4, 5)
    assert first.path.read_bytes() == b"archive"
    assert "-C" in fake_runner.calls[0].args
    assert fake_runner.calls[0].args[-2:] == (str(panel_dir), ".")


def test_files_backup_excludes_nested_backup_dir(
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """A backup directory inside the panel is left out of the archive."""
    fake_runner.on("tar", effect=_write_tar_output)
    manager = _manager(panel_dir, panel_dir / "backups", env_store, fake_runner, fixed_clock)

    manager.create_files_backup()

    assert "--exclude=./backups" in fake_runner.calls[0].args


def test_files_backup_failure_removes_partial(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """A failing tar run leaves nothing behind in the backup directory."""
    fake_runner.on("tar", returncode=2, stderr="tar: write error", effect=_write_tar_output)
    backup_dir = tmp_path / "backups"
    manager = _manager(panel_dir, backup_dir, env_store, fake_runner, fixed_clock)

    with pytest.raises(BackupError, match="write error"):
        manager.create_files_backup()

    assert list(backup_dir.iterdir()) == []


def test_files_backup_requires_panel_dir(
    tmp_path: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """A missing panel directory is a BackupError before tar runs."""
    manager = _manager(tmp_path / "nope", tmp_path / "backups", env_store, fake_runner, fixed_clock)
    with pytest.raises(BackupError):
        manager.create_files_backup()
    assert fake_runner.calls == []


def test_database_backup_keeps_password_out_of_argv(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """mysqldump gets connection details from .env and the password via MYSQL_PWD."""
    fake_runner.on("mysqldump", effect=_write_dump_output)
    manager = _manager(panel_dir, tmp_path / "backups", env_store, fake_runner, fixed_clock)

    record = manager.create_database_backup(DatabaseCredentials(password="hunter2"))

    assert record.name == "database_backup_20250102_030405.sql"
    assert record.kind is BackupKind.DATABASE
    call = fake_runner.calls[0]
    assert "--host=10.0.0.5" in call.args
    assert "--port=3307" in call.args
    assert "--user=pterodactyl" in call.args
    assert "--single-transaction" in call.args
    assert call.args[-1] == "panel"
    assert all("hunter2" not in arg for arg in call.args)
    assert call.env == {"MYSQL_PWD": "hunter2"}


def test_database_backup_failure_leaves_no_file(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """A failed dump is removed, including its partial output."""
    fake_runner.on("mysqldump", returncode=2, stderr="Access denied", effect=_write_dump_output)
    backup_dir = tmp_path / "backups"
    manager = _manager(panel_dir, backup_dir, env_store, fake_runner, fixed_clock)

    with pytest.raises(BackupError, match="Access denied"):
        manager.create_database_backup(DatabaseCredentials(password="wrong"))

    assert list(backup_dir.iterdir()) == []


def test_database_target_rejects_non_numeric_port(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """DB_PORT must be digits only."""
    env_store.set("DB_PORT", "33; rm")
    manager = _manager(panel_dir, tmp_path / "backups", env_store, fake_runner, fixed_clock)
    with pytest.raises(ValidationError):
        manager.database_target()


def test_full_backup_reports_each_half(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """A failed database half keeps the finished file archive."""
    fake_runner.on("tar", effect=_write_tar_output)
    fake_runner.on("mysqldump", returncode=1, stderr="gone away")
    manager = _manager(panel_dir, tmp_path / "backups", env_store, fake_runner, fixed_clock)

    result = manager.create_full_backup(DatabaseCredentials(password=""))

    assert result.ok is False
    assert result.files is not None and result.files.path.exists()
    assert result.database is None
    assert result.database_error is not None and "gone away" in result.database_error
    assert [record.name for record in manager.list_backups()] == [result.files.name]


def test_list_backups_newest_first_and_filters(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """Only recognised names are listed, newest first."""
    backup_dir = tmp_path / "backups"
    now = fixed_clock()
    _touch_backup(backup_dir, "panel_backup_20240101_000000.tar.gz", age_days=1, now=now)
    _touch_backup(backup_dir, "database_backup_20240301_000000.sql", age_days=1, now=now)
    _touch_backup(backup_dir, "panel_backup_20240201_000000.tar.gz", age_days=1, now=now)
    _touch_backup(backup_dir, "notes.txt", age_days=1, now=now)
    _touch_backup(backup_dir, "panel_backup_20240201_000000.sql", age_days=1, now=now)
    manager = _manager(panel_dir, backup_dir, env_store, fake_runner, fixed_clock)

    names = [record.name for record in manager.list_backups()]
    files_only = [record.name for record in manager.list_backups(BackupKind.FILES)]

    assert names == [
        "database_backup_20240301_000000.sql",
        "panel_backup_20240201_000000.tar.gz",
        "panel_backup_20240101_000000.tar.gz",
    ]
    assert files_only == names[1:]


def test_iter_backups_is_restartable(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """Each call produces a fresh generator over the directory."""
    backup_dir = tmp_path / "backups"
    _touch_backup(backup_dir, "panel_backup_20240101_000000.tar.gz", age_days=0, now=fixed_clock())
    manager = _manager(panel_dir, backup_dir, env_store, fake_runner, fixed_clock)

    assert len(list(manager.iter_backups())) == 1
    assert len(list(manager.iter_backups())) == 1


def test_list_backups_unreadable_directory(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A backup directory that cannot be scanned raises FileAccessError."""
    backup_dir = tmp_path / "backups"
    backup_dir.mkdir()
    manager = _manager(panel_dir, backup_dir, env_store, fake_runner, fixed_clock)

    def denied(path: object) -> None:
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr(backups_module.os, "scandir", denied)

    with pytest.raises(FileAccessError, match="Cannot read backup directory"):
        manager.list_backups()


def test_find_validates_names(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """Path-like names are rejected and unknown names are NotFound."""
    manager = _manager(panel_dir, tmp_path / "backups", env_store, fake_runner, fixed_clock)
    with pytest.raises(ValidationError):
        manager.find("../.env")
    with pytest.raises(ValidationError):
        manager.find("")
    with pytest.raises(NotFoundError):
        manager.find("panel_backup_20240101_000000.tar.gz")


def test_restore_requires_existing_backup_before_confirmation(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """An unknown backup is NotFound even when confirmation was withheld."""
    manager = _manager(panel_dir, tmp_path / "backups", env_store, fake_runner, fixed_clock)
    with pytest.raises(NotFoundError):
        manager.restore_files("panel_backup_20240101_000000.tar.gz", confirmed=False)


def test_restore_without_confirmation_changes_nothing(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """A declined restore never runs tar or touches the panel."""
    backup_dir = tmp_path / "backups"
    _touch_backup(backup_dir, "panel_backup_20240101_000000.tar.gz", age_days=0, now=fixed_clock())
    manager = _manager(panel_dir, backup_dir, env_store, fake_runner, fixed_clock)
    before = (panel_dir / ".env").read_text(encoding="utf-8")

    with pytest.raises(ConfirmationDeclined):
        manager.restore_files("panel_backup_20240101_000000.tar.gz", confirmed=False)

    assert fake_runner.calls == []
    assert (panel_dir / ".env").read_text(encoding="utf-8") == before


def test_restore_rejects_wrong_kind(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """A database dump cannot be restored as a file archive."""
    backup_dir = tmp_path / "backups"
    _touch_backup(backup_dir, "database_backup_20240101_000000.sql", age_days=0, now=fixed_clock())
    manager = _manager(panel_dir, backup_dir, env_store, fake_runner, fixed_clock)
    with pytest.raises(ValidationError):
        manager.restore_files("database_backup_20240101_000000.sql", confirmed=True)


@requires_tar
def test_files_backup_restore_round_trip(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fixed_clock: Callable[[], datetime],
) -> None:
    """A real tar archive restores the panel tree as it was."""
    backup_dir = panel_dir / "backups"
    (panel_dir / "public").mkdir()
    (panel_dir / "public" / "index.php").write_text("original\n", encoding="utf-8")
    manager = _manager(panel_dir, backup_dir, env_store, CommandRunner(), fixed_clock)

    record = manager.create_files_backup()
    with tarfile.open(record.path, "r:gz") as archive:
        members = archive.getnames()
    assert "./public/index.php" in members
    assert not any(name.startswith("./backups") for name in members)

    (panel_dir / "public" / "index.php").write_text("changed\n", encoding="utf-8")
    manager.restore_files(record, confirmed=True)

    assert (panel_dir / "public" / "index.php").read_text(encoding="utf-8") == "original\n"
    assert record.path.exists()


@requires_tar
def test_restore_into_destination(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fixed_clock: Callable[[], datetime],
) -> None:
    """Restoring into a scratch directory reproduces the panel tree exactly."""
    (panel_dir / "public" / "assets").mkdir(parents=True)
    (panel_dir / "public" / "assets" / "logo.png").write_bytes(bytes(range(256)))
    (panel_dir / "storage" / "logs" / "laravel.log").write_text("boot\n", encoding="utf-8")
    manager = _manager(panel_dir, tmp_path / "backups", env_store, CommandRunner(), fixed_clock)
    record = manager.create_files_backup()
    destination = tmp_path / "scratch"

    manager.restore_files(record.name, confirmed=True, destination=destination)

    _assert_same_tree(panel_dir, destination)


def test_restore_database_pipes_dump(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """Database restores feed the dump to mysql on stdin."""
    backup_dir = tmp_path / "backups"
    dump = _touch_backup(backup_dir, "database_backup_20240101_000000.sql", age_days=0, now=fixed_clock())
    manager = _manager(panel_dir, backup_dir, env_store, fake_runner, fixed_clock)

    manager.restore_database(dump.name, DatabaseCredentials(password="pw"), confirmed=True)

    call = fake_runner.calls[0]
    assert call.args[0] == "mysql"
    assert call.stdin_path == dump
    assert call.env == {"MYSQL_PWD": "pw"}


def test_delete_backup(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """An explicit delete removes the named backup only."""
    backup_dir = tmp_path / "backups"
    now = fixed_clock()
    doomed = _touch_backup(backup_dir, "panel_backup_20240101_000000.tar.gz", age_days=0, now=now)
    kept = _touch_backup(backup_dir, "panel_backup_20240102_000000.tar.gz", age_days=0, now=now)
    manager = _manager(panel_dir, backup_dir, env_store, fake_runner, fixed_clock)

    record = manager.delete(doomed.name)

    assert isinstance(record, BackupRecord)
    assert not doomed.exists()
    assert kept.exists()


def test_prune_removes_only_old_recognised_backups(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """Backups older than the cutoff go; recent ones and strangers stay."""
    backup_dir = tmp_path / "backups"
    now = fixed_clock()
    recent = _touch_backup(backup_dir, "panel_backup_20241223_000000.tar.gz", age_days=10, now=now)
    old = _touch_backup(backup_dir, "database_backup_20241123_000000.sql", age_days=40, now=now)
    ancient = _touch_backup(backup_dir, "panel_backup_20231129_000000.tar.gz", age_days=400, now=now)
    stranger = _touch_backup(backup_dir, "keep-me.tar.gz", age_days=400, now=now)
    manager = _manager(panel_dir, backup_dir, env_store, fake_runner, fixed_clock)

    result = manager.prune_older_than(30)

    assert sorted(record.name for record in result.removed) == sorted([old.name, ancient.name])
    assert result.failed == []
    assert recent.exists()
    assert stranger.exists()
    assert not old.exists()
    assert not ancient.exists()


def test_prune_continues_past_failures(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """One undeletable backup is reported while the rest are still removed."""
    backup_dir = tmp_path / "backups"
    now = fixed_clock()
    stuck = _touch_backup(backup_dir, "panel_backup_20230101_000000.tar.gz", age_days=400, now=now)
    other = _touch_backup(backup_dir, "panel_backup_20230102_000000.tar.gz", age_days=400, now=now)
    manager = _manager(panel_dir, backup_dir, env_store, fake_runner, fixed_clock)

    original_unlink = Path.unlink

    def flaky_unlink(self: Path, missing_ok: bool = False) -> None:
        if self == stuck:
            raise PermissionError("read-only")
        original_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", flaky_unlink)

    result = manager.prune_older_than(30)

    assert [record.name for record in result.removed] == [other.name]
    assert [record.name for record, _ in result.failed] == [stuck.name]
    assert stuck.exists()
    assert not other.exists()


def test_prune_rejects_negative_age(
    tmp_path: Path,
    panel_dir: Path,
    env_store: EnvStore,
    fake_runner: FakeRunner,
    fixed_clock: Callable[[], datetime],
) -> None:
    """A negative retention age is invalid."""
    manager = _manager(panel_dir, tmp_path / "backups", env_store, fake_runner, fixed_clock)
    with pytest.raises(ValidationError):
        manager.prune_older_than(-1)
