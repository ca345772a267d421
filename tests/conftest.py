"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import pytest

from pteroctl.config import AppConfig, load_config
from pteroctl.envfile import EnvStore
from pteroctl.runner import CommandResult, CommandRunner

SAMPLE_ENV = (
    "APP_ENV=production\n"
    "APP_DEBUG=false\n"
    "APP_KEY=base64:abc123\n"
    "APP_URL=https://panel.example.com\n"
    "\n"
    "# database\n"
    "DB_HOST=10.0.0.5\n"
    "DB_PORT=3307\n"
    "DB_DATABASE=panel\n"
    "DB_USERNAME=pterodactyl\n"
    "DB_PASSWORD=\"s3cret pass\"\n"
)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class RecordedCall:
    """One command observed by :class:`FakeRunner`."""

    args: tuple[str, ...]
    cwd: Path | None
    env: dict[str, str]
    stdin_path: Path | None
    capture_output: bool


@dataclass
class _Rule:
    prefix: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    effect: Callable[[RecordedCall], None] | None


@dataclass
class FakeRunner(CommandRunner):
    """CommandRunner double that records calls and replays canned results.

    Rules registered later win; unmatched commands succeed with no output.
    """

    calls: list[RecordedCall] = field(default_factory=list)
    _rules: list[_Rule] = field(default_factory=list)

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        effect: Callable[[RecordedCall], None] | None = None,
    ) -> None:
        """Register the result for commands starting with *prefix*."""
        self._rules.append(_Rule(tuple(prefix), returncode, stdout, stderr, effect))

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        stdin_path: Path | None = None,
        capture_output: bool = True,
    ) -> CommandResult:
        """Record the call and return the matching canned result."""
        call = RecordedCall(
            args=tuple(str(arg) for arg in args),
            cwd=cwd,
            env=dict(env or {}),
            stdin_path=stdin_path,
            capture_output=capture_output,
        )
        self.calls.append(call)
        for rule in reversed(self._rules):
            if call.args[: len(rule.prefix)] == rule.prefix:
                if rule.effect is not None:
                    rule.effect(call)
                return CommandResult(call.args, rule.returncode, rule.stdout, rule.stderr)
        return CommandResult(call.args, 0)

    def commands(self) -> list[tuple[str, ...]]:
        """Return the argv of every recorded call."""
        return [call.args for call in self.calls]


@pytest.fixture()
def fake_runner() -> FakeRunner:
    """Return a fresh fake command runner."""
    return FakeRunner()


@pytest.fixture()
def panel_dir(tmp_path: Path) -> Path:
    """Create a minimal panel checkout with an env file."""
    root = tmp_path / "pterodactyl"
    (root / "config").mkdir(parents=True)
    (root / "config" / "app.php").write_text("<?php return [];\n", encoding="utf-8")
    (root / "storage" / "logs").mkdir(parents=True)
    (root / "storage" / "framework").mkdir(parents=True)
    (root / "bootstrap" / "cache").mkdir(parents=True)
    (root / ".env").write_text(SAMPLE_ENV, encoding="utf-8")
    return root


@pytest.fixture()
def env_store(panel_dir: Path) -> EnvStore:
    """Return an EnvStore bound to the sample panel's env file."""
    return EnvStore(panel_dir / ".env")


@pytest.fixture()
def app_config(tmp_path: Path, panel_dir: Path) -> AppConfig:
    """Return a config rooted in the temporary panel checkout."""
    return load_config(
        tmp_path / "missing-config.yml",
        env={},
        overrides={
            "panel_dir": str(panel_dir),
            "logs_dir": str(tmp_path / "logs"),
            "require_root": False,
            "backups": {"root": str(tmp_path / "backups")},
            "log_files": {"nginx_error": str(tmp_path / "nginx-error.log")},
        },
    )


@pytest.fixture()
def fixed_clock() -> Callable[[], datetime]:
    """Return a clock frozen at 2025-01-02 03:04:05."""
    moment = datetime(2025, 1, 2, 3, 4, 5)
    return lambda: moment
