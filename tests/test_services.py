"""Tests for the systemd service provider."""
from __future__ import annotations

import pytest

from pteroctl.errors import CommandError
from pteroctl.providers.services import ServiceManager

from conftest import FakeRunner

UNITS = ("nginx", "php8.1-fpm", "redis-server", "pteroq")


def test_restart_runs_systemctl(fake_runner: FakeRunner) -> None:
    """A single restart shells out to systemctl restart."""
    manager = ServiceManager(runner=fake_runner, units=UNITS)
    manager.restart("nginx")
    assert fake_runner.commands() == [("systemctl", "restart", "nginx")]


def test_restart_failure_raises(fake_runner: FakeRunner) -> None:
    """A failing unit surfaces as CommandError."""
    fake_runner.on("systemctl", "restart", "nginx", returncode=1, stderr="Unit not found")
    manager = ServiceManager(runner=fake_runner, units=UNITS)
    with pytest.raises(CommandError, match="Unit not found"):
        manager.restart("nginx")


def test_restart_all_continues_past_failures(fake_runner: FakeRunner) -> None:
    """Every unit is attempted even when one fails."""
    fake_runner.on("systemctl", "restart", "php8.1-fpm", returncode=5, stderr="failed")
    manager = ServiceManager(runner=fake_runner, units=UNITS)

    report = manager.restart_all()

    assert report.ok is False
    assert report.restarted == ["nginx", "redis-server", "pteroq"]
    assert list(report.failed) == ["php8.1-fpm"]
    assert len(fake_runner.calls) == 4


def test_status_reads_is_active(fake_runner: FakeRunner) -> None:
    """is-active output and exit status drive the snapshot."""
    fake_runner.on("systemctl", "is-active", "nginx", stdout="active\n")
    fake_runner.on("systemctl", "is-active", "mysql", returncode=3, stdout="inactive\n")
    manager = ServiceManager(runner=fake_runner, units=("nginx",), systemctl_bin="systemctl")

    statuses = manager.statuses(("nginx", "mysql"))

    assert [(s.name, s.active, s.state) for s in statuses] == [
        ("nginx", True, "active"),
        ("mysql", False, "inactive"),
    ]
