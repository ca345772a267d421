"""Systemd provider for the services the panel depends on."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from ..errors import CommandError
from ..runner import CommandResult, CommandRunner


@dataclass(frozen=True)
class ServiceStatus:
    """Snapshot of one unit's state at query time."""

    name: str
    active: bool
    state: str


@dataclass
class RestartReport:
    """Units restarted successfully and units that failed."""

    restarted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Return True when every unit restarted."""
        return not self.failed


@dataclass(slots=True)
class ServiceManager:
    """Restart and inspect systemd units through ``systemctl``."""

    runner: CommandRunner
    units: tuple[str, ...]
    systemctl_bin: str = "systemctl"

    def restart(self, unit: str) -> CommandResult:
        """Restart *unit*, raising CommandError on failure."""
        return self._systemctl("restart", unit)

    def restart_all(self, units: Iterable[str] | None = None) -> RestartReport:
        """Restart each unit in order, continuing past failures."""
        report = RestartReport()
        for unit in units if units is not None else self.units:
            try:
                self.restart(unit)
            except CommandError as exc:
                report.failed[unit] = str(exc)
            else:
                report.restarted.append(unit)
        return report

    def status(self, unit: str) -> ServiceStatus:
        """Return whether *unit* is active.

        ``systemctl is-active`` prints the state and exits non-zero for
        anything but ``active``; both are used here.
        """
        result = self.runner.run([self.systemctl_bin, "is-active", unit])
        state = result.stdout.strip() or ("active" if result.ok else "unknown")
        return ServiceStatus(name=unit, active=result.ok, state=state)

    def statuses(self, units: Iterable[str] | None = None) -> list[ServiceStatus]:
        """Return a status snapshot for each unit."""
        return [self.status(unit) for unit in (units if units is not None else self.units)]

    # ------------------------------------------------------------------
    def _systemctl(self, command: str, unit: str) -> CommandResult:
        return self.runner.check(
            [self.systemctl_bin, command, unit],
            error_prefix=f"{self.systemctl_bin} {command} {unit}",
        )


__all__ = ["RestartReport", "ServiceManager", "ServiceStatus"]
