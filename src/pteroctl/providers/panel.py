"""Pass-through wrappers around the panel's own tooling.

Everything here shells out (``php artisan``, ``composer``, ``curl``, ``tar``,
``chown``, ``mysql``) with the panel directory as the working directory and
only looks at the exit status. Output is returned to the caller for display.
"""
from __future__ import annotations

import os
import re
import stat
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..backups import DatabaseCredentials, DatabaseTarget
from ..errors import CommandError, ValidationError
from ..runner import CommandResult, CommandRunner

CACHE_CLEAR_COMMANDS: tuple[str, ...] = (
    "cache:clear",
    "config:clear",
    "route:clear",
    "view:clear",
    "optimize:clear",
)
CACHE_REBUILD_COMMANDS: tuple[str, ...] = (
    "view:clear",
    "config:clear",
    "config:cache",
    "route:cache",
)
WRITABLE_DIRS: tuple[str, ...] = ("storage", "bootstrap/cache")
_EMAIL = re.compile(r"[^@\s'\"\\;`]+@[^@\s'\"\\;`]+\.[^@\s'\"\\;`]+")

StepCallback = Callable[[str], None]


def validate_email(email: str) -> str:
    """Return a stripped e-mail address or raise ValidationError."""
    cleaned = email.strip()
    if not _EMAIL.fullmatch(cleaned):
        raise ValidationError(f"'{email}' is not a valid e-mail address.")
    return cleaned


@dataclass(slots=True)
class PanelProvider:
    """Drive artisan/composer for a single panel checkout."""

    runner: CommandRunner
    panel_dir: Path
    web_user: str = "www-data"
    web_group: str = "www-data"
    release_url: str = (
        "https://github.com/pterodactyl/panel/releases/latest/download/panel.tar.gz"
    )
    php_bin: str = "php"
    composer_bin: str = "composer"
    tar_bin: str = "tar"
    curl_bin: str = "curl"
    mysql_bin: str = "mysql"

    # Artisan -------------------------------------------------------
    def artisan(self, *args: str, capture_output: bool = True) -> CommandResult:
        """Run ``php artisan <args>`` inside the panel directory."""
        return self.runner.check(
            [self.php_bin, "artisan", *args],
            cwd=self.panel_dir,
            error_prefix=f"artisan {args[0]}" if args else "artisan",
            capture_output=capture_output,
        )

    def enable_maintenance(self) -> CommandResult:
        """Put the panel into maintenance mode."""
        return self.artisan("down")

    def disable_maintenance(self) -> CommandResult:
        """Bring the panel out of maintenance mode."""
        return self.artisan("up")

    def maintenance_enabled(self) -> bool:
        """Return True while Laravel's maintenance marker file exists."""
        return (self.panel_dir / "storage" / "framework" / "down").exists()

    def clear_caches(self) -> list[str]:
        """Clear every Laravel cache; return the commands that ran."""
        for command in CACHE_CLEAR_COMMANDS:
            self.artisan(command)
        return list(CACHE_CLEAR_COMMANDS)

    def rebuild_caches(self) -> list[str]:
        """Clear stale config/views and rebuild the config and route caches."""
        for command in CACHE_REBUILD_COMMANDS:
            self.artisan(command)
        return list(CACHE_REBUILD_COMMANDS)

    def optimize(self) -> CommandResult:
        """Run ``artisan optimize``."""
        return self.artisan("optimize")

    def migrate(self, *, seed: bool = False) -> CommandResult:
        """Run pending database migrations."""
        args = ["migrate", "--seed", "--force"] if seed else ["migrate", "--force"]
        return self.artisan(*args)

    def seed(self) -> CommandResult:
        """Run the database seeders."""
        return self.artisan("db:seed", "--force")

    def generate_app_key(self) -> CommandResult:
        """Regenerate ``APP_KEY``; invalidates every session."""
        return self.artisan("key:generate", "--force")

    # Users ---------------------------------------------------------
    def create_admin_user(
        self,
        *,
        email: str,
        username: str,
        first_name: str,
        last_name: str,
        password: str,
    ) -> CommandResult:
        """Create an administrator account through ``p:user:make``."""
        return self.artisan(
            "p:user:make",
            f"--email={validate_email(email)}",
            f"--username={username}",
            f"--name-first={first_name}",
            f"--name-last={last_name}",
            f"--password={password}",
            "--admin=1",
        )

    def reset_password(self, *, email: str, password: str) -> CommandResult:
        """Set a new password for *email* through ``p:user:make``."""
        return self.artisan(
            "p:user:make",
            f"--email={validate_email(email)}",
            f"--password={password}",
        )

    def list_users(self) -> CommandResult:
        """Return the output of ``p:user:list``."""
        return self.artisan("p:user:list")

    def set_admin(
        self,
        email: str,
        *,
        admin: bool,
        target: DatabaseTarget,
        credentials: DatabaseCredentials,
    ) -> CommandResult:
        """Grant or revoke the ``root_admin`` flag directly in the database."""
        address = validate_email(email)
        statement = (
            f"UPDATE users SET root_admin = {1 if admin else 0} WHERE email = '{address}';"
        )
        env = {"MYSQL_PWD": credentials.password} if credentials.password else None
        return self.runner.check(
            [self.mysql_bin, *target.client_args(), "--batch", "-e", statement, target.name],
            error_prefix="mysql update",
            env=env,
        )

    # Update --------------------------------------------------------
    def update(self, on_step: StepCallback | None = None) -> list[str]:
        """Download and install the latest panel release.

        Stops at the first failing step with CommandError; returns the names
        of the steps that completed.
        """
        completed: list[str] = []

        def step(name: str, action: Callable[[], object]) -> None:
            if on_step is not None:
                on_step(name)
            action()
            completed.append(name)

        fd, archive_name = tempfile.mkstemp(prefix="panel-release-", suffix=".tar.gz")
        os.close(fd)
        archive = Path(archive_name)
        try:
            step("download", lambda: self._download(archive))
            step("extract", lambda: self._extract(archive))
        finally:
            archive.unlink(missing_ok=True)
        step("permissions", self.fix_permissions)
        step("composer", self.install_dependencies)
        step("migrate", lambda: self.migrate(seed=True))
        step("caches", self.rebuild_caches)
        step("ownership", self.reset_ownership)
        return completed

    def install_dependencies(self) -> CommandResult:
        """Install PHP dependencies for production."""
        return self.runner.check(
            [self.composer_bin, "install", "--no-dev", "--optimize-autoloader", "--no-interaction"],
            cwd=self.panel_dir,
            env={"COMPOSER_ALLOW_SUPERUSER": "1"},
            error_prefix="composer install",
            capture_output=False,
        )

    def fix_permissions(self) -> None:
        """Make ``storage`` and ``bootstrap/cache`` writable (mode 755)."""
        for relative in WRITABLE_DIRS:
            root = self.panel_dir / relative
            if not root.exists():
                continue
            try:
                for current, dirs, files in os.walk(root):
                    for name in (*dirs, *files):
                        _chmod(Path(current) / name, 0o755)
            except OSError as exc:
                raise CommandError(f"Failed to set permissions under {root}: {exc}") from exc

    def reset_ownership(self) -> CommandResult:
        """Hand the panel directory back to the web server user."""
        return self.runner.check(
            ["chown", "-R", f"{self.web_user}:{self.web_group}", str(self.panel_dir)],
            error_prefix="chown",
        )

    # ------------------------------------------------------------------
    def _download(self, archive: Path) -> CommandResult:
        return self.runner.check(
            [self.curl_bin, "-fsSL", "-o", str(archive), self.release_url],
            error_prefix="release download",
        )

    def _extract(self, archive: Path) -> CommandResult:
        return self.runner.check(
            [self.tar_bin, "-xzf", str(archive), "-C", str(self.panel_dir)],
            error_prefix="release extract",
        )


def _chmod(path: Path, mode: int) -> None:
    if path.is_symlink():
        return
    if stat.S_IMODE(path.stat().st_mode) != mode:
        os.chmod(path, mode)


def output_lines(result: CommandResult) -> Sequence[str]:
    """Return non-empty output lines of *result* for display."""
    return [line for line in result.stdout.splitlines() if line.strip()]


__all__ = [
    "CACHE_CLEAR_COMMANDS",
    "CACHE_REBUILD_COMMANDS",
    "PanelProvider",
    "output_lines",
    "validate_email",
]
