"""Interactive menu console.

The controller owns no state of its own: it prompts through an
:class:`~pteroctl.prompts.InputProvider`, delegates to the env store, backup
manager and providers, and reports every outcome both on screen and in the
operation log. Component errors never end the session; only "Exit" or the end
of input does.
"""
from __future__ import annotations

import shutil
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .backups import BackupKind, BackupManager, BackupRecord, DatabaseCredentials
from .certs import CertificateInfo, fetch_certificate, host_from_url
from .config import AppConfig
from .envfile import EnvStore
from .errors import (
    CommandError,
    ConfirmationDeclined,
    FileAccessError,
    NotFoundError,
    PteroctlError,
    ValidationError,
)
from .logging import OperationScope, StructuredLogger
from .prompts import InputProvider
from .providers.panel import PanelProvider, output_lines
from .providers.services import ServiceManager

Action = Callable[[OperationScope], "str | None"]

APP_ENVIRONMENTS = ("production", "local", "staging")
UPDATE_STEP_LABELS = {
    "download": "Downloading latest release",
    "extract": "Extracting release",
    "permissions": "Setting storage permissions",
    "composer": "Installing dependencies",
    "migrate": "Running database migrations",
    "caches": "Clearing and caching configs",
    "ownership": "Resetting file ownership",
}
CONFIG_SUMMARY = (
    ("App Name", "APP_NAME"),
    ("App URL", "APP_URL"),
    ("Environment", "APP_ENV"),
    ("Debug Mode", "APP_DEBUG"),
    ("Timezone", "APP_TIMEZONE"),
    ("Database Host", "DB_HOST"),
    ("Database Name", "DB_DATABASE"),
    ("Redis Host", "REDIS_HOST"),
    ("Mail Driver", "MAIL_DRIVER"),
)


@dataclass(frozen=True)
class Field:
    """One env key collected by a multi-field settings screen."""

    key: str
    label: str
    secret: bool = False


DATABASE_FIELDS = (
    Field("DB_HOST", "Database Host"),
    Field("DB_PORT", "Database Port"),
    Field("DB_DATABASE", "Database Name"),
    Field("DB_USERNAME", "Database Username"),
    Field("DB_PASSWORD", "Database Password", secret=True),
)
MAIL_FIELDS = (
    Field("MAIL_DRIVER", "Mail Driver (smtp/sendmail/mailgun)"),
    Field("MAIL_HOST", "Mail Host"),
    Field("MAIL_PORT", "Mail Port"),
    Field("MAIL_USERNAME", "Mail Username"),
    Field("MAIL_PASSWORD", "Mail Password", secret=True),
    Field("MAIL_ENCRYPTION", "Mail Encryption (tls/ssl)"),
    Field("MAIL_FROM_ADDRESS", "Mail From Address"),
)
REDIS_FIELDS = (
    Field("REDIS_HOST", "Redis Host"),
    Field("REDIS_PORT", "Redis Port"),
    Field("REDIS_PASSWORD", "Redis Password", secret=True),
)


def format_size(size: int) -> str:
    """Return *size* in bytes as a short human-readable string."""
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GiB"  # pragma: no cover - loop always returns


def tail_lines(path: Path, count: int) -> list[str]:
    """Return the last *count* lines of *path*."""
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        return [line.rstrip("\n") for line in deque(handle, maxlen=count)]


class ConsoleController:
    """Numbered menu tree over the panel administration operations."""

    def __init__(
        self,
        *,
        config: AppConfig,
        env_store: EnvStore,
        backups: BackupManager,
        services: ServiceManager,
        panel: PanelProvider,
        logger: StructuredLogger,
        inputs: InputProvider,
        console: Console,
        cert_fetcher: Callable[[str], CertificateInfo] = fetch_certificate,
        today: Callable[[], date] = date.today,
    ) -> None:
        """Wire the controller to its collaborators."""
        self.config = config
        self.env_store = env_store
        self.backups = backups
        self.services = services
        self.panel = panel
        self.logger = logger
        self.inputs = inputs
        self.console = console
        self.cert_fetcher = cert_fetcher
        self.today = today

    # Loop ------------------------------------------------------------
    def run(self) -> int:
        """Show the main menu until the operator exits; return an exit code."""
        options: list[tuple[str, Callable[[], object]]] = [
            ("Update Pterodactyl Panel", lambda: self._perform("panel update", self._update_panel)),
            ("Create Backup", lambda: self._perform("backup files", self._files_backup)),
            ("Restart Services", lambda: self._perform("services restart", self._restart_services)),
            ("Check System Status", self.status),
            ("View Logs", self.logs_menu),
            ("Maintenance Mode", self.maintenance_menu),
            ("Database Management", self.database_menu),
            ("Clear Caches", lambda: self._perform("caches clear", self._clear_caches)),
            ("Panel Configuration", self.configuration_menu),
            ("User Management", self.users_menu),
            ("Backup Management", self.backups_menu),
            ("Full Update (Backup + Update + Restart)", lambda: self._perform("full update", self._full_update)),
        ]
        try:
            while True:
                choice = self._choose(
                    "Pterodactyl Panel Management",
                    [label for label, _ in options],
                    back_label="Exit",
                )
                if choice is None:
                    break
                handler = options[choice][1]
                handler()
                if handler != self.configuration_menu:  # pauses after each of its own actions
                    self.inputs.pause()
        except (EOFError, KeyboardInterrupt):
            self.console.print()
        self.logger.message("Console session ended.")
        self.console.print("[green]Goodbye![/green]")
        return 0

    def _choose(self, title: str, labels: Sequence[str], *, back_label: str) -> int | None:
        """Render a numbered menu and return the chosen index (None for back)."""
        entries = [*labels, back_label]
        while True:
            self.console.print(f"\n[bold blue]{title}[/bold blue]")
            self.console.rule()
            width = len(str(len(entries)))
            for number, label in enumerate(entries, start=1):
                self.console.print(f"{str(number) + '.':<{width + 1}} {label}")
            self.console.rule()
            answer = self.inputs.ask(f"Select an option (1-{len(entries)})")
            if answer.isdigit() and 1 <= int(answer) <= len(entries):
                index = int(answer) - 1
                return None if index == len(labels) else index
            self.console.print(f"[red]Invalid option '{escape(answer)}'. Please select 1-{len(entries)}.[/red]")

    def _submenu(self, title: str, options: Sequence[tuple[str, str, Action]]) -> None:
        choice = self._choose(title, [label for label, _, _ in options], back_label="Back to main menu")
        if choice is None:
            return
        _, command, action = options[choice]
        self._perform(command, action)

    def _perform(self, command: str, action: Action) -> bool:
        """Run *action* inside a logged operation and display its outcome."""
        with self.logger.operation(command, target={"kind": "panel"}) as op:
            try:
                message = action(op)
            except ConfirmationDeclined as exc:
                self.console.print("[yellow]Operation cancelled.[/yellow]")
                op.warning(str(exc), changed=0)
                return False
            except EOFError:
                raise
            except (PteroctlError, OSError) as exc:
                self.console.print(f"[red]✗ {escape(str(exc))}[/red]")
                op.error(f"{command} failed.", errors=[str(exc)])
                return False
            except Exception as exc:  # noqa: BLE001
                self.console.print(f"[red]✗ Unexpected error: {escape(str(exc))}[/red]")
                op.error(f"{command} failed unexpectedly.", errors=[repr(exc)])
                return False
            if message is not None:
                self.console.print(f"[green]✓ {escape(message)}[/green]")
                if op.result is None:
                    op.success(message, changed=1)
            return op.result is None or op.result.get("status") != "error"

    def _credentials(self) -> DatabaseCredentials:
        return DatabaseCredentials(password=self.inputs.secret("Database password"))

    def _confirm(self, warning: str, cancelled: str) -> None:
        self.console.print(f"[yellow]⚠ {escape(warning)}[/yellow]")
        if not self.inputs.confirm("Are you sure?"):
            raise ConfirmationDeclined(cancelled)

    def status(self) -> bool:
        """Print service states, disk usage and the panel URL."""
        return self._perform("status", self._status)

    # Top-level actions ---------------------------------------------
    def _update_panel(self, op: OperationScope) -> str:
        def announce(step: str) -> None:
            self.console.print(f"[blue]→ {UPDATE_STEP_LABELS.get(step, step)}...[/blue]")
            op.add_step(f"update.{step}", status="started")

        self.panel.update(on_step=announce)
        return "Pterodactyl Panel updated successfully!"

    def _files_backup(self, op: OperationScope) -> str:
        record = self.backups.create_files_backup()
        op.success("Files backup created.", changed=1, backups=[record.name])
        return f"Backup created: {record.name}"

    def _restart_services(self, op: OperationScope) -> str | None:
        report = self.services.restart_all()
        for unit in report.restarted:
            self.console.print(f"  {unit}: [green]restarted[/green]")
        for unit, error in report.failed.items():
            self.console.print(f"  {unit}: [red]failed[/red] ({escape(error)})")
        if report.ok:
            return "Services restarted"
        self.console.print("[yellow]Some services failed to restart.[/yellow]")
        op.warning(
            "Some services failed to restart.",
            errors=list(report.failed.values()),
            changed=len(report.restarted),
        )
        return None

    def _status(self, op: OperationScope) -> None:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Service", style="bold")
        table.add_column("State")
        for status in self.services.statuses(self.config.services.status_units):
            label = "[green]Running[/green]" if status.active else f"[red]Stopped[/red] ({escape(status.state)})"
            table.add_row(escape(status.name), label)
        self.console.print(table)

        try:
            usage = shutil.disk_usage(self.config.panel_dir)
        except OSError as exc:
            self.console.print(f"[red]Disk usage unavailable: {escape(str(exc))}[/red]")
        else:
            self.console.print(
                f"[blue]Disk Usage:[/blue] {format_size(usage.used)} used, "
                f"{format_size(usage.free)} free of {format_size(usage.total)}"
            )
        if (self.config.panel_dir / "config" / "app.php").exists():
            self.console.print(f"[blue]Panel Directory:[/blue] {self.config.panel_dir}")
        try:
            url = self.env_store.get("APP_URL")
        except NotFoundError:
            url = None
        self.console.print(f"[blue]Current Panel URL:[/blue] {escape(url or 'Not set')}")
        op.success("Reported system status.", changed=0)

    def _clear_caches(self, op: OperationScope) -> str:
        for command in self.panel.clear_caches():
            op.add_step(f"artisan.{command}")
        return "All caches cleared"

    def _full_update(self, op: OperationScope) -> str:
        record = self.backups.create_files_backup()
        op.add_step("backup", detail=record.name)
        self.console.print(f"[green]✓ Backup created: {record.name}[/green]")
        self._update_panel(op)
        report = self.services.restart_all()
        if not report.ok:
            failed = ", ".join(sorted(report.failed))
            raise CommandError(f"Panel updated but services failed to restart: {failed}")
        return "Full update completed (backup, update, restart)."

    # Logs ----------------------------------------------------------
    def logs_menu(self) -> None:
        """Show the tail of one of the known log files."""
        logs_dir = self.config.panel_dir / "storage" / "logs"
        daily = logs_dir / f"laravel-{self.today():%Y-%m-%d}.log"
        self._submenu(
            "Recent Pterodactyl Logs",
            [
                ("Panel Logs", "logs panel", lambda op: self._show_tail(logs_dir / "laravel.log", "panel")),
                ("Laravel Logs", "logs laravel", lambda op: self._show_tail(daily, "Laravel")),
                (
                    "Nginx Error Logs",
                    "logs nginx",
                    lambda op: self._show_tail(self.config.log_files.nginx_error, "Nginx error"),
                ),
                (
                    "Management Script Logs",
                    "logs pteroctl",
                    lambda op: self._show_tail(self.logger.human_log_path, "management"),
                ),
            ],
        )

    def _show_tail(self, path: Path, label: str) -> None:
        try:
            lines = tail_lines(path, self.config.log_files.tail_lines)
        except FileNotFoundError:
            self.console.print(f"No {label} logs found")
            return None
        except OSError as exc:
            raise FileAccessError(f"Cannot read {path}: {exc}") from exc
        for line in lines:
            self.console.print(line, markup=False, highlight=False)
        return None

    # Maintenance ---------------------------------------------------
    def maintenance_menu(self) -> None:
        """Enable, disable or inspect maintenance mode."""
        self._submenu(
            "Maintenance Mode",
            [
                ("Enable maintenance mode", "maintenance enable", self._maintenance_on),
                ("Disable maintenance mode", "maintenance disable", self._maintenance_off),
                ("Check maintenance status", "maintenance status", self._maintenance_status),
            ],
        )

    def _maintenance_on(self, op: OperationScope) -> str:
        self.panel.enable_maintenance()
        return "Maintenance mode enabled"

    def _maintenance_off(self, op: OperationScope) -> str:
        self.panel.disable_maintenance()
        return "Maintenance mode disabled"

    def _maintenance_status(self, op: OperationScope) -> None:
        if self.panel.maintenance_enabled():
            self.console.print("[yellow]Maintenance mode: ENABLED[/yellow]")
        else:
            self.console.print("[green]Maintenance mode: DISABLED[/green]")
        op.success("Reported maintenance status.", changed=0)

    # Database ------------------------------------------------------
    def database_menu(self) -> None:
        """Database dump, optimise, migrate and seed."""
        self._submenu(
            "Database Management",
            [
                ("Create database backup", "backup database", self._database_backup),
                ("Optimize database", "artisan optimize", lambda op: self._artisan(self.panel.optimize, "Database optimized")),
                ("Run migrations", "artisan migrate", lambda op: self._artisan(self.panel.migrate, "Migrations completed")),
                ("Seed database", "artisan seed", lambda op: self._artisan(self.panel.seed, "Database seeded")),
            ],
        )

    def _artisan(self, call: Callable[[], object], message: str) -> str:
        call()
        return message

    def _database_backup(self, op: OperationScope) -> str:
        record = self.backups.create_database_backup(self._credentials())
        op.success("Database backup created.", changed=1, backups=[record.name])
        return f"Database backup created: {record.name}"

    # Configuration -------------------------------------------------
    def configuration_menu(self) -> None:
        """Edit the panel's env file until the operator goes back."""
        options: list[tuple[str, str, Action]] = [
            ("Change Panel URL", "config url", self._config_url),
            ("Change App Name", "config app-name", lambda op: self._config_single(op, "APP_NAME", "app name")),
            ("Change Timezone", "config timezone", self._config_timezone),
            ("Update Database Settings", "config database", lambda op: self._config_fields(op, DATABASE_FIELDS, "Database")),
            ("Update Mail Settings", "config mail", lambda op: self._config_fields(op, MAIL_FIELDS, "Mail")),
            ("Update Redis Settings", "config redis", lambda op: self._config_fields(op, REDIS_FIELDS, "Redis")),
            ("Change App Environment (production/local/staging)", "config environment", self._config_environment),
            ("Enable/Disable Debug Mode", "config debug", self._config_debug),
            ("View Current Configuration", "config show", self._config_show),
            ("Generate New App Key", "config app-key", self._config_app_key),
            ("SSL/HTTPS Settings", "config https", self._config_https),
        ]
        while True:
            choice = self._choose(
                "Panel Configuration",
                [label for label, _, _ in options],
                back_label="Back to main menu",
            )
            if choice is None:
                return
            _, command, action = options[choice]
            self._perform(command, action)
            self.inputs.pause()

    def _show_current(self, key: str) -> str | None:
        current = self.env_store.get(key)
        self.console.print(f"[cyan]Current {key}:[/cyan] {escape(current) if current is not None else 'Not set'}")
        return current

    def _set(self, op: OperationScope, key: str, value: str) -> None:
        changed = self.env_store.set(key, value)
        op.add_step(f"env.{key}", status="success" if changed else "unchanged")

    def _config_url(self, op: OperationScope) -> str | None:
        self._show_current("APP_URL")
        new_url = self.inputs.ask("Enter new panel URL (e.g., https://panel.yourdomain.com)")
        if not new_url:
            return None
        self._set(op, "APP_URL", new_url)
        self.console.print("[yellow]⚠ Remember to restart services and clear cache[/yellow]")
        return f"Panel URL updated to: {new_url}"

    def _config_single(self, op: OperationScope, key: str, label: str) -> str | None:
        self._show_current(key)
        value = self.inputs.ask(f"Enter new {label}")
        if not value:
            return None
        self._set(op, key, value)
        return f"{label.capitalize()} updated to: {value}"

    def _config_timezone(self, op: OperationScope) -> str | None:
        self.console.print("Common timezones: America/New_York, Europe/London, Asia/Tokyo, UTC")
        return self._config_single(op, "APP_TIMEZONE", "timezone")

    def _config_fields(self, op: OperationScope, fields: Sequence[Field], title: str) -> str:
        document = self.env_store.load()
        updates: dict[str, str] = {}
        for item in fields:
            if item.secret:
                value = self.inputs.secret(item.label)
            else:
                current = document.get(item.key)
                value = self.inputs.ask(f"{item.label} (current: {current or 'not set'})")
            if value:
                updates[item.key] = value
        changed = self.env_store.set_many(updates) if updates else []
        op.success(f"{title} settings updated.", changed=len(changed), context={"keys": changed})
        return f"{title} settings updated" if changed else f"{title} settings unchanged"

    def _config_environment(self, op: OperationScope) -> str | None:
        self._show_current("APP_ENV")
        value = self.inputs.ask("Enter environment (production/local/staging)").lower()
        if not value:
            return None
        if value not in APP_ENVIRONMENTS:
            raise ValidationError(f"Unknown environment '{value}'. Options: {', '.join(APP_ENVIRONMENTS)}.")
        self._set(op, "APP_ENV", value)
        return f"App environment updated to: {value}"

    def _config_debug(self, op: OperationScope) -> str:
        self._show_current("APP_DEBUG")
        value = self.inputs.ask("Enable debug mode? (true/false)").lower()
        if value not in {"true", "false"}:
            raise ValidationError("Debug mode must be 'true' or 'false'.")
        self._set(op, "APP_DEBUG", value)
        if value == "true":
            self.console.print("[yellow]⚠ Warning: Debug mode should be disabled in production![/yellow]")
        return f"Debug mode updated to: {value}"

    def _config_show(self, op: OperationScope) -> None:
        document = self.env_store.load()
        table = Table(show_header=False)
        table.add_column("Setting", style="blue")
        table.add_column("Value")
        for label, key in CONFIG_SUMMARY:
            table.add_row(label, escape(document.get(key) or ""))
        self.console.print(table)
        op.success("Reported configuration.", changed=0)

    def _config_app_key(self, op: OperationScope) -> str:
        self._confirm(
            "Generating new app key will invalidate all sessions!",
            "App key regeneration cancelled.",
        )
        self.panel.generate_app_key()
        return "New app key generated"

    def _config_https(self, op: OperationScope) -> str | None:
        choice = self._choose(
            "SSL/HTTPS Configuration",
            ["Force HTTPS", "Disable HTTPS enforcement", "Check SSL certificate"],
            back_label="Back to configuration menu",
        )
        if choice is None:
            return None
        if choice in (0, 1):
            enabled = choice == 0
            self._set(op, "APP_URL_FORCE_HTTPS", "true" if enabled else "false")
            return f"HTTPS enforcement {'enabled' if enabled else 'disabled'}"
        url = self.env_store.get("APP_URL")
        if not url:
            raise ValidationError("No domain found in APP_URL.")
        host = host_from_url(url)
        self.console.print(f"Checking SSL certificate for: {host}")
        info = self.cert_fetcher(host)
        self.console.print(f"  subject:    {escape(info.subject)}")
        self.console.print(f"  issuer:     {escape(info.issuer)}")
        self.console.print(f"  notBefore:  {info.not_valid_before:%Y-%m-%d %H:%M:%S %Z}")
        self.console.print(f"  notAfter:   {info.not_valid_after:%Y-%m-%d %H:%M:%S %Z}")
        remaining = info.days_remaining()
        style = "red" if remaining < 0 else "yellow" if remaining < 14 else "green"
        self.console.print(f"  [{style}]{remaining} day(s) remaining[/{style}]")
        op.success("Checked SSL certificate.", changed=0, context={"host": host, "days_remaining": remaining})
        return None

    # Users ---------------------------------------------------------
    def users_menu(self) -> None:
        """Create users, reset passwords, list users, toggle admin rights."""
        self._submenu(
            "User Management",
            [
                ("Create Admin User", "user create", self._user_create),
                ("Reset User Password", "user reset-password", self._user_reset),
                ("List All Users", "user list", self._user_list),
                ("Make User Admin", "user grant-admin", lambda op: self._user_admin(op, admin=True)),
                ("Remove Admin Rights", "user revoke-admin", lambda op: self._user_admin(op, admin=False)),
            ],
        )

    def _user_create(self, op: OperationScope) -> str:
        email = self.inputs.ask("Enter email")
        first_name = self.inputs.ask("Enter first name")
        last_name = self.inputs.ask("Enter last name")
        username = self.inputs.ask("Enter username")
        password = self.inputs.secret("Enter password")
        self.panel.create_admin_user(
            email=email,
            username=username,
            first_name=first_name,
            last_name=last_name,
            password=password,
        )
        return f"Admin user created: {email}"

    def _user_reset(self, op: OperationScope) -> str:
        email = self.inputs.ask("Enter user email")
        password = self.inputs.secret("Enter new password")
        self.panel.reset_password(email=email, password=password)
        return f"Password reset for: {email}"

    def _user_list(self, op: OperationScope) -> None:
        result = self.panel.list_users()
        for line in output_lines(result):
            self.console.print(line, markup=False, highlight=False)
        op.success("Listed users.", changed=0)

    def _user_admin(self, op: OperationScope, *, admin: bool) -> str:
        verb = "grant admin rights to" if admin else "remove admin rights from"
        email = self.inputs.ask(f"Enter user email to {verb.split(' ')[0]} admin")
        self._confirm(f"This will {verb} {email}.", "Admin rights change cancelled.")
        self.panel.set_admin(
            email,
            admin=admin,
            target=self.backups.database_target(),
            credentials=self._credentials(),
        )
        return f"Admin rights {'granted to' if admin else 'removed from'}: {email}"

    # Backups -------------------------------------------------------
    def backups_menu(self) -> None:
        """Create, list, restore, delete and prune backups."""
        self._submenu(
            "Backup Management",
            [
                ("Create Full Backup (Files + Database)", "backup full", self._full_backup),
                ("Create Files Backup Only", "backup files", self._files_backup),
                ("Create Database Backup Only", "backup database", self._database_backup),
                ("List Existing Backups", "backup list", self._list_backups),
                ("Restore Files from Backup", "backup restore-files", self._restore_files),
                ("Restore Database from Backup", "backup restore-database", self._restore_database),
                ("Delete a Backup", "backup delete", self._delete_backup),
                (
                    f"Delete Backups Older Than {self.config.backups.retention_days} Days",
                    "backup prune",
                    self._prune_backups,
                ),
            ],
        )

    def _full_backup(self, op: OperationScope) -> None:
        result = self.backups.create_full_backup(self._credentials())
        names = [record.name for record in (result.files, result.database) if record is not None]
        errors = [error for error in (result.files_error, result.database_error) if error]
        if result.files is not None:
            self.console.print(f"[green]✓ Files backup: {result.files.name}[/green]")
        else:
            self.console.print(f"[red]✗ Files backup failed: {escape(str(result.files_error))}[/red]")
        if result.database is not None:
            self.console.print(f"[green]✓ Database backup: {result.database.name}[/green]")
        else:
            self.console.print(f"[red]✗ Database backup failed: {escape(str(result.database_error))}[/red]")
        if result.ok:
            self.console.print("[green]✓ Full backup completed[/green]")
            op.success("Full backup completed.", changed=2, backups=names)
        elif names:
            op.warning("Full backup partially completed.", errors=errors, changed=len(names), backups=names)
        else:
            op.error("Full backup failed.", errors=errors)
        return None

    def _render_backups(self, records: Sequence[BackupRecord]) -> None:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Kind")
        table.add_column("Created")
        table.add_column("Size", justify="right")
        if not records:
            table.add_row("(none)", "", "", "")
        for record in records:
            table.add_row(
                record.name,
                record.kind.value,
                f"{record.created_at:%Y-%m-%d %H:%M:%S}",
                format_size(record.size_bytes),
            )
        self.console.print(table)

    def _list_backups(self, op: OperationScope) -> None:
        records = self.backups.list_backups()
        self._render_backups(records)
        op.success("Listed backups.", changed=0, context={"count": len(records)})

    def _pick_backup(self, kind: BackupKind) -> BackupRecord:
        records = self.backups.list_backups(kind)
        if not records:
            raise NotFoundError(f"No {kind.value} backups found in {self.backups.backup_dir}.")
        self._render_backups(records)
        return self.backups.find(self.inputs.ask("Enter backup filename to restore"))

    def _restore_files(self, op: OperationScope) -> str:
        record = self._pick_backup(BackupKind.FILES)
        self.console.print("[yellow]⚠ This will overwrite current files![/yellow]")
        confirmed = self.inputs.confirm("Are you sure?")
        self.backups.restore_files(record, confirmed=confirmed)
        return f"Backup restored: {record.name}"

    def _restore_database(self, op: OperationScope) -> str:
        record = self._pick_backup(BackupKind.DATABASE)
        self.console.print("[yellow]⚠ This will overwrite the current database![/yellow]")
        confirmed = self.inputs.confirm("Are you sure?")
        if not confirmed:
            raise ConfirmationDeclined(f"Restore of {record.name} cancelled.")
        self.backups.restore_database(record, self._credentials(), confirmed=confirmed)
        return f"Database restored: {record.name}"

    def _delete_backup(self, op: OperationScope) -> str:
        self._render_backups(self.backups.list_backups())
        record = self.backups.find(self.inputs.ask("Enter backup filename to delete"))
        self._confirm(f"{record.name} will be deleted permanently.", "Backup deletion cancelled.")
        self.backups.delete(record)
        return f"Backup deleted: {record.name}"

    def _prune_backups(self, op: OperationScope) -> None:
        days = self.config.backups.retention_days
        self.console.print(f"[blue]Deleting backups older than {days} days...[/blue]")
        result = self.backups.prune_older_than(days)
        removed = [record.name for record in result.removed]
        for name in removed:
            self.console.print(f"  removed {name}")
        if result.failed:
            for record, error in result.failed:
                self.console.print(f"  [red]could not remove {record.name}: {escape(error)}[/red]")
            op.warning(
                "Old backups partially cleaned up.",
                errors=[f"{record.name}: {error}" for record, error in result.failed],
                changed=len(removed),
                backups=removed,
            )
            return None
        self.console.print(f"[green]✓ Old backups cleaned up ({len(removed)} removed)[/green]")
        op.success("Old backups cleaned up.", changed=len(removed), backups=removed)
        return None


__all__ = ["ConsoleController", "Field", "format_size", "tail_lines"]
