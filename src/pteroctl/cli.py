"""Typer-powered command line for ``pteroctl``.

Running ``pteroctl`` without a subcommand opens the interactive console. The
``env``, ``backup`` and ``status`` commands expose the same operations for
scripts and cron jobs, recording each invocation in the operation log.
"""
from __future__ import annotations

import os
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import BackupKind, BackupManager, DatabaseCredentials
from .config import AppConfig, ConfigError, load_config
from .console import ConsoleController, format_size
from .envfile import EnvStore
from .errors import ConfirmationDeclined, PteroctlError
from .exit_codes import ExitCode, exit_code_for
from .logging import OperationScope, StructuredLogger
from .prompts import ConsoleInput
from .providers import PanelProvider, ServiceManager
from .runner import CommandRunner

console = Console()

SENSITIVE_KEY_MARKERS = ("PASSWORD", "SECRET", "TOKEN", "KEY")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to pteroctl's YAML config file.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Pterodactyl Panel administration console.

        Run without a subcommand to open the interactive menu. The env, backup
        and status subcommands offer the same operations non-interactively.
        """
    ).strip(),
)
env_app = typer.Typer(help="Read and edit the panel's .env file.")
backups_app = typer.Typer(help="Create, list, restore and prune panel backups.")

app.add_typer(env_app, name="env")
app.add_typer(backups_app, name="backup")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    runner: CommandRunner
    env_store: EnvStore
    backups: BackupManager
    services: ServiceManager
    panel: PanelProvider

    def controller(self) -> ConsoleController:
        """Return a console controller reading answers from the terminal."""
        return ConsoleController(
            config=self.config,
            env_store=self.env_store,
            backups=self.backups,
            services=self.services,
            panel=self.panel,
            logger=self.logger,
            inputs=ConsoleInput(console),
            console=console,
        )


def build_runtime(config: AppConfig, runner: CommandRunner | None = None) -> RuntimeContext:
    """Wire every component from *config*."""
    runner = runner or CommandRunner()
    tools = config.tools
    env_store = EnvStore(config.env_file)
    backups = BackupManager(
        panel_dir=config.panel_dir,
        backup_dir=config.backups.root,
        env_store=env_store,
        runner=runner,
        web_user=config.web_user,
        web_group=config.web_group,
        tar_bin=tools.tar_bin,
        mysqldump_bin=tools.mysqldump_bin,
        mysql_bin=tools.mysql_bin,
    )
    services = ServiceManager(
        runner=runner,
        units=config.services.units,
        systemctl_bin=config.services.systemctl_bin,
    )
    panel = PanelProvider(
        runner=runner,
        panel_dir=config.panel_dir,
        web_user=config.web_user,
        web_group=config.web_group,
        release_url=config.release_url,
        php_bin=tools.php_bin,
        composer_bin=tools.composer_bin,
        tar_bin=tools.tar_bin,
        curl_bin=tools.curl_bin,
        mysql_bin=tools.mysql_bin,
    )
    return RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        runner=runner,
        env_store=env_store,
        backups=backups,
        services=services,
        panel=panel,
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _fail(op: OperationScope, exc: PteroctlError) -> NoReturn:
    if isinstance(exc, ConfirmationDeclined):
        console.print("[yellow]Operation cancelled.[/yellow]")
        op.warning(str(exc), changed=0)
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    _command_error(op, str(exc), rc=exit_code_for(exc))


def _require_root(runtime: RuntimeContext, op: OperationScope) -> None:
    if not runtime.config.require_root:
        return
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        _command_error(
            op,
            "This command must be run as root (set require_root: false to override).",
            rc=ExitCode.ENVIRONMENT,
        )


def _database_credentials() -> DatabaseCredentials:
    password = os.environ.get("MYSQL_PWD")
    if password is None:
        password = typer.prompt("Database password", default="", hide_input=True, show_default=False)
    return DatabaseCredentials(password=password)


def _mask(key: str, value: str) -> str:
    if value and any(marker in key.upper() for marker in SENSITIVE_KEY_MARKERS):
        return "********"
    return value


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the pteroctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"pteroctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        ctx.invoke(console_command, ctx)


@app.command("console")
def console_command(ctx: typer.Context) -> None:
    """Open the interactive management menu."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("console", target={"kind": "panel"}) as op:
        _require_root(runtime, op)
        op.success("Console session started.", changed=0)
    raise typer.Exit(code=runtime.controller().run())


@app.command()
def status(ctx: typer.Context) -> None:
    """Show service states, disk usage and the panel URL."""
    runtime = _get_runtime(ctx)
    if not runtime.controller().status():
        raise typer.Exit(code=ExitCode.PROVIDER)


@env_app.command("get")
def env_get(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Variable name to read."),
) -> None:
    """Print the value of KEY from the panel's .env file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env get",
        args={"key": key},
        target={"kind": "env", "path": str(runtime.config.env_file)},
    ) as op:
        try:
            value = runtime.env_store.get(key)
        except PteroctlError as exc:
            _fail(op, exc)
        if value is None:
            _command_error(op, f"{key} is not set in {runtime.config.env_file}.")
        console.print(value, markup=False, highlight=False)
        op.success(f"Read {key}.", changed=0)


@env_app.command("set")
def env_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Variable name to write."),
    value: str = typer.Argument(..., help="New value (quoted automatically when needed)."),
) -> None:
    """Set KEY to VALUE, preserving every other line of the file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env set",
        args={"key": key},
        target={"kind": "env", "path": str(runtime.config.env_file)},
    ) as op:
        _require_root(runtime, op)
        try:
            changed = runtime.env_store.set(key, value)
        except PteroctlError as exc:
            _fail(op, exc)
        if changed:
            console.print(f"[green]✓ {key} updated[/green]")
            op.success(f"Updated {key}.", changed=1)
        else:
            console.print(f"{key} already has that value.")
            op.success(f"{key} unchanged.", changed=0)


@env_app.command("list")
def env_list(
    ctx: typer.Context,
    show_secrets: bool = typer.Option(
        False,
        "--show-secrets",
        help="Print passwords, tokens and keys instead of masking them.",
    ),
) -> None:
    """List every variable defined in the panel's .env file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env list",
        args={"show_secrets": show_secrets},
        target={"kind": "env", "path": str(runtime.config.env_file)},
    ) as op:
        try:
            entries = runtime.env_store.entries()
        except PteroctlError as exc:
            _fail(op, exc)
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for entry in entries:
            table.add_row(entry.key, escape(entry.value if show_secrets else _mask(entry.key, entry.value)))
        console.print(table)
        op.success("Listed environment variables.", changed=0, context={"count": len(entries)})


@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    kind: str = typer.Option(
        "files",
        "--kind",
        "-k",
        help="What to back up: files, database or full.",
        metavar="KIND",
    ),
) -> None:
    """Create a files archive, a database dump, or both."""
    runtime = _get_runtime(ctx)
    normalized = kind.strip().lower()
    with runtime.logger.operation(
        "backup create",
        args={"kind": normalized},
        target={"kind": "backup", "path": str(runtime.config.backups.root)},
    ) as op:
        if normalized not in {"files", "database", "full"}:
            _command_error(op, f"Unknown backup kind '{kind}'. Use files, database or full.")
        _require_root(runtime, op)
        try:
            if normalized == "files":
                record = runtime.backups.create_files_backup()
                console.print(f"[green]✓ Backup created: {record.name}[/green]")
                op.success("Files backup created.", changed=1, backups=[record.name])
                return
            credentials = _database_credentials()
            if normalized == "database":
                record = runtime.backups.create_database_backup(credentials)
                console.print(f"[green]✓ Database backup created: {record.name}[/green]")
                op.success("Database backup created.", changed=1, backups=[record.name])
                return
            result = runtime.backups.create_full_backup(credentials)
        except PteroctlError as exc:
            _fail(op, exc)

        names = [record.name for record in (result.files, result.database) if record is not None]
        errors = [error for error in (result.files_error, result.database_error) if error]
        for name in names:
            console.print(f"[green]✓ Backup created: {name}[/green]")
        for error in errors:
            console.print(f"[red]✗ {escape(error)}[/red]")
        if result.ok:
            op.success("Full backup completed.", changed=2, backups=names)
            return
        op.error("Full backup incomplete.", errors=errors, rc=int(ExitCode.PROVIDER), changed=len(names), backups=names)
        raise typer.Exit(code=ExitCode.PROVIDER)


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit backup details as JSON.",
    ),
) -> None:
    """List backups, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backup", "path": str(runtime.config.backups.root)},
    ) as op:
        try:
            records = runtime.backups.list_backups()
        except PteroctlError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data={"backups": [record.to_dict() for record in records]})
        elif not records:
            console.print("No backups found.")
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Name", style="bold")
            table.add_column("Kind")
            table.add_column("Created")
            table.add_column("Size", justify="right")
            for record in records:
                table.add_row(
                    record.name,
                    record.kind.value,
                    f"{record.created_at:%Y-%m-%d %H:%M:%S}",
                    format_size(record.size_bytes),
                )
            console.print(table)
        op.success("Listed backups.", changed=0, context={"count": len(records)})


@backups_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Backup file name (see `pteroctl backup list`)."),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt.",
    ),
) -> None:
    """Restore a files archive or database dump by name."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup restore",
        args={"name": name, "yes": yes},
        target={"kind": "backup", "path": str(runtime.config.backups.root)},
    ) as op:
        _require_root(runtime, op)
        try:
            record = runtime.backups.find(name)
            if record.kind is BackupKind.FILES:
                warning = f"This will overwrite files in {runtime.config.panel_dir}!"
            else:
                warning = "This will overwrite the current database!"
            console.print(f"[yellow]⚠ {warning}[/yellow]")
            confirmed = yes or typer.confirm("Are you sure?", default=False)
            if record.kind is BackupKind.FILES:
                runtime.backups.restore_files(record, confirmed=confirmed)
            else:
                if not confirmed:
                    raise ConfirmationDeclined(f"Restore of {record.name} cancelled.")
                runtime.backups.restore_database(record, _database_credentials(), confirmed=confirmed)
        except PteroctlError as exc:
            _fail(op, exc)
        console.print(f"[green]✓ Backup restored: {record.name}[/green]")
        op.success(f"Restored {record.name}.", changed=1, backups=[record.name])


@backups_app.command("prune")
def backup_prune(
    ctx: typer.Context,
    older_than: int | None = typer.Option(
        None,
        "--older-than",
        min=0,
        help="Age in days (defaults to backups.retention_days).",
        metavar="DAYS",
    ),
) -> None:
    """Delete backups older than the retention period."""
    runtime = _get_runtime(ctx)
    days = older_than if older_than is not None else runtime.config.backups.retention_days
    with runtime.logger.operation(
        "backup prune",
        args={"older_than": days},
        target={"kind": "backup", "path": str(runtime.config.backups.root)},
    ) as op:
        _require_root(runtime, op)
        try:
            result = runtime.backups.prune_older_than(days)
        except PteroctlError as exc:
            _fail(op, exc)
        removed = [record.name for record in result.removed]
        for name in removed:
            console.print(f"removed {name}")
        if result.failed:
            errors = [f"{record.name}: {error}" for record, error in result.failed]
            for error in errors:
                console.print(f"[red]could not remove {escape(error)}[/red]")
            op.warning("Old backups partially cleaned up.", errors=errors, changed=len(removed), backups=removed)
            raise typer.Exit(code=ExitCode.ENVIRONMENT)
        console.print(f"[green]✓ Old backups cleaned up ({len(removed)} removed)[/green]")
        op.success("Old backups cleaned up.", changed=len(removed), backups=removed)


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
