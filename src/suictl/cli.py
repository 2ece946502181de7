"""Typer-powered command line interface for ``suictl``.

Commands stay thin: they resolve selectors, ask the engine for a plan, render
it, collect confirmation, and only then call into the engine under the global
installation lock. Every command runs inside a structured-log operation.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import httpx
import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .artifacts import ArtifactKeyError, Environment, validate_target
from .backups import BackupError, BackupStore, RetentionPlan
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .providers import (
    ActivationFailedAfterBackup,
    DownloadFailed,
    ExtractFailed,
    InstallPlan,
    NoReleasesFound,
    ReleaseProvider,
    ReleaseProviderError,
    SwitchPlan,
    UnresolvableBackupReference,
    VersionInstaller,
    VersionInstallError,
)
from .state import InstallationError, InstallationStore, StateRegistry, StateRegistryError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to suictl's YAML config file.",
)
ENV_OPTION = typer.Option(
    None,
    "--env",
    "-e",
    help="Environment to act on (mainnet, testnet, devnet). Defaults to config.",
)
VERSION_OPTION = typer.Option(
    None,
    "--version",
    "-v",
    help="Release to install (1.40.1, v1.40.1 or testnet-v1.40.1). Defaults to latest.",
)
PLATFORM_OPTION = typer.Option(
    None,
    "--platform",
    "-p",
    help="Target platform (ubuntu, macos, windows). Defaults to config.",
)
ARCH_OPTION = typer.Option(
    None,
    "--arch",
    "-a",
    help="Target architecture (x86_64, aarch64, arm64). Defaults to config.",
)
LIST_OPTION = typer.Option(
    False,
    "--list",
    "-l",
    help="Show the newest available releases before proceeding.",
)
DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Report the actions that would be taken without changing anything.",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Auto-confirm prompts (non-interactive mode).",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)

_EXIT_CODE_BY_ERROR: tuple[tuple[type[BaseException], ExitCode], ...] = (
    (ActivationFailedAfterBackup, ExitCode.PARTIAL),
    (UnresolvableBackupReference, ExitCode.VALIDATION),
    (ArtifactKeyError, ExitCode.VALIDATION),
    (ConfigError, ExitCode.VALIDATION),
    (ReleaseProviderError, ExitCode.PROVIDER),
    (DownloadFailed, ExitCode.PROVIDER),
    (ExtractFailed, ExitCode.PROVIDER),
    (BackupError, ExitCode.ENVIRONMENT),
    (LockError, ExitCode.ENVIRONMENT),
    (VersionInstallError, ExitCode.ENVIRONMENT),
    (InstallationError, ExitCode.ENVIRONMENT),
    (StateRegistryError, ExitCode.ENVIRONMENT),
)
_HANDLED_ERRORS = tuple(error for error, _ in _EXIT_CODE_BY_ERROR)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Install, update, switch and remove Sui node binaries.

        Every installed build is kept as a backup so earlier versions can be
        restored with `suictl switch`; `suictl clean` prunes old backups.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    store: InstallationStore
    backups: BackupStore
    registry: StateRegistry
    releases: ReleaseProvider
    installer: VersionInstaller
    locks: LockManager
    logger: StructuredLogger


def _build_http_client() -> httpx.Client:
    """Return the HTTP client used for listings and downloads."""
    return httpx.Client(headers={"User-Agent": f"suictl/{__version__}"}, follow_redirects=True)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    client = _build_http_client()
    ctx.call_on_close(client.close)

    store = InstallationStore(
        install_dir=config.install_dir,
        symlink_path=config.symlink_path,
        backup_dir=config.backup_dir,
    )
    backups = BackupStore(config.backup_dir)
    registry = StateRegistry(config.registry_dir)
    releases = ReleaseProvider(
        config.releases.api_url,
        client=client,
        per_page=config.releases.per_page,
        max_pages=config.releases.max_pages,
    )
    installer = VersionInstaller(
        store=store,
        backups=backups,
        releases=releases,
        registry=registry,
        client=client,
        download_base=config.releases.download_base,
        repository=config.releases.repository,
        platform=config.defaults.platform,
        arch=config.defaults.arch,
    )
    runtime = RuntimeContext(
        config=config,
        store=store,
        backups=backups,
        registry=registry,
        releases=releases,
        installer=installer,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the suictl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"suictl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# Shared helpers -------------------------------------------------


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc), context=context)
    raise typer.Exit(code=int(rc))


def _exit_code_for(exc: BaseException) -> ExitCode:
    for error_type, code in _EXIT_CODE_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return ExitCode.ENVIRONMENT


def _fail(op: OperationScope, action: str, exc: Exception) -> NoReturn:
    """Report *exc* raised while performing *action* and exit with its code."""
    context = getattr(exc, "context", None)
    _command_error(
        op,
        f"{action} failed: {exc}",
        rc=_exit_code_for(exc),
        errors=[str(exc)],
        context=context if isinstance(context, Mapping) else None,
    )


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _confirm(op: OperationScope, prompt: str, *, auto_confirm: bool) -> bool:
    """Ask for confirmation unless *auto_confirm*; record the decision."""
    if auto_confirm:
        op.add_step("confirm", status="info", detail="--yes")
        return True
    confirmed = typer.confirm(prompt, default=False)
    op.add_step(
        "confirm",
        status="success" if confirmed else "warning",
        detail="accepted" if confirmed else "user-declined",
    )
    return confirmed


def _cancelled(op: OperationScope, what: str) -> None:
    console.print(f"[yellow]{what} cancelled.[/yellow]")
    op.success(f"{what} cancelled by operator.", changed=0)


def _resolve_selectors(
    runtime: RuntimeContext,
    op: OperationScope,
    env: str | None,
    platform: str | None,
    arch: str | None,
) -> tuple[Environment, str, str]:
    """Fill selectors from configuration defaults and validate them."""
    defaults = runtime.config.defaults
    try:
        environment = Environment.parse(env or defaults.environment)
        platform_value, arch_value = validate_target(
            platform or defaults.platform,
            arch or defaults.arch,
        )
    except ArtifactKeyError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    return environment, platform_value, arch_value


def _show_available_versions(
    runtime: RuntimeContext,
    op: OperationScope,
    environment: Environment,
) -> None:
    """Print the newest releases for *environment* (the ``--list`` flag)."""
    limit = runtime.config.releases.list_limit
    try:
        tags = runtime.releases.list_versions(environment, limit=limit)
    except ReleaseProviderError as exc:
        _fail(op, "Listing releases", exc)
    console.print(f"[bold]Newest {environment.value} releases:[/bold]")
    for tag in tags:
        console.print(f"  {tag}")
    op.add_step("releases.list", detail=", ".join(str(tag) for tag in tags))


def _render_install_plan(plan: InstallPlan) -> None:
    table = Table(show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Release", str(plan.tag))
    table.add_row("Archive", plan.file_name)
    table.add_row("URL", plan.url)
    table.add_row("Backup", str(plan.backup_path) + (" (replaced)" if plan.replaces_backup else ""))
    table.add_row("Install dir", str(plan.install_dir))
    table.add_row("Symlink", str(plan.symlink_path))
    current = plan.current
    table.add_row("Current", str(current.tag) if current else "none")
    console.print(table)


# Install / update -----------------------------------------------


def _run_install(
    ctx: typer.Context,
    command: str,
    *,
    env: str | None,
    version: str | None,
    platform: str | None,
    arch: str | None,
    list_versions: bool,
    dry_run: bool,
    yes: bool,
    json_output: bool,
) -> None:
    runtime = _get_runtime(ctx)
    args = {
        "env": env,
        "version": version,
        "platform": platform,
        "arch": arch,
        "list": list_versions,
        "dry_run": dry_run,
        "yes": yes,
    }
    with runtime.logger.operation(
        command,
        args=args,
        target={"kind": "installation", "environment": env, "version": version},
    ) as op:
        environment, platform_value, arch_value = _resolve_selectors(
            runtime, op, env, platform, arch
        )
        if list_versions:
            _show_available_versions(runtime, op, environment)

        try:
            plan = runtime.installer.plan_install(environment, version, platform_value, arch_value)
        except _HANDLED_ERRORS as exc:
            _fail(op, "Resolving release", exc)
        op.add_step("resolve.tag", detail=str(plan.tag))

        if not json_output:
            _render_install_plan(plan)
        elif dry_run:
            console.print_json(data={"plan": plan.to_dict()})

        if dry_run:
            _dry_run_complete(
                op,
                f"{plan.key} would be downloaded from {plan.url} and activated.",
                context=plan.to_dict(),
            )
            return

        if not _confirm(op, f"Install {plan.tag} ({plan.key.platform}/{plan.key.arch})?",
                        auto_confirm=yes):
            _cancelled(op, command.capitalize())
            return

        try:
            with runtime.locks.mutate_installation(command) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = runtime.installer.apply_install(plan)
        except _HANDLED_ERRORS as exc:
            _fail(op, f"Installing {plan.tag}", exc)

        op.add_step("installer.download", detail=f"{result.size_bytes} bytes sha256={result.sha256}")
        op.add_step("backups.put", detail=str(result.backup_path))
        op.add_step("installer.activate", detail=", ".join(p.name for p in result.executables))

        for warning in result.warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        if json_output:
            console.print_json(data=result.to_dict())
        else:
            console.print(
                f"[green]Installed {result.tag} ({result.key.platform}/{result.key.arch}) "
                f"into {result.install_dir}.[/green]"
            )
        op.success(
            f"Installed {result.tag}.",
            changed=3,
            warnings=result.warnings,
            backups=[result.key.encode()],
            context=result.to_dict(),
        )


@app.command()
def install(
    ctx: typer.Context,
    env: str | None = ENV_OPTION,
    version: str | None = VERSION_OPTION,
    platform: str | None = PLATFORM_OPTION,
    arch: str | None = ARCH_OPTION,
    list_versions: bool = LIST_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Download and activate a Sui release (latest when --version is omitted)."""
    _run_install(
        ctx,
        "install",
        env=env,
        version=version,
        platform=platform,
        arch=arch,
        list_versions=list_versions,
        dry_run=dry_run,
        yes=yes,
        json_output=json_output,
    )


@app.command()
def update(
    ctx: typer.Context,
    env: str | None = ENV_OPTION,
    version: str | None = VERSION_OPTION,
    platform: str | None = PLATFORM_OPTION,
    arch: str | None = ARCH_OPTION,
    list_versions: bool = LIST_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Update to a newer release; identical to ``install``."""
    _run_install(
        ctx,
        "update",
        env=env,
        version=version,
        platform=platform,
        arch=arch,
        list_versions=list_versions,
        dry_run=dry_run,
        yes=yes,
        json_output=json_output,
    )


# Uninstall ------------------------------------------------------


@app.command()
def uninstall(
    ctx: typer.Context,
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Remove the install location and activation symlink (backups are kept)."""
    runtime = _get_runtime(ctx)
    store = runtime.store
    with runtime.logger.operation(
        "uninstall",
        args={"dry_run": dry_run, "yes": yes},
        target={"kind": "installation", "path": str(store.install_dir)},
    ) as op:
        try:
            record = store.load_version_record()
        except _HANDLED_ERRORS as exc:
            _fail(op, "Reading installation", exc)
        console.print(
            f"Installed: {record.tag if record else 'unknown'} at {store.install_dir}; "
            f"symlink {store.symlink_path}. Backups in {runtime.config.backup_dir} are kept."
        )
        if dry_run:
            _dry_run_complete(
                op,
                f"{store.install_dir} and {store.symlink_path} would be removed.",
                context={"install_dir": store.install_dir, "symlink_path": store.symlink_path},
            )
            return

        if not _confirm(op, f"Remove {store.install_dir} and {store.symlink_path}?",
                        auto_confirm=yes):
            _cancelled(op, "Uninstall")
            return

        try:
            with runtime.locks.mutate_installation("uninstall") as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                removed = runtime.installer.uninstall()
        except _HANDLED_ERRORS as exc:
            _fail(op, "Uninstall", exc)

        op.add_step("installer.uninstall", detail=", ".join(str(path) for path in removed))
        if removed:
            console.print(f"[green]Removed {len(removed)} path(s); backups kept.[/green]")
        else:
            console.print("Nothing installed; nothing to remove.")
        op.success(
            "Uninstalled Sui.",
            changed=len(removed),
            context={"removed": [str(path) for path in removed]},
        )


# Switch ---------------------------------------------------------


def _render_switch_plan(plan: SwitchPlan) -> None:
    current = plan.current
    console.print(f"Current: {current.tag if current else 'none'}")
    if plan.entry is not None:
        console.print(f"Target:  {plan.key} (from backup {plan.entry.path})")
    elif plan.install is not None:
        console.print(f"Target:  {plan.key} [yellow](no backup; will download)[/yellow]")
        _render_install_plan(plan.install)


@app.command()
def switch(
    ctx: typer.Context,
    name: str = typer.Argument(
        ...,
        help="Backup to activate, e.g. sui-testnet-v1.40.0-ubuntu-x86_64 or testnet-v1.40.0.",
    ),
    platform: str | None = PLATFORM_OPTION,
    arch: str | None = ARCH_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Activate a backed-up build, downloading it when no backup exists."""
    runtime = _get_runtime(ctx)
    args = {"name": name, "platform": platform, "arch": arch, "dry_run": dry_run, "yes": yes}
    with runtime.logger.operation(
        "switch",
        args=args,
        target={"kind": "installation", "reference": name},
    ) as op:
        try:
            plan = runtime.installer.plan_switch(name, platform=platform, arch=arch)
        except _HANDLED_ERRORS as exc:
            _fail(op, f"Switching to '{name}'", exc)
        op.add_step("switch.plan", detail=f"{plan.key} via {plan.source}")

        if not json_output:
            _render_switch_plan(plan)
        elif dry_run:
            console.print_json(data={"plan": plan.to_dict()})

        if dry_run:
            _dry_run_complete(
                op,
                f"{plan.key} would be activated from {plan.source}.",
                context=plan.to_dict(),
            )
            return

        if plan.source == "backup":
            prompt = f"Switch to {plan.key}?"
        else:
            prompt = f"No backup named {plan.key}. Download {plan.key.file_name} and install it?"

        def _confirm_download(_: SwitchPlan) -> bool:
            return _confirm(op, prompt, auto_confirm=yes)

        try:
            with runtime.locks.mutate_installation("switch") as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                if plan.source == "backup" and not _confirm(op, prompt, auto_confirm=yes):
                    result = None
                else:
                    result = runtime.installer.switch_to(plan, confirm=_confirm_download)
        except _HANDLED_ERRORS as exc:
            _fail(op, f"Switching to {plan.key}", exc)

        if result is None:
            _cancelled(op, "Switch")
            return

        for warning in result.warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        if json_output:
            console.print_json(data=result.to_dict())
        else:
            console.print(f"[green]Switched to {result.key} ({result.source}).[/green]")
        op.success(
            f"Switched to {result.key}.",
            changed=3,
            warnings=result.warnings,
            backups=[result.key.encode()],
            context=result.to_dict(),
        )


# List -----------------------------------------------------------


def _local_listing(runtime: RuntimeContext, environment: Environment | None) -> list[dict[str, object]]:
    record = runtime.store.load_version_record()
    try:
        artifacts = {entry["key"]: entry for entry in runtime.registry.list_artifacts()}
    except StateRegistryError:
        artifacts = {}
    latest_names = {
        plan.latest.name
        for plan in runtime.backups.retention_plans(record)
        if plan.latest is not None
    }

    rows: list[dict[str, object]] = []
    for entry in runtime.backups.list_entries():
        if environment is not None and entry.environment is not environment:
            continue
        row = entry.to_dict()
        flags: list[str] = []
        if entry.key is None:
            flags.append("unrecognised")
        if entry.matches(record):
            flags.append("active")
        if entry.name in latest_names:
            flags.append("latest")
        row["status"] = flags
        metadata = artifacts.get(entry.name, {})
        row["installed_at"] = metadata.get("installed_at")
        row["last_activated_at"] = metadata.get("last_activated_at")
        rows.append(row)
    return rows


def _remote_listing(
    runtime: RuntimeContext,
    op: OperationScope,
    environment: Environment | None,
) -> dict[str, list[str]]:
    limit = runtime.config.releases.list_limit
    selected = [environment] if environment is not None else list(Environment)
    listing: dict[str, list[str]] = {}
    for env in selected:
        try:
            tags = runtime.releases.list_versions(env, limit=limit)
        except ReleaseProviderError as exc:
            if environment is None and isinstance(exc, NoReleasesFound):
                op.add_step(f"releases.{env.value}", status="warning", detail=str(exc))
                listing[env.value] = []
                continue
            _fail(op, "Listing releases", exc)
        listing[env.value] = [str(tag) for tag in tags]
        op.add_step(f"releases.{env.value}", detail=f"{len(tags)} tag(s)")
    return listing


@app.command("list")
def list_command(
    ctx: typer.Context,
    env: str | None = typer.Option(
        None,
        "--env",
        "-e",
        help="Only show this environment.",
    ),
    remote: bool = typer.Option(
        False,
        "--remote",
        help="Show the newest published releases instead of local backups.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List backed-up builds (or published releases with --remote)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"env": env, "remote": remote, "json": json_output},
        target={"kind": "remote" if remote else "backups"},
    ) as op:
        environment: Environment | None = None
        if env:
            try:
                environment = Environment.parse(env)
            except ArtifactKeyError as exc:
                _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        if remote:
            listing = _remote_listing(runtime, op, environment)
            if json_output:
                console.print_json(data={"releases": listing})
            else:
                table = Table(show_header=True, header_style="bold magenta")
                table.add_column("Environment", style="bold")
                table.add_column("Releases (newest first)")
                for env_name, tags in listing.items():
                    table.add_row(env_name, "\n".join(tags) if tags else "-")
                console.print(table)
            op.success("Listed remote releases.", changed=0)
            return

        try:
            rows = _local_listing(runtime, environment)
        except _HANDLED_ERRORS as exc:
            _fail(op, "Listing backups", exc)
        if json_output:
            console.print_json(
                data={"backup_dir": str(runtime.backups.root), "backups": rows}
            )
            op.success("Listed backups as JSON.", changed=0)
            return

        if not rows:
            console.print(f"No backups found in {runtime.backups.root}.")
            op.success("No backups to list.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Environment")
        table.add_column("Version")
        table.add_column("Target")
        table.add_column("Status")
        table.add_column("Installed")
        for row in rows:
            platform = row.get("platform")
            flags = row.get("status")
            target = f"{platform}/{row.get('arch')}" if platform else "-"
            table.add_row(
                str(row["name"]),
                str(row.get("environment") or "-"),
                str(row.get("version") or "-"),
                target,
                ", ".join(flags) if isinstance(flags, list) else "",
                str(row.get("installed_at") or "-"),
            )
        console.print(table)
        op.success("Listed backups.", changed=0)


# Clean ----------------------------------------------------------


def _forget_artifacts(runtime: RuntimeContext, plans: Sequence[RetentionPlan]) -> list[str]:
    """Drop registry entries for planned backups that are no longer on disk."""
    gone = [entry.name for plan in plans for entry in plan.delete if not entry.path.exists()]
    try:
        runtime.registry.remove_artifacts(gone)
    except (OSError, StateRegistryError) as exc:
        return [f"Failed to update artifact registry: {exc}"]
    return []


def _render_retention(plans: Sequence[RetentionPlan]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Environment", style="bold")
    table.add_column("Keep")
    table.add_column("Delete")
    for plan in plans:
        keep = []
        for entry in plan.keep:
            labels = []
            if entry == plan.latest:
                labels.append("latest")
            if entry in plan.active:
                labels.append("active")
            keep.append(f"{entry.name} ({', '.join(labels)})")
        table.add_row(
            plan.environment.value,
            "\n".join(keep) or "-",
            "\n".join(entry.name for entry in plan.delete) or "-",
        )
    console.print(table)


@app.command()
def clean(
    ctx: typer.Context,
    env: str | None = typer.Option(
        None,
        "--env",
        "-e",
        help="Only clean this environment (default: all).",
    ),
    dry_run: bool = DRY_RUN_OPTION,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Delete old backups, keeping the latest and the active one per environment."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "clean",
        args={"env": env, "dry_run": dry_run, "yes": yes},
        target={"kind": "backups", "path": str(runtime.backups.root)},
    ) as op:
        environments: list[Environment] | None = None
        if env:
            try:
                environments = [Environment.parse(env)]
            except ArtifactKeyError as exc:
                _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        def _plans() -> list[RetentionPlan]:
            record = runtime.store.load_version_record()
            plans = runtime.backups.retention_plans(record, environments)
            op.add_step(
                "retention.plan",
                detail=", ".join(f"{plan.environment.value}:-{len(plan.delete)}" for plan in plans),
            )
            return plans

        if dry_run:
            try:
                plans = _plans()
            except _HANDLED_ERRORS as exc:
                _fail(op, "Planning clean", exc)
            if json_output:
                console.print_json(data={"plans": [plan.to_dict() for plan in plans]})
            else:
                _render_retention(plans)
            _dry_run_complete(
                op,
                f"{sum(len(plan.delete) for plan in plans)} backup(s) would be deleted.",
                context={"plans": [plan.to_dict() for plan in plans]},
            )
            return

        try:
            with runtime.locks.mutate_installation("clean") as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                plans = _plans()
                if not json_output:
                    _render_retention(plans)
                pending = [plan for plan in plans if not plan.is_empty]
                if not pending:
                    if json_output:
                        console.print_json(data={"deleted": []})
                    else:
                        console.print("Nothing to clean.")
                    op.success("No backups to delete.", changed=0)
                    return

                count = sum(len(plan.delete) for plan in pending)
                if not _confirm(op, f"Delete {count} backup(s)?", auto_confirm=yes):
                    _cancelled(op, "Clean")
                    return

                deleted = []
                try:
                    for plan in pending:
                        deleted.extend(runtime.backups.apply(plan))
                finally:
                    warnings = _forget_artifacts(runtime, pending)
                names = [entry.name for entry in deleted]
        except _HANDLED_ERRORS as exc:
            _fail(op, "Clean", exc)

        op.add_step("backups.delete", detail=", ".join(names))
        for warning in warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        if json_output:
            console.print_json(data={"deleted": names})
        else:
            console.print(f"[green]Deleted {len(names)} backup(s).[/green]")
        op.success(
            f"Deleted {len(names)} backup(s).",
            changed=len(names),
            warnings=warnings,
            backups=names,
        )


# Status ---------------------------------------------------------


@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the active version, symlink and installed executables."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "installation"},
    ) as op:
        try:
            snapshot = runtime.installer.status()
        except InstallationError as exc:
            _fail(op, "Status", exc)

        if json_output:
            console.print_json(data=snapshot.to_dict())
            op.success("Reported status as JSON.", changed=0)
            return

        table = Table(show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        record = snapshot.record
        table.add_row("Installed", "yes" if snapshot.installed else "no")
        table.add_row("Environment", record.environment.value if record else "-")
        table.add_row("Version", record.version if record else "-")
        table.add_row("Install dir", str(snapshot.install_dir))
        table.add_row(
            "Symlink",
            f"{snapshot.symlink_path} -> {snapshot.symlink_target}"
            if snapshot.symlink_target
            else f"{snapshot.symlink_path} (missing)",
        )
        table.add_row(
            "Executables",
            ", ".join(path.name for path in snapshot.executables) or "-",
        )
        console.print(table)
        op.success("Reported status.", changed=0)


# Config ---------------------------------------------------------


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
