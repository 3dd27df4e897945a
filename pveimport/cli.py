"""Command line interface for importing scripts into PVEScriptsLocal."""

from __future__ import annotations

import json
import os
import shlex
import subprocess
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError

from pveimport import __version__
from pveimport.catalog import rebuild_catalog
from pveimport.credentials import AuthType, CredentialStore, Provider
from pveimport.errors import PveImportError
from pveimport.importer import ImportResult, ImportService, build_import_service
from pveimport.logging_utils import configure_logging
from pveimport.manifest import ImportOverrides, TargetOS
from pveimport.self_update import (
    UpdateMethod,
    apply_update_commands,
    build_update_commands,
    check_for_updates,
    create_backup,
)
from pveimport.settings import (
    SETTINGS_FILENAME,
    default_install_dir,
    default_pvescripts_service,
    default_service_name,
    default_settings_dir,
    load_settings,
    resolve_catalog_paths,
)

app = typer.Typer(
    no_args_is_help=True,
    help="Import GitHub repositories into a PVEScriptsLocal catalog.",
    add_completion=False,
)
credentials_app = typer.Typer(no_args_is_help=True, help="Manage git provider credentials.")
self_app = typer.Typer(no_args_is_help=True, help="Manage the pveimport installation.")
update_app = typer.Typer(no_args_is_help=True, help="Self-update commands.")

app.add_typer(credentials_app, name="credentials")
app.add_typer(self_app, name="self")
self_app.add_typer(update_app, name="update")


@dataclass(slots=True)
class CliState:
    pvescripts_dir: Path | None = None
    settings_dir: Path | None = None


def _build_service(state: CliState) -> ImportService:
    return build_import_service(
        pvescripts_dir=state.pvescripts_dir,
        settings_dir=state.settings_dir,
    )


def _state(ctx: typer.Context) -> CliState:
    if isinstance(ctx.obj, CliState):
        return ctx.obj
    return CliState()


def _settings_dir(state: CliState) -> Path:
    return state.settings_dir or default_settings_dir()


def _error(message: str) -> None:
    typer.secho(f"[ERROR] {message}", fg=typer.colors.RED, err=True)


@contextmanager
def _reported_errors() -> Iterator[None]:
    """Turn importer failures into a red ``[ERROR]`` line and exit code 1."""
    try:
        yield
    except PveImportError as exc:
        _error(exc.message)
        raise typer.Exit(code=1) from exc
    except ValidationError as exc:
        _error(f"Invalid options: {exc.errors()[0]['msg']}")
        raise typer.Exit(code=1) from exc


def _print_command(command: list[str]) -> None:
    typer.echo(f"$ {shlex.join(command)}")


def _confirm_or_exit(prompt: str, *, yes: bool) -> None:
    if yes:
        return
    if typer.confirm(prompt):
        return
    raise typer.Exit(code=1)


def _rebuild(service: ImportService, *, no_rebuild: bool) -> None:
    """Rebuild PVEScriptsLocal so it picks up catalog changes."""
    if no_rebuild:
        return
    try:
        commands = rebuild_catalog(service.catalog, service_name=default_pvescripts_service())
    except (OSError, subprocess.CalledProcessError) as exc:
        typer.secho(
            f"[WARN] PVEScriptsLocal rebuild failed: {exc}",
            fg=typer.colors.YELLOW,
            err=True,
        )
        return
    for command in commands:
        _print_command(command)


def _overrides(
    *,
    category: int | None = None,
    name: str | None = None,
    description: str | None = None,
    cpu: int | None = None,
    ram: int | None = None,
    hdd: int | None = None,
    os_name: TargetOS | None = None,
    os_version: str | None = None,
) -> ImportOverrides:
    return ImportOverrides(
        category=category,
        name=name,
        description=description,
        cpu=cpu,
        ram=ram,
        hdd=hdd,
        os=os_name,
        version=os_version,
    )


def _print_import(result: ImportResult) -> None:
    origin = "repository manifest" if result.from_repository else "generated manifest"
    typer.secho(f"Imported '{result.record.slug}' ({origin}).", fg=typer.colors.GREEN)
    typer.echo(f"  Name:         {result.manifest.name}")
    typer.echo(f"  Project type: {result.manifest.project_type.value}")
    typer.echo(f"  Category:     {result.record.category}")
    typer.echo(f"  Manifest:     {result.record.manifest_path}")
    if result.manifest.interface_port is not None:
        typer.echo(f"  Port:         {result.manifest.interface_port}")
    if not result.script_written:
        typer.echo("  Script:       not available")


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


CATEGORY_OPTION = typer.Option(None, "--category", "-c", min=1, help="Category id.")
NO_REBUILD_OPTION = typer.Option(
    False,
    "--no-rebuild",
    help="Skip rebuilding and restarting PVEScriptsLocal.",
)


@app.callback()
def root(
    ctx: typer.Context,
    pvescripts_dir: Path | None = typer.Option(
        None,
        "--pvescripts-dir",
        envvar="PVESCRIPTS_DIR",
        file_okay=False,
        dir_okay=True,
        help="PVEScriptsLocal root (defaults to /opt/ProxmoxVE-Local).",
    ),
    settings_dir: Path | None = typer.Option(
        None,
        "--settings-dir",
        envvar="SETTINGS_DIR",
        file_okay=False,
        dir_okay=True,
        help="Directory holding settings.json and encrypted credentials.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug events."),
) -> None:
    configure_logging(verbose=verbose)
    ctx.obj = CliState(pvescripts_dir=pvescripts_dir, settings_dir=settings_dir)


@app.command("import")
def import_command(
    ctx: typer.Context,
    url: str = typer.Argument(help="GitHub repository URL, optionally with /tree/<branch>."),
    category: int | None = CATEGORY_OPTION,
    name: str | None = typer.Option(None, "--name", help="Display name override."),
    description: str | None = typer.Option(None, "--description", help="Description override."),
    cpu: int | None = typer.Option(None, "--cpu", help="CPU cores (1-16)."),
    ram: int | None = typer.Option(None, "--ram", help="RAM in MB (128-32768)."),
    hdd: int | None = typer.Option(None, "--hdd", help="Disk in GB (1-500)."),
    os_name: TargetOS | None = typer.Option(None, "--os", help="Container OS."),
    os_version: str | None = typer.Option(None, "--os-version", help="Container OS version."),
    no_rebuild: bool = NO_REBUILD_OPTION,
) -> None:
    """Import a GitHub repository as a PVEScriptsLocal script."""
    service = _build_service(_state(ctx))
    with _reported_errors():
        overrides = _overrides(
            category=category,
            name=name,
            description=description,
            cpu=cpu,
            ram=ram,
            hdd=hdd,
            os_name=os_name,
            os_version=os_version,
        )
        result = service.import_repository(url, overrides)
    _print_import(result)
    _rebuild(service, no_rebuild=no_rebuild)


@app.command("preview")
def preview_command(
    ctx: typer.Context,
    url: str = typer.Argument(help="GitHub repository URL."),
    category: int | None = CATEGORY_OPTION,
    name: str | None = typer.Option(None, "--name", help="Display name override."),
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """Show the manifest and script an import would produce, without writing."""
    service = _build_service(_state(ctx))
    with _reported_errors():
        result = service.preview(url, _overrides(category=category, name=name))
    if json_output:
        _echo_json(result.payload())
        return
    manifest = result.manifest
    origin = f"repository ({result.location})" if result.from_repository else "generated"
    typer.echo(f"Slug:         {manifest.slug}")
    typer.echo(f"Name:         {manifest.name}")
    typer.echo(f"Manifest:     {origin}")
    typer.echo(f"Project type: {manifest.project_type.value}")
    resources = manifest.resources
    typer.echo(
        f"Resources:    {resources.cpu} CPU / {resources.ram} MB / {resources.hdd} GB "
        f"({resources.os} {resources.version})"
    )
    typer.echo("")
    typer.echo(result.script_preview)


@app.command("list")
def list_command(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """List imported scripts."""
    service = _build_service(_state(ctx))
    with _reported_errors():
        imports = service.list_imports()
    if json_output:
        _echo_json(imports)
        return
    if not imports:
        typer.echo("No imported scripts.")
        return
    for entry in imports:
        category = entry.get("categoryName") or entry.get("category")
        project_type = entry.get("projectType", "?")
        typer.echo(
            f"{entry['slug']:<24} {project_type:<8} {str(category):<16} {entry['source']}"
        )


@app.command("remove")
def remove_command(
    ctx: typer.Context,
    slug: str = typer.Argument(help="Slug of the imported script."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Remove without prompt."),
    no_rebuild: bool = NO_REBUILD_OPTION,
) -> None:
    """Delete an imported script's files and registry entry."""
    service = _build_service(_state(ctx))
    _confirm_or_exit(f"Remove imported script '{slug}'?", yes=yes)
    with _reported_errors():
        result = service.remove(slug)
    for path in result.removed_files:
        typer.echo(f"Deleted {path}")
    typer.secho(f"Removed '{slug}'.", fg=typer.colors.GREEN)
    _rebuild(service, no_rebuild=no_rebuild)


@app.command("update")
def update_command(
    ctx: typer.Context,
    slug: str = typer.Argument(help="Slug of the imported script."),
    no_rebuild: bool = NO_REBUILD_OPTION,
) -> None:
    """Re-import a script from its recorded source and branch."""
    service = _build_service(_state(ctx))
    with _reported_errors():
        result = service.update(slug)
    _print_import(result)
    _rebuild(service, no_rebuild=no_rebuild)


@app.command("update-all")
def update_all_command(
    ctx: typer.Context,
    no_rebuild: bool = NO_REBUILD_OPTION,
) -> None:
    """Re-import every script in the registry."""
    service = _build_service(_state(ctx))
    with _reported_errors():
        outcomes = service.update_all()
    if not outcomes:
        typer.echo("No imported scripts.")
        return
    failed = 0
    for outcome in outcomes:
        if outcome.ok:
            typer.echo(f"[OK]    {outcome.slug}")
        else:
            failed += 1
            typer.secho(f"[ERROR] {outcome.slug}: {outcome.error}", fg=typer.colors.RED)
    typer.echo(f"Updated {len(outcomes) - failed}/{len(outcomes)} script(s).")
    _rebuild(service, no_rebuild=no_rebuild)
    if failed:
        raise typer.Exit(code=1)


@app.command("set-category")
def set_category_command(
    ctx: typer.Context,
    slug: str = typer.Argument(help="Slug of the imported script."),
    category_id: int = typer.Argument(help="Category id."),
    no_rebuild: bool = NO_REBUILD_OPTION,
) -> None:
    """Move an imported script to another category."""
    service = _build_service(_state(ctx))
    with _reported_errors():
        record = service.set_category(slug, category_id)
        category = service.categories.require(record.category)
    typer.echo(f"Set category of '{slug}' to {category.id} ({category.name}).")
    _rebuild(service, no_rebuild=no_rebuild)


@app.command("categories")
def categories_command(
    ctx: typer.Context,
    add: str | None = typer.Option(None, "--add", help="Create a custom category."),
    delete: int | None = typer.Option(None, "--delete", help="Delete a custom category."),
) -> None:
    """List categories, or add and delete custom ones."""
    service = _build_service(_state(ctx))
    with _reported_errors():
        if add is not None:
            created = service.categories.add(add)
            typer.echo(f"Added category {created.id} ({created.name}).")
            return
        if delete is not None:
            removed = service.categories.delete(delete)
            typer.echo(f"Deleted category {removed.id} ({removed.name}).")
            return
        categories = service.categories.all()
    for category in categories:
        marker = " (custom)" if category.custom else ""
        typer.echo(f"{category.id:>4}  {category.name}{marker}")


@app.command("community-browse")
def community_browse_command(ctx: typer.Context) -> None:
    """List scripts published by community-scripts/ProxmoxVE."""
    service = _build_service(_state(ctx))
    with _reported_errors():
        if service.community is None:
            raise PveImportError("Community scripts catalog is not configured")
        names = service.community.list_scripts()
    for script_name in names:
        typer.echo(script_name)
    typer.echo(f"{len(names)} script(s).")


@app.command("community-search")
def community_search_command(
    ctx: typer.Context,
    keyword: str = typer.Argument(help="Case-insensitive substring."),
) -> None:
    """Search community-scripts by name."""
    service = _build_service(_state(ctx))
    with _reported_errors():
        if service.community is None:
            raise PveImportError("Community scripts catalog is not configured")
        names = service.community.search(keyword)
    if not names:
        typer.echo(f"No community scripts match '{keyword}'.")
        return
    for script_name in names:
        typer.echo(script_name)


@app.command("community-import")
def community_import_command(
    ctx: typer.Context,
    script_name: str = typer.Argument(help="Community script name, e.g. 'uptimekuma'."),
    category: int | None = CATEGORY_OPTION,
    no_rebuild: bool = NO_REBUILD_OPTION,
) -> None:
    """Import a community-scripts manifest and its install script."""
    service = _build_service(_state(ctx))
    with _reported_errors():
        result = service.import_community_script(script_name, category=category)
    _print_import(result)
    _rebuild(service, no_rebuild=no_rebuild)


def _print_selfhst(query: str, service: ImportService) -> None:
    with _reported_errors():
        if service.selfhst is None:
            raise PveImportError("selfh.st catalog is not configured")
        apps = service.selfhst.search(query)
    if not apps:
        typer.echo(f"No selfh.st apps match '{query}'.")
        return
    for app_entry in apps:
        stars = f" ({app_entry.stars} stars)" if app_entry.stars is not None else ""
        typer.echo(f"{app_entry.name}{stars}")
        if app_entry.description:
            typer.echo(f"    {app_entry.description}")
        if app_entry.repo:
            typer.echo(f"    {app_entry.repo}")


@app.command("selfhst-browse")
def selfhst_browse_command(ctx: typer.Context) -> None:
    """List self-hosted apps from awesome-selfhosted."""
    _print_selfhst("", _build_service(_state(ctx)))


@app.command("selfhst-search")
def selfhst_search_command(
    ctx: typer.Context,
    query: str = typer.Argument(help="Matches name, description or tags."),
) -> None:
    """Search self-hosted apps."""
    _print_selfhst(query, _build_service(_state(ctx)))


@app.command("selfhst-import")
def selfhst_import_command(
    ctx: typer.Context,
    app_name: str = typer.Argument(help="App name as listed by selfhst-search."),
    category: int | None = CATEGORY_OPTION,
    no_rebuild: bool = NO_REBUILD_OPTION,
) -> None:
    """Import a self-hosted app from its GitHub repository."""
    service = _build_service(_state(ctx))
    with _reported_errors():
        result = service.import_selfhst(app_name, _overrides(category=category))
    _print_import(result)
    _rebuild(service, no_rebuild=no_rebuild)


@credentials_app.command("list")
def credentials_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """List stored credentials with masked tokens."""
    store = CredentialStore(_settings_dir(_state(ctx)))
    payload = [credential.public_payload() for credential in store.load()]
    if json_output:
        _echo_json(payload)
        return
    if not payload:
        typer.echo("No credentials stored.")
        return
    for item in payload:
        scope = item.get("baseUrl") or item["provider"]
        typer.echo(f"{item['id']}  {item['name']:<20} {scope:<28} {item.get('token') or '-'}")


@credentials_app.command("add")
def credentials_add(
    ctx: typer.Context,
    name: str = typer.Option(..., "--name", help="Label for the credential."),
    provider: Provider = typer.Option("github", "--provider", help="Git provider."),
    token: str | None = typer.Option(
        None,
        "--token",
        envvar="PVEIMPORT_TOKEN",
        help="Access token (or password for basic auth).",
    ),
    username: str | None = typer.Option(None, "--username", help="Username for basic auth."),
    base_url: str | None = typer.Option(None, "--base-url", help="Host URL for self-hosted."),
    auth_type: AuthType = typer.Option("token", "--auth-type", help="token or basic."),
) -> None:
    """Store an encrypted git provider credential."""
    store = CredentialStore(_settings_dir(_state(ctx)))
    with _reported_errors():
        credential = store.add(
            name=name,
            provider=provider,
            token=token,
            username=username,
            base_url=base_url,
            auth_type=auth_type,
        )
    typer.echo(f"Added credential {credential.id} ({credential.name}).")


@credentials_app.command("remove")
def credentials_remove(
    ctx: typer.Context,
    credential_id: str = typer.Argument(help="Credential id."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Remove without prompt."),
) -> None:
    """Delete a stored credential."""
    store = CredentialStore(_settings_dir(_state(ctx)))
    _confirm_or_exit(f"Remove credential '{credential_id}'?", yes=yes)
    with _reported_errors():
        deleted = store.delete(credential_id)
    if not deleted:
        _error(f"Credential '{credential_id}' was not found.")
        raise typer.Exit(code=1)
    typer.echo(f"Removed credential {credential_id}.")


@self_app.command("version")
def self_version() -> None:
    """Print installed pveimport version."""
    typer.echo(__version__)


INSTALL_DIR_OPTION = typer.Option(
    None,
    "--install-dir",
    envvar="INSTALL_DIR",
    file_okay=False,
    dir_okay=True,
    help="Installation checkout (defaults to /opt/pvescripts-customiser).",
)


@update_app.command("check")
def self_update_check(
    method: UpdateMethod = typer.Option(
        "auto",
        "--method",
        help="Update method to evaluate (auto, pip, git, docker).",
    ),
    install_dir: Path | None = INSTALL_DIR_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """Check whether the installation is behind its remote branch."""
    result = check_for_updates(
        current_version=__version__,
        install_dir=install_dir or default_install_dir(),
        method=method,
    )
    if json_output:
        _echo_json(result.payload())
        return

    typer.echo(f"Current version: {result.current_version}")
    typer.echo(f"Update method: {result.method}")
    if result.method == "git":
        typer.echo(f"Branch: {result.branch}")
        typer.echo(f"Current commit: {result.current_commit or 'unknown'}")
        typer.echo(f"Latest commit: {result.latest_commit or 'unavailable'}")
        if result.latest_message:
            typer.echo(f"Latest change: {result.latest_message}")

    if result.update_available is True:
        typer.echo(f"Update available ({result.commits_behind} commit(s) behind).")
    elif result.update_available is False:
        typer.echo("Already up to date.")
    else:
        typer.echo("Update availability could not be determined.")


@update_app.command("apply")
def self_update_apply(
    ctx: typer.Context,
    method: UpdateMethod = typer.Option(
        "auto",
        "--method",
        help="Update method to apply (auto, pip, git, docker).",
    ),
    install_dir: Path | None = INSTALL_DIR_OPTION,
    backup: bool | None = typer.Option(
        None,
        "--backup/--no-backup",
        help="Snapshot registry, categories and settings first (defaults to settings).",
    ),
    yes: bool = typer.Option(False, "--yes", help="Run update commands without prompt."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print commands without executing."),
) -> None:
    """Pull the latest pveimport and restart its service."""
    state = _state(ctx)
    location = install_dir or default_install_dir()
    check = check_for_updates(current_version=__version__, install_dir=location, method=method)
    commands = build_update_commands(
        method=check.method,
        install_dir=location,
        branch=check.branch,
        service_name=default_service_name() if check.method != "docker" else None,
    )
    for command in commands:
        _print_command(command)

    _confirm_or_exit(
        f"Run {len(commands)} update command(s) via '{check.method}'?",
        yes=yes or dry_run,
    )

    settings_dir = _settings_dir(state)
    wants_backup = backup
    if wants_backup is None:
        wants_backup = load_settings(settings_dir).backup_before_update
    if wants_backup and not dry_run:
        paths = resolve_catalog_paths(state.pvescripts_dir)
        with _reported_errors():
            target = create_backup(
                backups_dir=paths.backups_dir,
                registry_file=paths.registry_file,
                categories_file=paths.categories_file,
                settings_file=settings_dir / SETTINGS_FILENAME,
            )
        typer.echo(f"Backup written to {target}")

    try:
        apply_update_commands(commands, dry_run=dry_run)
    except FileNotFoundError as exc:
        _error(f"Required executable not found: {exc.filename}")
        raise typer.Exit(code=1) from exc
    except subprocess.CalledProcessError as exc:
        _error(f"Update command failed with exit code {exc.returncode}.")
        raise typer.Exit(code=exc.returncode) from exc

    typer.echo("Update command sequence completed.")


@app.command("serve")
def serve_command(
    ctx: typer.Context,
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address."),
    port: int = typer.Option(8080, "--port", help="Bind port."),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes."),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    state = _state(ctx)
    if state.pvescripts_dir is not None:
        os.environ["PVESCRIPTS_DIR"] = str(state.pvescripts_dir)
    if state.settings_dir is not None:
        os.environ["SETTINGS_DIR"] = str(state.settings_dir)
    uvicorn.run("pveimport.main:app", host=host, port=port, reload=reload)


def main() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    main()
