"""Import-management API routes."""

from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from pveimport.credentials import CredentialStore
from pveimport.errors import PersistenceFailure, PveImportError
from pveimport.importer import ImportService
from pveimport.logging_utils import log_event
from pveimport.schemas import (
    ApiEnvelope,
    CategoryAssignment,
    CategoryRequest,
    CommunityImportRequest,
    CredentialRequest,
    GithubImportRequest,
    UpdateApplyRequest,
)
from pveimport.self_update import (
    apply_update_commands,
    build_update_commands,
    check_for_updates,
    create_backup,
)
from pveimport.settings import SETTINGS_FILENAME, AppSettings, load_settings, save_settings

logger = logging.getLogger(__name__)


def envelope(message: str, data: Any = None, *, status_code: int = 200) -> JSONResponse:
    """Wrap ``data`` in the ``{success, message, data}`` response shape."""
    body = ApiEnvelope(success=status_code < 400, message=message, data=data)
    return JSONResponse(
        content=body.model_dump(mode="json", exclude_none=True),
        status_code=status_code,
    )


def _service(request: Request) -> ImportService:
    return request.app.state.service


def _credentials(request: Request) -> CredentialStore:
    return request.app.state.credentials


def register_import_routes(app: FastAPI, *, app_version: str) -> None:
    """Register import, catalog, settings and system endpoints on the application."""

    @app.post("/import/github")
    async def import_github(payload: GithubImportRequest, request: Request) -> JSONResponse:
        """Import a GitHub repository into the catalog."""
        lock: asyncio.Lock = request.app.state.import_lock
        async with lock:
            result = await asyncio.to_thread(
                _service(request).import_repository,
                payload.url,
                payload.overrides(),
            )
        return envelope(f"Imported '{result.record.slug}'", result.payload())

    @app.post("/import/preview")
    async def import_preview(payload: GithubImportRequest, request: Request) -> JSONResponse:
        """Resolve a repository and render its script without writing anything."""
        result = await asyncio.to_thread(
            _service(request).preview,
            payload.url,
            payload.overrides(),
        )
        return envelope("Preview generated", result.payload())

    @app.post("/import/community-script")
    async def import_community(
        payload: CommunityImportRequest,
        request: Request,
    ) -> JSONResponse:
        """Import a manifest published by community-scripts/ProxmoxVE."""
        lock: asyncio.Lock = request.app.state.import_lock
        async with lock:
            result = await asyncio.to_thread(
                _service(request).import_community_script,
                payload.name,
                category=payload.category,
            )
        return envelope(f"Imported '{result.record.slug}'", result.payload())

    @app.get("/imports")
    async def list_imports(request: Request) -> JSONResponse:
        imports = await asyncio.to_thread(_service(request).list_imports)
        return envelope(f"{len(imports)} import(s)", imports)

    @app.get("/imports/{slug}")
    async def get_import(slug: str, request: Request) -> JSONResponse:
        service = _service(request)
        manifest = await asyncio.to_thread(service.get, slug)
        record = await asyncio.to_thread(service.get_record, slug)
        return envelope(
            f"Manifest for '{slug}'",
            {
                "manifest": manifest.model_dump(mode="json", exclude_unset=True),
                "record": record.payload() if record is not None else None,
            },
        )

    @app.delete("/imports/{slug}")
    async def delete_import(slug: str, request: Request) -> JSONResponse:
        lock: asyncio.Lock = request.app.state.import_lock
        async with lock:
            result = await asyncio.to_thread(_service(request).remove, slug)
        return envelope(f"Removed '{slug}'", result.payload())

    @app.post("/imports/{slug}/update")
    async def update_import(slug: str, request: Request) -> JSONResponse:
        """Re-import from the recorded source and branch."""
        lock: asyncio.Lock = request.app.state.import_lock
        async with lock:
            result = await asyncio.to_thread(_service(request).update, slug)
        return envelope(f"Updated '{slug}'", result.payload())

    @app.patch("/imports/{slug}/category")
    async def set_import_category(
        slug: str,
        payload: CategoryAssignment,
        request: Request,
    ) -> JSONResponse:
        lock: asyncio.Lock = request.app.state.import_lock
        async with lock:
            record = await asyncio.to_thread(
                _service(request).set_category,
                slug,
                payload.category_id,
            )
        return envelope(f"Category of '{slug}' set to {record.category}", record.payload())

    @app.get("/categories")
    async def list_categories(request: Request) -> JSONResponse:
        categories = await asyncio.to_thread(_service(request).categories.all)
        return envelope(
            f"{len(categories)} categories",
            [category.model_dump() for category in categories],
        )

    @app.post("/categories")
    async def add_category(payload: CategoryRequest, request: Request) -> JSONResponse:
        lock: asyncio.Lock = request.app.state.import_lock
        async with lock:
            category = await asyncio.to_thread(_service(request).categories.add, payload.name)
        return envelope(f"Added category '{category.name}'", category.model_dump())

    @app.delete("/categories")
    async def delete_category(
        request: Request,
        category_id: int = Query(alias="id", ge=1),
    ) -> JSONResponse:
        lock: asyncio.Lock = request.app.state.import_lock
        async with lock:
            category = await asyncio.to_thread(_service(request).categories.delete, category_id)
        return envelope(f"Deleted category '{category.name}'", category.model_dump())

    @app.get("/settings")
    async def get_settings(request: Request) -> JSONResponse:
        settings = await asyncio.to_thread(load_settings, request.app.state.settings_dir)
        return envelope("Settings", settings.model_dump(mode="json", by_alias=True))

    @app.put("/settings")
    async def put_settings(
        request: Request,
        changes: dict[str, Any] = Body(...),
    ) -> JSONResponse:
        """Merge ``changes`` into the stored settings."""
        settings_dir: Path = request.app.state.settings_dir
        current = await asyncio.to_thread(load_settings, settings_dir)
        try:
            updated = AppSettings.model_validate(
                {**current.model_dump(by_alias=True), **changes}
            )
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            await asyncio.to_thread(save_settings, settings_dir, updated)
        except OSError as exc:
            raise PersistenceFailure(f"Failed to write {SETTINGS_FILENAME}: {exc}") from exc
        return envelope("Settings saved", updated.model_dump(mode="json", by_alias=True))

    @app.get("/settings/credentials")
    async def list_credentials(request: Request) -> JSONResponse:
        """List credentials with masked tokens."""
        credentials = await asyncio.to_thread(_credentials(request).load)
        return envelope(
            f"{len(credentials)} credential(s)",
            [credential.public_payload() for credential in credentials],
        )

    @app.post("/settings/credentials")
    async def add_credential(payload: CredentialRequest, request: Request) -> JSONResponse:
        if payload.name is None or payload.provider is None:
            raise HTTPException(status_code=400, detail="name and provider are required")
        lock: asyncio.Lock = request.app.state.import_lock
        async with lock:
            credential = await asyncio.to_thread(
                _credentials(request).add,
                name=payload.name,
                provider=payload.provider,
                token=payload.token,
                username=payload.username,
                base_url=payload.base_url,
                auth_type=payload.auth_type or "token",
            )
        return envelope(
            f"Added credential '{credential.name}'",
            credential.public_payload(),
            status_code=201,
        )

    @app.put("/settings/credentials/{credential_id}")
    async def update_credential(
        credential_id: str,
        payload: CredentialRequest,
        request: Request,
    ) -> JSONResponse:
        lock: asyncio.Lock = request.app.state.import_lock
        async with lock:
            credential = await asyncio.to_thread(
                _credentials(request).update,
                credential_id,
                **payload.model_dump(exclude_none=True),
            )
        if credential is None:
            raise HTTPException(
                status_code=404,
                detail=f"credential '{credential_id}' was not found",
            )
        return envelope(f"Updated credential '{credential.name}'", credential.public_payload())

    @app.delete("/settings/credentials/{credential_id}")
    async def delete_credential(credential_id: str, request: Request) -> JSONResponse:
        lock: asyncio.Lock = request.app.state.import_lock
        async with lock:
            deleted = await asyncio.to_thread(_credentials(request).delete, credential_id)
        if not deleted:
            raise HTTPException(
                status_code=404,
                detail=f"credential '{credential_id}' was not found",
            )
        return envelope(f"Deleted credential '{credential_id}'", {"id": credential_id})

    @app.get("/sources/community-scripts")
    async def community_scripts(
        request: Request,
        q: str | None = Query(default=None),
    ) -> JSONResponse:
        """List or search community-scripts manifests."""
        catalog = _service(request).community
        if catalog is None:
            raise PveImportError("Community scripts catalog is not configured")
        if q:
            names = await asyncio.to_thread(catalog.search, q)
        else:
            names = await asyncio.to_thread(catalog.list_scripts)
        return envelope(f"{len(names)} community script(s)", names)

    @app.get("/sources/selfhst")
    async def selfhst_apps(
        request: Request,
        q: str = Query(default=""),
    ) -> JSONResponse:
        catalog = _service(request).selfhst
        if catalog is None:
            raise PveImportError("selfh.st catalog is not configured")
        apps = await asyncio.to_thread(catalog.search, q)
        return envelope(f"{len(apps)} app(s)", [app.payload() for app in apps])

    @app.get("/system/update-check")
    async def update_check(request: Request) -> JSONResponse:
        """Compare the installed checkout with its remote branch."""
        settings_dir: Path = request.app.state.settings_dir
        check = await asyncio.to_thread(
            check_for_updates,
            current_version=app_version,
            install_dir=request.app.state.install_dir,
        )
        settings = await asyncio.to_thread(load_settings, settings_dir)
        settings.last_update_check = check.checked_at
        try:
            await asyncio.to_thread(save_settings, settings_dir, settings)
        except OSError as exc:
            log_event(logger, logging.WARNING, "settings.save_failed", error=str(exc))
        message = "Update available" if check.update_available else "No update available"
        return envelope(message, check.payload())

    @app.post("/system/update-apply")
    async def update_apply(
        request: Request,
        payload: UpdateApplyRequest | None = None,
    ) -> JSONResponse:
        """Back up state when configured, then run the planned update commands."""
        options = payload or UpdateApplyRequest()
        settings_dir: Path = request.app.state.settings_dir
        install_dir: Path = request.app.state.install_dir
        lock: asyncio.Lock = request.app.state.import_lock
        async with lock:
            check = await asyncio.to_thread(
                check_for_updates,
                current_version=app_version,
                install_dir=install_dir,
            )
            backup_path = None
            wants_backup = options.backup
            if wants_backup is None:
                settings = await asyncio.to_thread(load_settings, settings_dir)
                wants_backup = settings.backup_before_update
            if wants_backup and not options.dry_run:
                paths = _service(request).catalog.paths
                backup_path = await asyncio.to_thread(
                    create_backup,
                    backups_dir=paths.backups_dir,
                    registry_file=paths.registry_file,
                    categories_file=paths.categories_file,
                    settings_file=settings_dir / SETTINGS_FILENAME,
                )
            commands = build_update_commands(
                method=check.method,
                install_dir=install_dir,
                branch=check.branch,
                service_name=request.app.state.service_name,
            )
            try:
                await asyncio.to_thread(
                    apply_update_commands,
                    commands,
                    dry_run=options.dry_run,
                )
            except (OSError, subprocess.CalledProcessError) as exc:
                raise PveImportError(f"Update failed: {exc}") from exc
        return envelope(
            "Update planned" if options.dry_run else "Update applied",
            {
                "method": check.method,
                "commands": [" ".join(command) for command in commands],
                "dryRun": options.dry_run,
                "backup": str(backup_path) if backup_path is not None else None,
            },
        )
