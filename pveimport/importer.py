"""Import orchestration: resolve, render, persist and track imported scripts."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pveimport.catalog import FileTransaction, ScriptCatalog
from pveimport.categories import CategoryStore
from pveimport.credentials import CredentialStore, GitCredential, build_authenticated_url
from pveimport.errors import (
    ManifestNotFound,
    PersistenceFailure,
    PveImportError,
)
from pveimport.generator import RepositorySource, resolve_manifest, slugify
from pveimport.github import GitHubClient, parse_github_url
from pveimport.logging_utils import log_event
from pveimport.manifest import (
    DEFAULT_CATEGORY_ID,
    ImportOverrides,
    ScriptManifest,
    parse_manifest,
)
from pveimport.registry import ImportRecord, JsonRegistryStore, RegistryStore, SourceType
from pveimport.scripts import PREVIEW_LENGTH, render_install_script
from pveimport.settings import default_settings_dir, resolve_catalog_paths
from pveimport.sources import COMMUNITY_SOURCE_URL, CommunityScriptsCatalog, SelfhstCatalog

_SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ImportResult:
    manifest: ScriptManifest
    record: ImportRecord
    from_repository: bool
    script_written: bool

    def payload(self) -> dict[str, Any]:
        return {
            "slug": self.record.slug,
            "name": self.record.name,
            "projectType": self.manifest.project_type.value,
            "fromRepository": self.from_repository,
            "manifestPath": self.record.manifest_path,
            "scriptWritten": self.script_written,
            "port": self.manifest.interface_port,
            "category": self.record.category,
        }


@dataclass(slots=True)
class PreviewResult:
    manifest: ScriptManifest
    from_repository: bool
    script_preview: str
    location: str | None = None

    def payload(self) -> dict[str, Any]:
        return {
            "manifest": self.manifest.model_dump(mode="json", exclude_unset=True),
            "fromRepository": self.from_repository,
            "location": self.location,
            "scriptPreview": self.script_preview,
        }


@dataclass(slots=True)
class RemovalResult:
    slug: str
    removed_files: list[str]
    record_removed: bool

    def payload(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "removedFiles": list(self.removed_files),
            "recordRemoved": self.record_removed,
        }


@dataclass(slots=True)
class UpdateOutcome:
    slug: str
    ok: bool
    error: str | None = None

    def payload(self) -> dict[str, Any]:
        return {"slug": self.slug, "ok": self.ok, "error": self.error}


class ImportService:
    """Single entry point shared by the CLI and the HTTP API.

    Registry read-modify-write cycles are serialized by an in-process lock.
    Writers in other processes are not coordinated; the last save wins.
    """

    def __init__(
        self,
        *,
        catalog: ScriptCatalog,
        store: RegistryStore,
        source: RepositorySource,
        credentials: CredentialStore | None = None,
        categories: CategoryStore | None = None,
        community: CommunityScriptsCatalog | None = None,
        selfhst: SelfhstCatalog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.catalog = catalog
        self.store = store
        self.source = source
        self.credentials = credentials
        self.categories = categories or CategoryStore(catalog.paths.categories_file)
        self.community = community
        self.selfhst = selfhst
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.RLock()

    def _credential_for(self, url: str) -> GitCredential | None:
        if self.credentials is None:
            return None
        return self.credentials.match(url)

    def _validate_overrides(self, overrides: ImportOverrides | None) -> None:
        if overrides is not None and overrides.category is not None:
            self.categories.require(overrides.category)

    def preview(self, url: str, overrides: ImportOverrides | None = None) -> PreviewResult:
        """Resolve and render without writing anything."""
        ref = parse_github_url(url)
        resolved = resolve_manifest(
            self.source,
            ref,
            credential=self._credential_for(url),
            overrides=overrides,
        )
        script = render_install_script(resolved.manifest)
        return PreviewResult(
            manifest=resolved.manifest,
            from_repository=resolved.from_repository,
            script_preview=script.preview(PREVIEW_LENGTH),
            location=resolved.location,
        )

    def import_repository(
        self,
        url: str,
        overrides: ImportOverrides | None = None,
        *,
        source_type: SourceType = "github",
        expected_slug: str | None = None,
        validate_category: bool = True,
        branch: str | None = None,
    ) -> ImportResult:
        """Import a GitHub repository; nothing is persisted unless every step succeeds.

        ``branch`` pins the branch regardless of what ``url`` names.
        """
        ref = parse_github_url(url)
        if branch:
            ref = ref.with_branch(branch)
        if validate_category:
            self._validate_overrides(overrides)
        credential = self._credential_for(url)
        log_event(
            logger,
            logging.INFO,
            "import.started",
            repository=ref.full_name,
            source_type=source_type,
            credential_id=credential.id if credential is not None else None,
        )
        resolved = resolve_manifest(self.source, ref, credential=credential, overrides=overrides)
        manifest = resolved.manifest
        if expected_slug is not None and manifest.slug != expected_slug:
            manifest = manifest.model_copy(update={"slug": expected_slug})

        clone_url = None
        if credential is not None:
            clone_url = build_authenticated_url(ref.clone_url, credential)
        script = render_install_script(manifest, clone_url=clone_url)

        category = DEFAULT_CATEGORY_ID
        if overrides is not None and overrides.category is not None:
            category = overrides.category
        elif manifest.categories:
            category = manifest.categories[0]

        record = ImportRecord(
            slug=manifest.slug,
            name=manifest.name,
            source=ref.html_url,
            source_type=source_type,
            branch=resolved.branch,
            imported_at=self._clock().isoformat(),
            category=category,
            manifest_path=str(self.catalog.paths.manifest_file(manifest.slug)),
        )
        self._persist(manifest, script.text, record)
        log_event(
            logger,
            logging.INFO,
            "import.completed",
            slug=record.slug,
            repository=ref.full_name,
            from_repository=resolved.from_repository,
        )
        return ImportResult(
            manifest=manifest,
            record=record,
            from_repository=resolved.from_repository,
            script_written=True,
        )

    def _persist(
        self,
        manifest: ScriptManifest,
        script_text: str | None,
        record: ImportRecord,
    ) -> None:
        """Write manifest, script and registry together or not at all."""
        with self._lock:
            transaction = FileTransaction()
            try:
                document = self.store.load()
                previous = document.get(record.slug)
                if previous is not None and previous.source != record.source:
                    log_event(
                        logger,
                        logging.WARNING,
                        "import.slug_reassigned",
                        slug=record.slug,
                        previous_source=previous.source,
                        new_source=record.source,
                    )
                self.catalog.write_manifest(manifest, transaction)
                if script_text is not None:
                    self.catalog.write_script(manifest.slug, script_text, transaction)
                document.upsert(record)
                self.store.save(document)
            except (OSError, PersistenceFailure) as exc:
                transaction.rollback()
                log_event(
                    logger,
                    logging.ERROR,
                    "import.persist_failed",
                    slug=record.slug,
                    error=str(exc),
                )
                if isinstance(exc, PersistenceFailure):
                    raise
                raise PersistenceFailure(f"Failed to save '{record.slug}': {exc}") from exc

    def get_record(self, slug: str) -> ImportRecord | None:
        return self.store.load().get(slug)

    def get(self, slug: str) -> ScriptManifest:
        try:
            manifest = self.catalog.read_manifest(slug)
        except OSError as exc:
            raise PersistenceFailure(f"Failed to read manifest for '{slug}': {exc}") from exc
        except ValueError as exc:
            raise PersistenceFailure(f"Manifest for '{slug}' is corrupt: {exc}") from exc
        if manifest is None:
            raise ManifestNotFound(f"No manifest found for '{slug}'")
        return manifest

    def list_imports(self) -> list[dict[str, Any]]:
        """Registry records, enriched from manifests where they can be read."""
        entries: list[dict[str, Any]] = []
        for record in self.store.load().imports:
            entry: dict[str, Any] = record.payload()
            category = self.categories.get(record.category)
            entry["categoryName"] = category.name if category is not None else None
            try:
                manifest = self.catalog.read_manifest(record.slug)
            except (OSError, ValueError):
                manifest = None
            if manifest is not None:
                resources = manifest.resources
                entry.update(
                    {
                        "description": manifest.description,
                        "projectType": manifest.project_type.value,
                        "interfacePort": manifest.interface_port,
                        "resources": {
                            "cpu": resources.cpu,
                            "ram": resources.ram,
                            "hdd": resources.hdd,
                            "os": resources.os,
                            "version": resources.version,
                        },
                    }
                )
            entries.append(entry)
        return entries

    def remove(self, slug: str) -> RemovalResult:
        """Delete files best-effort; the registry entry must be removed."""
        with self._lock:
            document = self.store.load()
            record = document.get(slug)
            if record is None and not self.catalog.has_manifest(slug):
                raise ManifestNotFound(f"No import found for '{slug}'")
            removed_files = self.catalog.delete(slug)
            if record is not None:
                document.remove(slug)
                self.store.save(document)
        log_event(logger, logging.INFO, "import.removed", slug=slug, files=len(removed_files))
        return RemovalResult(
            slug=slug,
            removed_files=removed_files,
            record_removed=record is not None,
        )

    def update(self, slug: str) -> ImportResult:
        """Re-import from the recorded source and branch, keeping slug and category."""
        record = self.get_record(slug)
        if record is None:
            raise ManifestNotFound(f"No import found for '{slug}'")
        if record.source_type == "community-scripts":
            return self.import_community_script(
                record.community_script or record.slug,
                category=record.category,
                expected_slug=slug,
            )
        return self.import_repository(
            record.source,
            ImportOverrides(category=record.category),
            source_type=record.source_type,
            expected_slug=slug,
            validate_category=False,
            branch=record.branch,
        )

    def update_all(self) -> list[UpdateOutcome]:
        outcomes: list[UpdateOutcome] = []
        for record in self.store.load().imports:
            try:
                self.update(record.slug)
            except PveImportError as exc:
                outcomes.append(UpdateOutcome(slug=record.slug, ok=False, error=exc.message))
            else:
                outcomes.append(UpdateOutcome(slug=record.slug, ok=True))
        return outcomes

    def set_category(self, slug: str, category_id: int) -> ImportRecord:
        self.categories.require(category_id)
        with self._lock:
            document = self.store.load()
            record = document.get(slug)
            if record is None:
                raise ManifestNotFound(f"No import found for '{slug}'")
            updated = record.model_copy(update={"category": category_id})
            transaction = FileTransaction()
            try:
                manifest = self.catalog.read_manifest(slug)
                if manifest is not None:
                    manifest = manifest.model_copy(update={"categories": [category_id]})
                    self.catalog.write_manifest(manifest, transaction)
                document.upsert(updated)
                self.store.save(document)
            except (OSError, ValueError, PersistenceFailure) as exc:
                transaction.rollback()
                if isinstance(exc, PersistenceFailure):
                    raise
                raise PersistenceFailure(f"Failed to update category for '{slug}': {exc}") from exc
        log_event(logger, logging.INFO, "import.category_set", slug=slug, category_id=category_id)
        return updated

    def import_community_script(
        self,
        name: str,
        *,
        category: int | None = None,
        expected_slug: str | None = None,
    ) -> ImportResult:
        """Import a manifest and install script published by community-scripts."""
        if self.community is None:
            raise PveImportError("Community scripts catalog is not configured")
        if category is not None and expected_slug is None:
            self.categories.require(category)
        fetched = self.community.fetch(name)
        document = dict(fetched.manifest)
        document["source"] = {
            "type": "community-scripts",
            "script": fetched.name,
            "url": fetched.manifest_url,
        }
        slug = expected_slug or document.get("slug")
        if not isinstance(slug, str) or not _SLUG_PATTERN.match(slug):
            slug = slugify(str(slug or "")) or slugify(fetched.name)
        document["slug"] = slug
        document.setdefault("name", name)
        if category is not None:
            document["categories"] = [category]
        try:
            manifest = parse_manifest(document)
        except ValueError as exc:
            raise ManifestNotFound(
                f"Community script {name!r} has an invalid manifest: {exc}"
            ) from exc

        if category is None:
            category = manifest.categories[0] if manifest.categories else DEFAULT_CATEGORY_ID
        record = ImportRecord(
            slug=manifest.slug,
            name=manifest.name,
            source=COMMUNITY_SOURCE_URL,
            source_type="community-scripts",
            branch="main",
            imported_at=self._clock().isoformat(),
            category=category,
            manifest_path=str(self.catalog.paths.manifest_file(manifest.slug)),
            community_script=fetched.name,
        )
        self._persist(manifest, fetched.script_text, record)
        log_event(logger, logging.INFO, "import.community_completed", slug=record.slug)
        return ImportResult(
            manifest=manifest,
            record=record,
            from_repository=True,
            script_written=fetched.script_text is not None,
        )

    def import_selfhst(
        self,
        name: str,
        overrides: ImportOverrides | None = None,
    ) -> ImportResult:
        """Import a selfh.st app through its GitHub source repository."""
        if self.selfhst is None:
            raise PveImportError("selfh.st catalog is not configured")
        app = self.selfhst.find(name)
        if not app.repo:
            raise ManifestNotFound(f"selfh.st app {app.name!r} has no source repository")
        return self.import_repository(app.repo, overrides, source_type="selfhst")


def build_import_service(
    *,
    pvescripts_dir: Path | None = None,
    settings_dir: Path | None = None,
    client: GitHubClient | None = None,
) -> ImportService:
    """Wire the default file-backed collaborators for a PVEScriptsLocal root."""
    paths = resolve_catalog_paths(pvescripts_dir)
    github = client or GitHubClient()
    return ImportService(
        catalog=ScriptCatalog(paths),
        store=JsonRegistryStore(paths.registry_file),
        source=github,
        credentials=CredentialStore(settings_dir or default_settings_dir()),
        categories=CategoryStore(paths.categories_file),
        community=CommunityScriptsCatalog(github),
        selfhst=SelfhstCatalog(github),
    )
