"""Manifest resolution: committed manifests first, generated ones as fallback."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any, Protocol

from pveimport.credentials import GitCredential
from pveimport.errors import InvalidSourceURL
from pveimport.github import ManifestProbe, RepoRef, RepositoryInfo
from pveimport.logging_utils import log_event
from pveimport.manifest import (
    DEFAULT_CATEGORY_ID,
    DEFAULT_OS,
    DEFAULT_OS_VERSION,
    DefaultCredentials,
    ImportOverrides,
    InstallMethod,
    ManifestSource,
    Note,
    ProjectType,
    Resources,
    ScriptManifest,
    parse_manifest,
)

DEFAULT_DESCRIPTION = "Custom imported script"
DEFAULT_LOGO = "https://cdn.jsdelivr.net/gh/selfhst/icons/webp/github.webp"
SCRIPT_DIRECTORY = "custom-ct"
INSTALL_SCRIPT_CANDIDATES = ("install.sh", "setup.sh", "deploy.sh", "scripts/install.sh")

# Detection priority follows declaration order.
PROJECT_MARKERS: tuple[tuple[ProjectType, frozenset[str]], ...] = (
    (ProjectType.NODEJS, frozenset({"package.json"})),
    (ProjectType.PYTHON, frozenset({"requirements.txt", "pyproject.toml"})),
    (ProjectType.DOCKER, frozenset({"Dockerfile", "docker-compose.yml"})),
    (ProjectType.GOLANG, frozenset({"go.mod"})),
    (ProjectType.RUST, frozenset({"Cargo.toml"})),
)
DEFAULT_RESOURCES: dict[ProjectType, tuple[int, int, int]] = {
    ProjectType.NODEJS: (1, 1024, 8),
    ProjectType.PYTHON: (1, 1024, 4),
    ProjectType.DOCKER: (2, 2048, 16),
    ProjectType.GOLANG: (1, 1024, 4),
    ProjectType.RUST: (2, 2048, 8),
    ProjectType.GENERIC: (1, 512, 4),
}
DEFAULT_PORTS: dict[ProjectType, int] = {
    ProjectType.NODEJS: 3000,
    ProjectType.PYTHON: 8000,
}
_WHITESPACE = re.compile(r"\s+")
_NON_SLUG = re.compile(r"[^a-z0-9-]")
_SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")

logger = logging.getLogger(__name__)


class RepositorySource(Protocol):
    """Read-only view of a hosted repository used during resolution."""

    def get_repository(
        self, ref: RepoRef, *, credential: GitCredential | None = None
    ) -> RepositoryInfo: ...

    def list_root_files(
        self, ref: RepoRef, branch: str, *, credential: GitCredential | None = None
    ) -> list[str]: ...

    def probe_manifest(
        self, ref: RepoRef, branch: str, *, credential: GitCredential | None = None
    ) -> ManifestProbe: ...


@dataclass(slots=True)
class ResolvedManifest:
    """Manifest plus provenance, before anything is persisted."""

    manifest: ScriptManifest
    from_repository: bool
    branch: str
    location: str | None = None
    root_files: list[str] = field(default_factory=list)


def slugify(value: str) -> str:
    """Lower-case, turn whitespace into ``-`` and drop anything outside ``[a-z0-9-]``."""
    return _NON_SLUG.sub("", _WHITESPACE.sub("-", value.lower()))


def detect_project_type(files: Iterable[str]) -> ProjectType:
    names = set(files)
    for project_type, markers in PROJECT_MARKERS:
        if names & markers:
            return project_type
    return ProjectType.GENERIC


def detect_install_script(files: Iterable[str]) -> str | None:
    names = set(files)
    return next((name for name in INSTALL_SCRIPT_CANDIDATES if name in names), None)


def _slug_for(ref: RepoRef) -> str:
    slug = slugify(ref.repo)
    if not slug:
        raise InvalidSourceURL(f"Cannot derive a slug from repository name {ref.repo!r}")
    return slug


def default_install_method(slug: str, project_type: ProjectType) -> InstallMethod:
    cpu, ram, hdd = DEFAULT_RESOURCES[project_type]
    return InstallMethod(
        type="default",
        script=f"{SCRIPT_DIRECTORY}/{slug}.sh",
        resources=Resources(cpu=cpu, ram=ram, hdd=hdd, os=DEFAULT_OS, version=DEFAULT_OS_VERSION),
    )


def generate_manifest(
    ref: RepoRef,
    *,
    branch: str,
    files: Iterable[str],
    info: RepositoryInfo | None = None,
    today: date | None = None,
) -> ScriptManifest:
    """Build a manifest from repository metadata and root-file detection."""
    file_names = list(files)
    project_type = detect_project_type(file_names)
    slug = _slug_for(ref)
    created = (today or datetime.now(UTC).date()).isoformat()
    description = info.description if info is not None and info.description else None
    website = info.homepage if info is not None and info.homepage else ref.html_url
    return ScriptManifest(
        name=ref.repo,
        slug=slug,
        categories=[DEFAULT_CATEGORY_ID],
        date_created=created,
        type="ct",
        updateable=True,
        privileged=False,
        interface_port=DEFAULT_PORTS.get(project_type),
        documentation=f"{ref.html_url}#readme",
        website=website,
        logo=DEFAULT_LOGO,
        description=description or DEFAULT_DESCRIPTION,
        source=ManifestSource(
            type="github",
            owner=ref.owner,
            repo=ref.repo,
            branch=branch,
            project_type=project_type,
            install_script=detect_install_script(file_names),
        ),
        install_methods=[default_install_method(slug, project_type)],
        default_credentials=DefaultCredentials(username=None, password=None),
        notes=[
            Note(text=f"Imported from GitHub: {ref.full_name}", type="info"),
            Note(text=f"Project type: {project_type.value}", type="info"),
        ],
    )


def complete_manifest(
    raw: dict[str, Any],
    ref: RepoRef,
    *,
    branch: str,
    files: Iterable[str],
) -> ScriptManifest:
    """Fill the keys a committed manifest may omit and parse it.

    Keys already present are kept as written, except that ``source`` always
    points at the repository and branch being imported. Raises ``ValueError`` when the
    result is still not a manifest.
    """
    document = dict(raw)
    file_names = list(files)
    slug = document.get("slug")
    if not isinstance(slug, str) or not _SLUG_PATTERN.match(slug):
        slug = (slugify(slug) if isinstance(slug, str) else "") or _slug_for(ref)
        document["slug"] = slug
    document.setdefault("name", ref.repo)

    source = document.get("source")
    if not isinstance(source, dict):
        source = {}
    source = {
        **source,
        "type": "github",
        "owner": ref.owner,
        "repo": ref.repo,
        "branch": branch,
    }
    if not source.get("project_type"):
        source["project_type"] = detect_project_type(file_names).value
    document["source"] = source

    if not document.get("install_methods"):
        project_type = ProjectType(source.get("project_type") or ProjectType.GENERIC)
        method = default_install_method(slug, project_type)
        document["install_methods"] = [method.model_dump(mode="json")]
    return parse_manifest(document)


def apply_overrides(manifest: ScriptManifest, overrides: ImportOverrides | None) -> ScriptManifest:
    """Merge non-null override fields over ``manifest``; overrides win."""
    if overrides is None:
        return manifest
    updates: dict[str, Any] = {}
    if overrides.name is not None:
        updates["name"] = overrides.name
    if overrides.description is not None:
        updates["description"] = overrides.description
    if overrides.category is not None:
        updates["categories"] = [overrides.category]

    resource_updates = overrides.resource_updates
    if resource_updates:
        methods = list(manifest.install_methods) or [
            default_install_method(manifest.slug, manifest.project_type)
        ]
        primary = methods[0]
        methods[0] = primary.model_copy(
            update={"resources": primary.resources.model_copy(update=resource_updates)}
        )
        updates["install_methods"] = methods
    if not updates:
        return manifest
    return manifest.model_copy(update=updates)


def resolve_manifest(
    source: RepositorySource,
    ref: RepoRef,
    *,
    credential: GitCredential | None = None,
    overrides: ImportOverrides | None = None,
    today: date | None = None,
) -> ResolvedManifest:
    """Fetch repository metadata, then use a committed manifest or generate one."""
    info = source.get_repository(ref, credential=credential)
    branch = ref.branch if ref.branch_explicit else info.default_branch
    probe = source.probe_manifest(ref, branch, credential=credential)
    files = source.list_root_files(ref, branch, credential=credential)

    if probe.manifest is not None:
        try:
            manifest = complete_manifest(probe.manifest, ref, branch=branch, files=files)
        except ValueError as exc:
            log_event(
                logger,
                logging.WARNING,
                "manifest.repository_invalid",
                repository=ref.full_name,
                location=probe.location,
                error=str(exc),
            )
        else:
            return ResolvedManifest(
                manifest=apply_overrides(manifest, overrides),
                from_repository=True,
                branch=branch,
                location=probe.location,
                root_files=files,
            )

    manifest = generate_manifest(ref, branch=branch, files=files, info=info, today=today)
    log_event(
        logger,
        logging.INFO,
        "manifest.generated",
        repository=ref.full_name,
        branch=branch,
        project_type=manifest.project_type.value,
    )
    return ResolvedManifest(
        manifest=apply_overrides(manifest, overrides),
        from_repository=False,
        branch=branch,
        root_files=files,
    )
