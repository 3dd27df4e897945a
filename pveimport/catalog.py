"""Manifest and install-script files inside a PVEScriptsLocal tree."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from pveimport.logging_utils import log_event
from pveimport.manifest import ScriptManifest, manifest_to_json, parse_manifest
from pveimport.settings import CatalogPaths

SCRIPT_MODE = 0o755

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _FileSnapshot:
    path: Path
    content: bytes | None
    mode: int | None


@dataclass(slots=True)
class FileTransaction:
    """Remember the prior state of every file written so it can be restored."""

    snapshots: list[_FileSnapshot] = field(default_factory=list)

    def _remember(self, path: Path) -> None:
        if any(snapshot.path == path for snapshot in self.snapshots):
            return
        if path.exists():
            self.snapshots.append(
                _FileSnapshot(path, path.read_bytes(), path.stat().st_mode & 0o777)
            )
        else:
            self.snapshots.append(_FileSnapshot(path, None, None))

    def write_text(self, path: Path, text: str, *, mode: int | None = None) -> None:
        self._remember(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        if mode is not None:
            os.chmod(path, mode)

    def rollback(self) -> None:
        """Restore snapshots newest first; restore errors are logged, not raised."""
        for snapshot in reversed(self.snapshots):
            try:
                if snapshot.content is None:
                    snapshot.path.unlink(missing_ok=True)
                    continue
                snapshot.path.write_bytes(snapshot.content)
                if snapshot.mode is not None:
                    os.chmod(snapshot.path, snapshot.mode)
            except OSError as exc:
                log_event(
                    logger,
                    logging.ERROR,
                    "catalog.rollback_failed",
                    path=str(snapshot.path),
                    error=str(exc),
                )
        self.snapshots.clear()


class ScriptCatalog:
    """Reads and writes ``json/custom/<slug>.json`` and ``custom-ct/<slug>.sh``."""

    def __init__(self, paths: CatalogPaths) -> None:
        self.paths = paths

    def relative_manifest_path(self, slug: str) -> str:
        return str(self.paths.manifest_file(slug).relative_to(self.paths.root))

    def has_manifest(self, slug: str) -> bool:
        return self.paths.manifest_file(slug).exists()

    def read_manifest(self, slug: str) -> ScriptManifest | None:
        """Return the stored manifest, or ``None`` when no file exists.

        Raises ``ValueError`` for a corrupt file and ``OSError`` when it
        cannot be read.
        """
        path = self.paths.manifest_file(slug)
        if not path.exists():
            return None
        return parse_manifest(path.read_text(encoding="utf-8"))

    def read_script(self, slug: str) -> str | None:
        path = self.paths.script_file(slug)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def write_manifest(self, manifest: ScriptManifest, transaction: FileTransaction) -> None:
        text = manifest_to_json(manifest)
        transaction.write_text(self.paths.manifest_file(manifest.slug), text)
        transaction.write_text(self.paths.mirror_manifest_file(manifest.slug), text)

    def write_script(self, slug: str, text: str, transaction: FileTransaction) -> None:
        transaction.write_text(self.paths.script_file(slug), text, mode=SCRIPT_MODE)

    def delete(self, slug: str) -> list[str]:
        """Delete every file belonging to ``slug``; failures are logged and skipped."""
        removed: list[str] = []
        candidates = (
            self.paths.manifest_file(slug),
            self.paths.mirror_manifest_file(slug),
            self.paths.script_file(slug),
        )
        for path in candidates:
            try:
                if path.exists():
                    path.unlink()
                    removed.append(str(path))
            except OSError as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "catalog.delete_failed",
                    slug=slug,
                    path=str(path),
                    error=str(exc),
                )
        return removed

    def sync_mirrors(self) -> int:
        """Copy every ``json/custom/*.json`` to ``json/custom-<slug>.json``."""
        if not self.paths.manifests_dir.is_dir():
            return 0
        copied = 0
        for path in sorted(self.paths.manifests_dir.glob("*.json")):
            shutil.copyfile(path, self.paths.mirror_manifest_file(path.stem))
            copied += 1
        return copied


def build_rebuild_commands(
    paths: CatalogPaths,
    *,
    service_name: str,
    service_active: bool,
) -> list[list[str]]:
    """Plan the commands that make PVEScriptsLocal pick up catalog changes."""
    commands: list[list[str]] = []
    if (paths.root / "package.json").exists():
        commands.append(["npm", "--prefix", str(paths.root), "run", "build"])
    if service_active:
        commands.append(["systemctl", "restart", service_name])
    return commands


def service_is_active(service_name: str) -> bool:
    if shutil.which("systemctl") is None:
        return False
    result = subprocess.run(
        ["systemctl", "is-active", "--quiet", service_name],
        check=False,
        capture_output=True,
        text=True,
    )
    return result.returncode == 0


def run_commands(
    commands: list[list[str]],
    *,
    dry_run: bool = False,
    runner: Callable[..., subprocess.CompletedProcess[str]] | None = None,
) -> None:
    """Execute commands sequentially with optional dry-run mode."""
    executor = runner or subprocess.run
    for command in commands:
        log_event(logger, logging.INFO, "catalog.command", command=" ".join(command))
        if dry_run:
            continue
        executor(command, check=True, text=True)


def rebuild_catalog(
    catalog: ScriptCatalog,
    *,
    service_name: str,
    dry_run: bool = False,
) -> list[list[str]]:
    """Refresh mirror manifests, rebuild the UI and restart its service."""
    if not dry_run:
        catalog.sync_mirrors()
    commands = build_rebuild_commands(
        catalog.paths,
        service_name=service_name,
        service_active=service_is_active(service_name),
    )
    run_commands(commands, dry_run=dry_run)
    return commands
