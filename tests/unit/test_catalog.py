"""Unit tests for catalog files and PVEScriptsLocal rebuild planning."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from pveimport.catalog import (
    FileTransaction,
    ScriptCatalog,
    build_rebuild_commands,
    rebuild_catalog,
    run_commands,
)
from pveimport.generator import generate_manifest
from pveimport.github import RepoRef
from pveimport.settings import CatalogPaths


def test_transaction_rollback_restores_and_removes(tmp_path: Path) -> None:
    existing = tmp_path / "existing.txt"
    existing.write_text("original")
    created = tmp_path / "nested" / "created.sh"
    transaction = FileTransaction()

    transaction.write_text(existing, "changed")
    transaction.write_text(existing, "changed again")
    transaction.write_text(created, "#!/bin/sh\n", mode=0o755)
    transaction.rollback()

    assert existing.read_text() == "original"
    assert not created.exists()
    assert transaction.snapshots == []


def test_catalog_writes_mirror_and_deletes(catalog_paths: CatalogPaths) -> None:
    catalog = ScriptCatalog(catalog_paths)
    manifest = generate_manifest(RepoRef("acme", "widget"), branch="main", files=[])

    catalog.write_manifest(manifest, FileTransaction())
    catalog.write_script("widget", "echo hi\n", FileTransaction())

    assert catalog.has_manifest("widget")
    assert catalog.read_manifest("widget") == manifest
    assert catalog.read_script("widget") == "echo hi\n"
    assert catalog.relative_manifest_path("widget") == "json/custom/widget.json"
    assert len(catalog.delete("widget")) == 3
    assert catalog.read_manifest("widget") is None
    assert catalog.delete("widget") == []


def test_corrupt_manifest_raises_value_error(catalog_paths: CatalogPaths) -> None:
    path = catalog_paths.manifest_file("broken")
    path.parent.mkdir(parents=True)
    path.write_text("{")

    with pytest.raises(ValueError):
        ScriptCatalog(catalog_paths).read_manifest("broken")


def test_sync_mirrors_copies_every_manifest(catalog_paths: CatalogPaths) -> None:
    catalog_paths.manifests_dir.mkdir(parents=True)
    for slug in ("a", "b"):
        catalog_paths.manifest_file(slug).write_text(f'{{"name": "{slug}", "slug": "{slug}"}}')

    assert ScriptCatalog(catalog_paths).sync_mirrors() == 2
    assert catalog_paths.mirror_manifest_file("b").read_text() == '{"name": "b", "slug": "b"}'


def test_rebuild_commands_depend_on_tree_and_service(catalog_paths: CatalogPaths) -> None:
    assert build_rebuild_commands(catalog_paths, service_name="pve", service_active=False) == []

    catalog_paths.root.mkdir(parents=True)
    (catalog_paths.root / "package.json").write_text("{}")
    commands = build_rebuild_commands(catalog_paths, service_name="pve", service_active=True)

    assert commands == [
        ["npm", "--prefix", str(catalog_paths.root), "run", "build"],
        ["systemctl", "restart", "pve"],
    ]


def test_run_commands_dry_run_skips_execution() -> None:
    calls: list[list[str]] = []

    def runner(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        calls.append(command)
        return subprocess.CompletedProcess(command, 0)

    run_commands([["echo", "a"]], dry_run=True, runner=runner)
    assert calls == []
    run_commands([["echo", "a"], ["echo", "b"]], runner=runner)
    assert calls == [["echo", "a"], ["echo", "b"]]


def test_rebuild_catalog_dry_run(
    catalog_paths: CatalogPaths, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("pveimport.catalog.service_is_active", lambda name: True)

    commands = rebuild_catalog(ScriptCatalog(catalog_paths), service_name="pve", dry_run=True)

    assert commands == [["systemctl", "restart", "pve"]]
