"""Shared fixtures for importer tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from pveimport.catalog import ScriptCatalog
from pveimport.categories import CategoryStore
from pveimport.credentials import CredentialStore
from pveimport.importer import ImportService
from pveimport.registry import JsonRegistryStore
from pveimport.settings import CatalogPaths
from tests.fakes import FIXED_NOW, FakeCommunity, FakeSource


@pytest.fixture
def catalog_paths(tmp_path: Path) -> CatalogPaths:
    return CatalogPaths(root=tmp_path / "ProxmoxVE-Local")


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource(files=["package.json", "README.md", "install.sh"])


@pytest.fixture
def credential_store(tmp_path: Path) -> CredentialStore:
    return CredentialStore(tmp_path / "config", secret="test-secret")


@pytest.fixture
def fake_community() -> FakeCommunity:
    return FakeCommunity(
        {
            "uptimekuma": {
                "name": "Uptime Kuma",
                "slug": "uptimekuma",
                "categories": [8],
                "type": "ct",
                "interface_port": 3001,
                "install_methods": [
                    {
                        "type": "default",
                        "script": "ct/uptimekuma.sh",
                        "resources": {
                            "cpu": 1,
                            "ram": 1024,
                            "hdd": 4,
                            "os": "debian",
                            "version": 12,
                        },
                    }
                ],
            }
        }
    )


@pytest.fixture
def service(
    catalog_paths: CatalogPaths,
    fake_source: FakeSource,
    credential_store: CredentialStore,
    fake_community: FakeCommunity,
) -> ImportService:
    return ImportService(
        catalog=ScriptCatalog(catalog_paths),
        store=JsonRegistryStore(catalog_paths.registry_file),
        source=fake_source,
        credentials=credential_store,
        categories=CategoryStore(catalog_paths.categories_file),
        community=fake_community,  # type: ignore[arg-type]
        clock=lambda: FIXED_NOW,
    )
