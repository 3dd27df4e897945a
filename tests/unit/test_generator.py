"""Unit tests for project detection, manifest generation and resolution."""

from __future__ import annotations

import re
from datetime import date

import pytest

from pveimport.errors import AuthenticationRequired, InvalidSourceURL
from pveimport.generator import (
    apply_overrides,
    complete_manifest,
    detect_install_script,
    detect_project_type,
    generate_manifest,
    resolve_manifest,
    slugify,
)
from pveimport.github import RepoRef
from pveimport.manifest import ImportOverrides, ProjectType
from tests.fakes import FakeSource


@pytest.mark.parametrize(
    ("files", "expected"),
    [
        (["package.json", "requirements.txt", "Dockerfile"], ProjectType.NODEJS),
        (["pyproject.toml", "Dockerfile"], ProjectType.PYTHON),
        (["requirements.txt"], ProjectType.PYTHON),
        (["docker-compose.yml", "go.mod"], ProjectType.DOCKER),
        (["go.mod", "Cargo.toml"], ProjectType.GOLANG),
        (["Cargo.toml"], ProjectType.RUST),
        (["README.md"], ProjectType.GENERIC),
        ([], ProjectType.GENERIC),
    ],
)
def test_detect_project_type_follows_priority(
    files: list[str], expected: ProjectType
) -> None:
    assert detect_project_type(files) is expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("Widget", "widget"),
        ("My Cool App", "my-cool-app"),
        ("app_v2.0!", "appv20"),
        ("already-a-slug", "already-a-slug"),
    ],
)
def test_slugify(value: str, expected: str) -> None:
    assert slugify(value) == expected
    assert slugify(slugify(value)) == slugify(value)
    assert re.fullmatch(r"[a-z0-9-]*", slugify(value))


def test_detect_install_script_prefers_declared_order() -> None:
    assert detect_install_script(["deploy.sh", "setup.sh"]) == "setup.sh"
    assert detect_install_script(["README.md"]) is None


def test_generate_manifest_for_nodejs_repository() -> None:
    manifest = generate_manifest(
        RepoRef("acme", "widget"),
        branch="main",
        files=["package.json", "README.md"],
        today=date(2025, 3, 1),
    )

    assert manifest.slug == "widget"
    assert manifest.name == "widget"
    assert manifest.categories == [14]
    assert manifest.date_created == "2025-03-01"
    assert manifest.interface_port == 3000
    assert manifest.project_type is ProjectType.NODEJS
    assert manifest.source is not None
    assert manifest.source.branch == "main"
    method = manifest.install_methods[0]
    assert method.script == "custom-ct/widget.sh"
    assert (method.resources.cpu, method.resources.ram, method.resources.hdd) == (1, 1024, 8)
    assert (method.resources.os, method.resources.version) == ("debian", "13")


@pytest.mark.parametrize(
    ("files", "resources", "port"),
    [
        (["requirements.txt"], (1, 1024, 4), 8000),
        (["Dockerfile"], (2, 2048, 16), None),
        (["go.mod"], (1, 1024, 4), None),
        (["Cargo.toml"], (2, 2048, 8), None),
        ([], (1, 512, 4), None),
    ],
)
def test_generate_manifest_resource_defaults(
    files: list[str], resources: tuple[int, int, int], port: int | None
) -> None:
    manifest = generate_manifest(RepoRef("acme", "widget"), branch="main", files=files)

    sizing = manifest.resources
    assert (sizing.cpu, sizing.ram, sizing.hdd) == resources
    assert manifest.interface_port == port


def test_generate_manifest_rejects_unsluggable_repository() -> None:
    with pytest.raises(InvalidSourceURL):
        generate_manifest(RepoRef("acme", "___"), branch="main", files=[])


def test_apply_overrides_merges_fields() -> None:
    manifest = generate_manifest(RepoRef("acme", "widget"), branch="main", files=["go.mod"])

    updated = apply_overrides(
        manifest,
        ImportOverrides(name="My Widget", cpu=4, os="alpine", version="3.20", category=7),
    )

    assert updated.slug == "widget"
    assert updated.name == "My Widget"
    assert updated.categories == [7]
    assert updated.resources.cpu == 4
    assert updated.resources.ram == 1024
    assert (updated.resources.os, updated.resources.version) == ("alpine", "3.20")
    assert manifest.resources.cpu == 1


def test_complete_manifest_fills_missing_keys() -> None:
    manifest = complete_manifest(
        {"name": "Widget Pro", "custom_field": {"kept": True}},
        RepoRef("acme", "widget"),
        branch="dev",
        files=["Cargo.toml"],
    )

    assert manifest.slug == "widget"
    assert manifest.name == "Widget Pro"
    assert manifest.source is not None
    assert manifest.source.owner == "acme"
    assert manifest.source.branch == "dev"
    assert manifest.project_type is ProjectType.RUST
    assert manifest.install_methods[0].script == "custom-ct/widget.sh"
    assert manifest.model_extra == {"custom_field": {"kept": True}}


def test_complete_manifest_overrides_foreign_source_coordinates() -> None:
    manifest = complete_manifest(
        {
            "name": "Widget",
            "source": {"type": "gitlab", "repo": "other", "project_type": "python"},
        },
        RepoRef("acme", "widget"),
        branch="main",
        files=["package.json"],
    )

    assert manifest.source is not None
    assert manifest.source.type == "github"
    assert (manifest.source.owner, manifest.source.repo) == ("acme", "widget")
    assert manifest.project_type is ProjectType.PYTHON


def test_resolve_manifest_prefers_repository_manifest() -> None:
    source = FakeSource(
        files=["package.json"],
        manifest={"name": "Widget", "slug": "widget", "interface_port": 9000},
        location=".pvescripts/manifest.json",
    )

    resolved = resolve_manifest(source, RepoRef("acme", "widget"))

    assert resolved.from_repository is True
    assert resolved.location == ".pvescripts/manifest.json"
    assert resolved.manifest.interface_port == 9000


def test_resolve_manifest_generates_when_probe_misses() -> None:
    source = FakeSource(files=["pyproject.toml"], default_branch="trunk")

    resolved = resolve_manifest(
        source,
        RepoRef("acme", "widget"),
        overrides=ImportOverrides(description="Custom text"),
    )

    assert resolved.from_repository is False
    assert resolved.branch == "trunk"
    assert source.branches == ["trunk"]
    assert resolved.manifest.description == "Custom text"
    assert resolved.manifest.project_type is ProjectType.PYTHON


def test_resolve_manifest_uses_explicit_branch() -> None:
    source = FakeSource(files=[], default_branch="trunk")

    resolved = resolve_manifest(source, RepoRef("acme", "widget", "v2", branch_explicit=True))

    assert resolved.branch == "v2"
    assert resolved.manifest.source is not None
    assert resolved.manifest.source.branch == "v2"


def test_resolve_manifest_falls_back_on_invalid_repository_manifest() -> None:
    source = FakeSource(files=["go.mod"], manifest={"name": "", "categories": "bad"})

    resolved = resolve_manifest(source, RepoRef("acme", "widget"))

    assert resolved.from_repository is False
    assert resolved.manifest.project_type is ProjectType.GOLANG


def test_resolve_manifest_propagates_auth_errors() -> None:
    source = FakeSource(error=AuthenticationRequired("private"))

    with pytest.raises(AuthenticationRequired):
        resolve_manifest(source, RepoRef("acme", "widget"))
