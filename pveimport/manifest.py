"""Pydantic models for PVEScripts manifests and import overrides."""

from __future__ import annotations

import json
from collections.abc import Mapping
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

TargetOS = Literal["debian", "ubuntu", "alpine"]
DEFAULT_CATEGORY_ID = 14
DEFAULT_OS = "debian"
DEFAULT_OS_VERSION = "13"


class ProjectType(StrEnum):
    """Project kinds recognized by marker-file detection."""

    NODEJS = "nodejs"
    PYTHON = "python"
    DOCKER = "docker"
    GOLANG = "golang"
    RUST = "rust"
    GENERIC = "generic"


class Resources(BaseModel):
    """Container sizing for one install method."""

    model_config = ConfigDict(extra="allow")

    cpu: int = Field(default=1, ge=1)
    ram: int = Field(default=512, ge=1)
    hdd: int = Field(default=4, ge=1)
    os: str | None = DEFAULT_OS
    version: str | int | float | None = DEFAULT_OS_VERSION


class InstallMethod(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "default"
    script: str | None = None
    resources: Resources = Field(default_factory=Resources)


class ManifestSource(BaseModel):
    """Where a manifest came from; GitHub imports carry repo coordinates."""

    model_config = ConfigDict(extra="allow")

    type: str = "github"
    owner: str | None = None
    repo: str | None = None
    branch: str | None = None
    project_type: ProjectType | None = None
    install_script: str | None = None
    script: str | None = None
    url: str | None = None


class DefaultCredentials(BaseModel):
    model_config = ConfigDict(extra="allow")

    username: str | None = None
    password: str | None = None


class Note(BaseModel):
    model_config = ConfigDict(extra="allow")

    text: str
    type: str = "info"


class ScriptManifest(BaseModel):
    """Deployment manifest consumed by the PVEScriptsLocal catalog."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1)
    slug: str = Field(min_length=1)
    description: str | None = None
    categories: list[int] = Field(default_factory=lambda: [DEFAULT_CATEGORY_ID])
    date_created: str | None = None
    type: str = "ct"
    updateable: bool = True
    privileged: bool = False
    interface_port: int | None = None
    documentation: str | None = None
    website: str | None = None
    logo: str | None = None
    source: ManifestSource | None = None
    install_methods: list[InstallMethod] = Field(default_factory=list)
    default_credentials: DefaultCredentials | None = None
    notes: list[Note] = Field(default_factory=list)

    @field_validator("categories")
    @classmethod
    def _unique_categories(cls, value: list[int]) -> list[int]:
        return list(dict.fromkeys(value))

    @property
    def project_type(self) -> ProjectType:
        if self.source is None or self.source.project_type is None:
            return ProjectType.GENERIC
        return self.source.project_type

    @property
    def resources(self) -> Resources:
        """Resources of the primary install method."""
        if not self.install_methods:
            return Resources()
        return self.install_methods[0].resources


class ImportOverrides(BaseModel):
    """User-supplied values merged over a resolved manifest."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    cpu: int | None = Field(default=None, ge=1, le=16)
    ram: int | None = Field(default=None, ge=128, le=32768)
    hdd: int | None = Field(default=None, ge=1, le=500)
    os: TargetOS | None = None
    version: str | None = None
    category: int | None = Field(default=None, ge=1)

    @property
    def resource_updates(self) -> dict[str, Any]:
        fields = ("cpu", "ram", "hdd", "os", "version")
        return {name: getattr(self, name) for name in fields if getattr(self, name) is not None}


def manifest_to_dict(manifest: ScriptManifest) -> dict[str, Any]:
    """Serialize only the fields that were set, keeping unknown keys."""
    return manifest.model_dump(mode="json", exclude_unset=True)


def manifest_to_json(manifest: ScriptManifest) -> str:
    return json.dumps(manifest_to_dict(manifest), indent=2) + "\n"


def parse_manifest(data: Mapping[str, Any] | str) -> ScriptManifest:
    """Parse manifest JSON text or a decoded mapping.

    Raises ``ValueError`` for malformed JSON or a document that is not a
    manifest object.
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as exc:
            raise ValueError(f"manifest is not valid JSON: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ValueError("manifest must be a JSON object")
    try:
        return ScriptManifest.model_validate(dict(data))
    except ValidationError as exc:
        raise ValueError(f"invalid manifest: {exc}") from exc
