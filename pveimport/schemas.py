"""Pydantic models for HTTP request bodies and the response envelope."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pveimport.credentials import AuthType, Provider
from pveimport.manifest import ImportOverrides, TargetOS


class ApiEnvelope(BaseModel):
    """Every API response: ``{success, message, data?}``."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    message: str
    data: Any | None = None


class ResourceRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cpu: int | None = Field(default=None, ge=1, le=16)
    ram: int | None = Field(default=None, ge=128, le=32768)
    hdd: int | None = Field(default=None, ge=1, le=500)
    os: TargetOS | None = None
    version: str | None = None


class GithubImportRequest(BaseModel):
    """Body of ``POST /import/github`` and ``POST /import/preview``."""

    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1)
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    category: int | None = Field(default=None, ge=1)
    resources: ResourceRequest | None = None

    def overrides(self) -> ImportOverrides:
        resources = self.resources.model_dump(exclude_none=True) if self.resources else {}
        return ImportOverrides(
            name=self.name,
            description=self.description,
            category=self.category,
            **resources,
        )


class CommunityImportRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = Field(min_length=1, alias="scriptName")
    category: int | None = Field(default=None, ge=1)


class CategoryRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=64)


class CategoryAssignment(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    category_id: int = Field(ge=1, alias="categoryId")


class CredentialRequest(BaseModel):
    """Body of credential create and update calls; all fields optional on update."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str | None = Field(default=None, min_length=1)
    provider: Provider | None = None
    base_url: str | None = Field(default=None, alias="baseUrl")
    auth_type: AuthType | None = Field(default=None, alias="authType")
    username: str | None = None
    token: str | None = None


class UpdateApplyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    dry_run: bool = Field(default=False, alias="dryRun")
    backup: bool | None = None
