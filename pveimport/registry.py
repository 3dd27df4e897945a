"""Import registry: records of every imported script, persisted as JSON."""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pveimport.errors import PersistenceFailure
from pveimport.manifest import DEFAULT_CATEGORY_ID

SourceType = Literal["github", "community-scripts", "selfhst"]

logger = logging.getLogger(__name__)


class ImportRecord(BaseModel):
    """One registry entry; ``slug`` is unique within a registry."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    slug: str = Field(min_length=1)
    name: str
    source: str
    source_type: SourceType = Field(default="github", alias="sourceType")
    branch: str | None = None
    imported_at: str = Field(alias="importedAt")
    category: int = DEFAULT_CATEGORY_ID
    manifest_path: str = Field(alias="manifestPath")
    community_script: str | None = Field(default=None, alias="communityScript")

    def payload(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)


class RegistryDocument(BaseModel):
    model_config = ConfigDict(extra="allow")

    imports: list[ImportRecord] = Field(default_factory=list)
    last_updated: str | None = None

    def get(self, slug: str) -> ImportRecord | None:
        return next((record for record in self.imports if record.slug == slug), None)

    def upsert(self, record: ImportRecord) -> None:
        """Replace the record with the same slug in place, or append it."""
        for index, existing in enumerate(self.imports):
            if existing.slug == record.slug:
                self.imports[index] = record
                return
        self.imports.append(record)

    def remove(self, slug: str) -> bool:
        remaining = [record for record in self.imports if record.slug != slug]
        removed = len(remaining) != len(self.imports)
        self.imports = remaining
        return removed


class RegistryStore(Protocol):
    """Persistence backend for the registry document."""

    def load(self) -> RegistryDocument: ...

    def save(self, document: RegistryDocument) -> None: ...


class JsonRegistryStore:
    """Registry stored as one JSON file, replaced atomically on save."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> RegistryDocument:
        if not self.path.exists():
            return RegistryDocument()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring invalid import registry at %s", self.path)
            return RegistryDocument()
        if not isinstance(raw, dict) or not isinstance(raw.get("imports", []), list):
            logger.warning("Ignoring malformed import registry at %s", self.path)
            return RegistryDocument()

        records: list[ImportRecord] = []
        for item in raw.get("imports", []):
            try:
                records.append(ImportRecord.model_validate(item))
            except ValidationError:
                logger.warning("Skipping malformed registry record in %s: %r", self.path, item)
        last_updated = raw.get("last_updated")
        return RegistryDocument(
            imports=records,
            last_updated=last_updated if isinstance(last_updated, str) else None,
        )

    def save(self, document: RegistryDocument) -> None:
        document.last_updated = datetime.now(UTC).isoformat()
        payload = {
            "imports": [record.payload() for record in document.imports],
            "last_updated": document.last_updated,
        }
        temp_path = self.path.with_name(f".{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(
                json.dumps(payload, indent=2, sort_keys=True) + "\n",
                encoding="utf-8",
            )
            os.replace(temp_path, self.path)
        except OSError as exc:
            if temp_path.exists():
                temp_path.unlink()
            raise PersistenceFailure(f"Failed to write registry {self.path}: {exc}") from exc
