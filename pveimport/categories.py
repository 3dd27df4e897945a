"""Built-in and user-defined script categories."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pveimport.errors import InvalidCategory, PersistenceFailure
from pveimport.logging_utils import log_event

CUSTOM_CATEGORY_START = 100
BUILTIN_CATEGORIES: dict[int, str] = {
    1: "Automation",
    2: "Database",
    3: "Development",
    4: "Docker",
    5: "File Sharing",
    6: "Home Automation",
    7: "Media",
    8: "Monitoring",
    9: "Networking",
    10: "Security",
    11: "Storage",
    12: "Utilities",
    13: "Virtualization",
    14: "Custom",
    15: "Proxmox",
}

logger = logging.getLogger(__name__)


class Category(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: int = Field(ge=1)
    name: str = Field(min_length=1)
    custom: bool = False


class CategoryStore:
    """Custom categories persisted in ``data/categories.json``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load_custom(self) -> list[Category]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            items = raw.get("categories", []) if isinstance(raw, dict) else []
            return [
                Category.model_validate({**item, "custom": True})
                for item in items
                if isinstance(item, dict) and int(item.get("id", 0)) >= CUSTOM_CATEGORY_START
            ]
        except (OSError, json.JSONDecodeError, TypeError, ValueError, ValidationError):
            logger.warning("Ignoring invalid categories file at %s", self.path)
            return []

    def _save_custom(self, categories: list[Category]) -> None:
        payload = {
            "categories": [{"id": item.id, "name": item.name} for item in categories],
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        except OSError as exc:
            raise PersistenceFailure(f"Failed to write categories file: {exc}") from exc

    def all(self) -> list[Category]:
        builtins = [Category(id=key, name=value) for key, value in BUILTIN_CATEGORIES.items()]
        return builtins + sorted(self._load_custom(), key=lambda item: item.id)

    def get(self, category_id: int) -> Category | None:
        return next((item for item in self.all() if item.id == category_id), None)

    def require(self, category_id: int) -> Category:
        category = self.get(category_id)
        if category is None:
            raise InvalidCategory(f"Unknown category id {category_id}")
        return category

    def add(self, name: str) -> Category:
        cleaned = " ".join(name.split())
        if not cleaned:
            raise InvalidCategory("Category name must not be empty")
        custom = self._load_custom()
        existing = {item.name.lower() for item in self.all()}
        if cleaned.lower() in existing:
            raise InvalidCategory(f"Category '{cleaned}' already exists")
        next_id = max([CUSTOM_CATEGORY_START - 1, *(item.id for item in custom)]) + 1
        category = Category(id=next_id, name=cleaned, custom=True)
        custom.append(category)
        self._save_custom(custom)
        log_event(logger, logging.INFO, "categories.added", category_id=next_id, label=cleaned)
        return category

    def delete(self, category_id: int) -> Category:
        if category_id < CUSTOM_CATEGORY_START:
            raise InvalidCategory(f"Built-in category {category_id} cannot be deleted")
        custom = self._load_custom()
        match = next((item for item in custom if item.id == category_id), None)
        if match is None:
            raise InvalidCategory(f"Unknown category id {category_id}")
        self._save_custom([item for item in custom if item.id != category_id])
        log_event(logger, logging.INFO, "categories.deleted", category_id=category_id)
        return match
