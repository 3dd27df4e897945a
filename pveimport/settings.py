"""Filesystem layout and persisted settings for the importer."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

DEFAULT_PVESCRIPTS_DIR = "/opt/ProxmoxVE-Local"
DEFAULT_INSTALL_DIR = "/opt/pvescripts-customiser"
DEFAULT_SERVICE_NAME = "pvescripts-customiser"
DEFAULT_PVESCRIPTS_SERVICE = "pvescriptslocal"
SETTINGS_FILENAME = "settings.json"

logger = logging.getLogger(__name__)


def default_pvescripts_dir() -> Path:
    """Return the PVEScriptsLocal root (``PVESCRIPTS_DIR`` env override)."""
    return Path(os.environ.get("PVESCRIPTS_DIR", DEFAULT_PVESCRIPTS_DIR)).expanduser()


def default_install_dir() -> Path:
    return Path(os.environ.get("INSTALL_DIR", DEFAULT_INSTALL_DIR)).expanduser()


def default_settings_dir() -> Path:
    env_value = os.environ.get("SETTINGS_DIR")
    if env_value:
        return Path(env_value).expanduser()
    return default_install_dir() / "config"


def default_service_name() -> str:
    return os.environ.get("SERVICE_NAME", DEFAULT_SERVICE_NAME)


def default_pvescripts_service() -> str:
    return os.environ.get("PVESCRIPTS_SERVICE", DEFAULT_PVESCRIPTS_SERVICE)


@dataclass(slots=True, frozen=True)
class CatalogPaths:
    """Well-known locations under a PVEScriptsLocal root."""

    root: Path

    @property
    def manifests_dir(self) -> Path:
        return self.root / "json" / "custom"

    @property
    def json_dir(self) -> Path:
        return self.root / "json"

    @property
    def scripts_dir(self) -> Path:
        return self.root / "custom-ct"

    @property
    def data_dir(self) -> Path:
        return self.root / "data"

    @property
    def registry_file(self) -> Path:
        return self.data_dir / "custom-imports.json"

    @property
    def categories_file(self) -> Path:
        return self.data_dir / "categories.json"

    @property
    def backups_dir(self) -> Path:
        return self.data_dir / "backups"

    def manifest_file(self, slug: str) -> Path:
        return self.manifests_dir / f"{slug}.json"

    def mirror_manifest_file(self, slug: str) -> Path:
        return self.json_dir / f"custom-{slug}.json"

    def script_file(self, slug: str) -> Path:
        return self.scripts_dir / f"{slug}.sh"


def resolve_catalog_paths(pvescripts_dir: Path | None = None) -> CatalogPaths:
    """Resolve catalog paths from an explicit directory or the environment."""
    return CatalogPaths(root=pvescripts_dir or default_pvescripts_dir())


class AppSettings(BaseModel):
    """User-editable settings stored as ``settings.json``."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    auto_check_updates: bool = Field(default=True, alias="autoCheckUpdates")
    update_check_interval: int = Field(default=24, ge=1, le=720, alias="updateCheckInterval")
    last_update_check: str | None = Field(default=None, alias="lastUpdateCheck")
    default_credential_id: str | None = Field(default=None, alias="defaultCredentialId")
    backup_before_update: bool = Field(default=False, alias="backupBeforeUpdate")


def load_settings(settings_dir: Path) -> AppSettings:
    """Load settings, falling back to defaults when the file is missing or invalid."""
    path = settings_dir / SETTINGS_FILENAME
    if not path.exists():
        return AppSettings()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return AppSettings.model_validate(raw)
    except (OSError, json.JSONDecodeError, ValidationError):
        logger.warning("Ignoring invalid settings file at %s", path)
        return AppSettings()


def save_settings(settings_dir: Path, settings: AppSettings) -> None:
    settings_dir.mkdir(parents=True, exist_ok=True)
    path = settings_dir / SETTINGS_FILENAME
    path.write_text(
        json.dumps(settings.model_dump(mode="json", by_alias=True), indent=2, sort_keys=True)
        + "\n",
        encoding="utf-8",
    )
