"""Self-update checks, command planning and pre-update backups."""

from __future__ import annotations

import json
import subprocess
import sys
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from shutil import which
from typing import Any, Literal

from pveimport.errors import PersistenceFailure

UpdateMethod = Literal["auto", "pip", "git", "docker"]
ResolvedUpdateMethod = Literal["pip", "git", "docker"]
PACKAGE_NAME = "pveimport"


@dataclass(slots=True)
class UpdateCheck:
    """Result of comparing the local checkout with its remote branch."""

    current_version: str
    method: ResolvedUpdateMethod
    branch: str | None = None
    current_commit: str | None = None
    latest_commit: str | None = None
    commits_behind: int | None = None
    latest_message: str | None = None
    checked_at: str | None = None

    @property
    def update_available(self) -> bool | None:
        if self.commits_behind is None:
            return None
        return self.commits_behind > 0

    def payload(self) -> dict[str, Any]:
        return {
            "currentVersion": self.current_version,
            "method": self.method,
            "branch": self.branch,
            "currentCommit": self.current_commit,
            "latestCommit": self.latest_commit,
            "commitsBehind": self.commits_behind,
            "latestMessage": self.latest_message,
            "updateAvailable": self.update_available,
            "checkedAt": self.checked_at,
        }


def detect_update_method(cwd: Path | None = None) -> ResolvedUpdateMethod:
    """Select best update method for current deployment shape."""
    location = cwd or Path.cwd()
    if which("git") and (location / ".git").exists():
        return "git"
    if which("docker") and any(
        (location / name).exists() for name in ("docker-compose.yml", "compose.yml")
    ):
        return "docker"
    return "pip"


def _git(location: Path, *args: str) -> str | None:
    result = subprocess.run(
        ["git", "-C", str(location), *args],
        check=False,
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def check_for_updates(
    *,
    current_version: str,
    install_dir: Path,
    method: UpdateMethod = "auto",
) -> UpdateCheck:
    """Fetch the tracked branch and count commits the checkout is behind."""
    resolved_method = detect_update_method(install_dir) if method == "auto" else method
    if resolved_method not in {"pip", "git", "docker"}:
        raise ValueError(f"unsupported update method: {resolved_method}")
    check = UpdateCheck(
        current_version=current_version,
        method=resolved_method,
        checked_at=datetime.now(UTC).isoformat(),
    )
    if resolved_method != "git":
        return check

    check.current_commit = _git(install_dir, "rev-parse", "HEAD")
    check.branch = _git(install_dir, "rev-parse", "--abbrev-ref", "HEAD") or "main"
    _git(install_dir, "fetch", "origin", check.branch)
    remote = f"origin/{check.branch}"
    check.latest_commit = _git(install_dir, "rev-parse", remote)
    behind = _git(install_dir, "rev-list", f"HEAD..{remote}", "--count")
    if behind is not None and behind.isdigit():
        check.commits_behind = int(behind)
    elif check.latest_commit is not None and check.latest_commit == check.current_commit:
        check.commits_behind = 0
    check.latest_message = _git(install_dir, "log", "-1", "--format=%s", remote)
    return check


def build_update_commands(
    *,
    method: ResolvedUpdateMethod,
    install_dir: Path,
    branch: str | None = None,
    service_name: str | None = None,
) -> list[list[str]]:
    """Plan shell commands required for selected update method."""
    if method == "pip":
        commands = [[sys.executable, "-m", "pip", "install", "--upgrade", PACKAGE_NAME]]
    elif method == "git":
        commands = [
            ["git", "-C", str(install_dir), "checkout", "--", "."],
            ["git", "-C", str(install_dir), "pull", "origin", branch or "main"],
            [sys.executable, "-m", "pip", "install", "--upgrade", str(install_dir)],
        ]
    else:
        return [
            ["docker", "compose", "--project-directory", str(install_dir), "pull"],
            ["docker", "compose", "--project-directory", str(install_dir), "up", "-d", "--build"],
        ]
    if service_name:
        commands.append(["systemctl", "restart", service_name])
    return commands


def apply_update_commands(
    commands: list[list[str]],
    *,
    dry_run: bool = False,
) -> None:
    """Execute self-update commands."""
    for command in commands:
        if dry_run:
            continue
        subprocess.run(command, check=True, text=True)


def _read_json(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None


def create_backup(
    *,
    backups_dir: Path,
    registry_file: Path,
    categories_file: Path,
    settings_file: Path,
    now: datetime | None = None,
) -> Path:
    """Snapshot registry, categories and settings into ``pre-update-<ts>.json``."""
    timestamp = now or datetime.now(UTC)
    payload = {
        "createdAt": timestamp.isoformat(),
        "imports": _read_json(registry_file),
        "categories": _read_json(categories_file),
        "settings": _read_json(settings_file),
    }
    target = backups_dir / f"pre-update-{timestamp.strftime('%Y%m%dT%H%M%SZ')}.json"
    try:
        backups_dir.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    except OSError as exc:
        raise PersistenceFailure(f"Failed to write backup {target}: {exc}") from exc
    return target
