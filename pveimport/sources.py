"""External script catalogs: community-scripts/ProxmoxVE and selfh.st apps."""

from __future__ import annotations

import logging
import re
import urllib.error
from dataclasses import dataclass, field
from time import monotonic
from typing import Any

import yaml

from pveimport.errors import ManifestNotFound, UpstreamUnavailable
from pveimport.github import GITHUB_API, GitHubClient
from pveimport.logging_utils import log_event

COMMUNITY_REPOSITORY = "community-scripts/ProxmoxVE"
COMMUNITY_SOURCE_URL = f"https://github.com/{COMMUNITY_REPOSITORY}"
COMMUNITY_LISTING_URL = f"{GITHUB_API}/repos/{COMMUNITY_REPOSITORY}/contents/json"
COMMUNITY_RAW_BASE = f"https://raw.githubusercontent.com/{COMMUNITY_REPOSITORY}/main"
SELFHST_LISTING_URL = (
    f"{GITHUB_API}/repos/awesome-selfhosted/awesome-selfhosted-data/contents/software"
)
SELFHST_FETCH_LIMIT = 200
SELFHST_MIN_RESULTS = 10
LISTING_TTL_SECONDS = 3600.0
_NON_ALNUM = re.compile(r"[^a-z0-9]")

logger = logging.getLogger(__name__)


def community_name_candidates(name: str) -> list[str]:
    """File stems to try for a community script name, most specific first."""
    lowered = name.strip().lower()
    candidates = [_NON_ALNUM.sub("", lowered), re.sub(r"\s+", "-", lowered)]
    return [item for item in dict.fromkeys(candidates) if item]


@dataclass(slots=True)
class CommunityScript:
    """A downloaded community-scripts manifest plus its install script."""

    name: str
    manifest: dict[str, Any]
    manifest_url: str
    script_path: str | None = None
    script_text: str | None = None


class CommunityScriptsCatalog:
    """Browse and fetch manifests from community-scripts/ProxmoxVE."""

    def __init__(
        self,
        client: GitHubClient | None = None,
        *,
        listing_url: str = COMMUNITY_LISTING_URL,
        raw_base: str = COMMUNITY_RAW_BASE,
    ) -> None:
        self._client = client or GitHubClient()
        self._listing_url = listing_url
        self._raw_base = raw_base.rstrip("/")
        self._listing: list[str] | None = None
        self._listed_at = 0.0

    def list_scripts(self) -> list[str]:
        """Return sorted manifest names (``json/*.json`` stems)."""
        if self._listing is not None and monotonic() - self._listed_at < LISTING_TTL_SECONDS:
            return list(self._listing)
        try:
            payload = self._client.fetch_json(self._listing_url)
        except (OSError, ValueError) as exc:
            raise UpstreamUnavailable(f"Could not list community scripts: {exc}") from exc
        entries = payload if isinstance(payload, list) else []
        names = sorted(
            str(item["name"]).removesuffix(".json")
            for item in entries
            if isinstance(item, dict) and str(item.get("name", "")).endswith(".json")
        )
        self._listing = names
        self._listed_at = monotonic()
        return list(names)

    def search(self, keyword: str) -> list[str]:
        needle = keyword.strip().lower()
        return [name for name in self.list_scripts() if needle in name.lower()]

    def _fetch_manifest(self, name: str) -> tuple[str, dict[str, Any], str]:
        last_error: Exception | None = None
        for candidate in community_name_candidates(name):
            url = f"{self._raw_base}/json/{candidate}.json"
            try:
                document = self._client.fetch_json(url)
            except urllib.error.HTTPError as exc:
                last_error = exc
                continue
            except (OSError, ValueError) as exc:
                raise UpstreamUnavailable(
                    f"Could not fetch community script {name!r}: {exc}"
                ) from exc
            if isinstance(document, dict):
                return candidate, document, url
        raise ManifestNotFound(
            f"Community script manifest not found for {name!r}"
            + (f" ({last_error})" if last_error is not None else "")
        )

    def fetch(self, name: str) -> CommunityScript:
        """Download the manifest and the first install script it references."""
        stem, manifest, manifest_url = self._fetch_manifest(name)
        result = CommunityScript(name=stem, manifest=manifest, manifest_url=manifest_url)
        methods = manifest.get("install_methods")
        if not isinstance(methods, list):
            return result
        for method in methods:
            script = method.get("script") if isinstance(method, dict) else None
            if not isinstance(script, str) or not script:
                continue
            script_url = f"{self._raw_base}/{script.lstrip('/')}"
            try:
                result.script_text = self._client.fetch_bytes(script_url).decode("utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "community.script_unavailable",
                    script=script,
                    error=str(exc),
                )
                continue
            result.script_path = script
            break
        return result


@dataclass(slots=True)
class SelfhstApp:
    name: str
    description: str | None = None
    repo: str | None = None
    website: str | None = None
    tags: list[str] = field(default_factory=list)
    stars: int | None = None

    def matches(self, query: str) -> bool:
        needle = query.strip().lower()
        if not needle:
            return True
        haystack = [self.name, self.description or "", *self.tags]
        return any(needle in value.lower() for value in haystack)

    def payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "repo": self.repo,
            "website": self.website,
            "tags": list(self.tags),
            "stars": self.stars,
        }


FALLBACK_SELFHST_APPS: tuple[SelfhstApp, ...] = tuple(
    SelfhstApp(name=name, description=description, repo=repo, tags=[tag], stars=stars)
    for name, description, repo, tag, stars in (
        ("Nextcloud", "File sync, share and collaboration",
         "https://github.com/nextcloud/server", "file-sharing", 26000),
        ("Jellyfin", "The Free Software Media System",
         "https://github.com/jellyfin/jellyfin", "media", 32000),
        ("Home Assistant", "Open source home automation",
         "https://github.com/home-assistant/core", "home-automation", 70000),
        ("Vaultwarden", "Bitwarden compatible server",
         "https://github.com/dani-garcia/vaultwarden", "security", 35000),
        ("Gitea", "Lightweight self-hosted Git service",
         "https://github.com/go-gitea/gitea", "git", 43000),
        ("Immich", "Self-hosted photo and video backup",
         "https://github.com/immich-app/immich", "photos", 40000),
        ("Paperless-ngx", "Document management system",
         "https://github.com/paperless-ngx/paperless-ngx", "documents", 18000),
        ("Uptime Kuma", "Self-hosted monitoring tool",
         "https://github.com/louislam/uptime-kuma", "monitoring", 52000),
        ("Pi-hole", "Network-wide ad blocking",
         "https://github.com/pi-hole/pi-hole", "dns", 48000),
        ("Syncthing", "Continuous file synchronization",
         "https://github.com/syncthing/syncthing", "file-sync", 62000),
        ("Ollama", "Run large language models locally",
         "https://github.com/ollama/ollama", "ai", 80000),
        ("n8n", "Workflow automation tool",
         "https://github.com/n8n-io/n8n", "automation", 43000),
    )
)


def parse_selfhst_entry(text: str, *, fallback_name: str) -> SelfhstApp | None:
    """Parse one awesome-selfhosted ``software/*.yml`` document."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError:
        return None
    if not isinstance(data, dict):
        return None

    def _text(key: str) -> str | None:
        value = data.get(key)
        return str(value).strip() if value else None

    tags = data.get("tags")
    stars = data.get("stargazers_count")
    return SelfhstApp(
        name=_text("name") or fallback_name,
        description=_text("description"),
        repo=_text("source_code_url"),
        website=_text("website_url"),
        tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
        stars=stars if isinstance(stars, int) else None,
    )


class SelfhstCatalog:
    """App listings from awesome-selfhosted-data, with a built-in fallback."""

    def __init__(
        self,
        client: GitHubClient | None = None,
        *,
        listing_url: str = SELFHST_LISTING_URL,
        fetch_limit: int = SELFHST_FETCH_LIMIT,
    ) -> None:
        self._client = client or GitHubClient()
        self._listing_url = listing_url
        self._fetch_limit = fetch_limit

    def _list_files(self) -> list[dict[str, Any]]:
        payload = self._client.fetch_json(self._listing_url)
        if not isinstance(payload, list):
            return []
        return [
            item
            for item in payload
            if isinstance(item, dict)
            and str(item.get("name", "")).endswith(".yml")
            and item.get("download_url")
        ]

    def _fetch_apps(self, query: str) -> list[SelfhstApp]:
        try:
            files = self._list_files()
        except (OSError, ValueError) as exc:
            log_event(logger, logging.WARNING, "selfhst.listing_failed", error=str(exc))
            return []
        needle = query.strip().lower()
        if needle:
            files = [item for item in files if needle in str(item["name"]).lower()]
        apps: list[SelfhstApp] = []
        for item in files[: self._fetch_limit]:
            file_name = str(item["name"])
            try:
                text = self._client.fetch_bytes(str(item["download_url"])).decode("utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            app = parse_selfhst_entry(text, fallback_name=file_name.removesuffix(".yml"))
            if app is not None:
                apps.append(app)
        return apps

    def search(self, query: str = "") -> list[SelfhstApp]:
        apps = [app for app in self._fetch_apps(query) if app.matches(query)]
        if len(apps) < SELFHST_MIN_RESULTS:
            known = {app.name.lower() for app in apps}
            apps.extend(
                app
                for app in FALLBACK_SELFHST_APPS
                if app.matches(query) and app.name.lower() not in known
            )
        return sorted(apps, key=lambda app: app.name.lower())

    def find(self, name: str) -> SelfhstApp:
        wanted = name.strip().lower()
        for app in self.search(name):
            if app.name.lower() == wanted:
                return app
        raise ManifestNotFound(f"selfh.st app {name!r} not found")
