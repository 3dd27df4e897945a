"""GitHub URL parsing and a small REST client for repository inspection."""

from __future__ import annotations

import json
import logging
import re
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pveimport import __version__
from pveimport.credentials import GitCredential, build_auth_header
from pveimport.errors import (
    AuthenticationRequired,
    InvalidSourceURL,
    RepositoryNotFound,
    UpstreamUnavailable,
)
from pveimport.logging_utils import log_event

GITHUB_API = "https://api.github.com"
DEFAULT_BRANCH = "main"
MANIFEST_LOCATIONS = (
    "pvescripts.json",
    ".pvescripts/manifest.json",
    "deploy/pvescripts.json",
    ".claude/pvescripts.json",
)
_GITHUB_URL_PATTERN = re.compile(
    r"^(?:(?:https?://)?(?:www\.)?github\.com/|git@github\.com:)"
    r"(?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+?)(?:\.git)?"
    r"(?:/tree/(?P<branch>[^?#]+?)/?(?:[?#].*)?$|(?:[/?#].*)?$)"
)

Opener = Callable[..., Any]
logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RepoRef:
    """Coordinates of a GitHub repository parsed from a URL."""

    owner: str
    repo: str
    branch: str = DEFAULT_BRANCH
    branch_explicit: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def html_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repo}"

    @property
    def clone_url(self) -> str:
        return f"{self.html_url}.git"

    def with_branch(self, branch: str) -> RepoRef:
        return RepoRef(owner=self.owner, repo=self.repo, branch=branch, branch_explicit=True)


def parse_github_url(url: str) -> RepoRef:
    """Parse ``github.com/<owner>/<repo>[/tree/<branch>]`` into a ``RepoRef``.

    Scheme-less URLs and ``git@github.com:owner/repo.git`` are accepted; a
    trailing ``.git`` is dropped and the branch defaults to ``main``.
    """
    candidate = (url or "").strip()
    match = _GITHUB_URL_PATTERN.match(candidate)
    if match is None:
        raise InvalidSourceURL(f"Invalid GitHub URL: {url!r}")
    owner = match.group("owner")
    repo = match.group("repo")
    if owner in {".", ".."} or repo in {".", ".."}:
        raise InvalidSourceURL(f"Invalid GitHub URL: {url!r}")
    branch = match.group("branch")
    if branch:
        return RepoRef(owner=owner, repo=repo, branch=branch, branch_explicit=True)
    return RepoRef(owner=owner, repo=repo)


@dataclass(slots=True)
class RepositoryInfo:
    """Subset of GitHub repository metadata used for manifest generation."""

    full_name: str
    description: str | None
    default_branch: str
    html_url: str
    homepage: str | None = None
    private: bool = False


@dataclass(slots=True)
class ManifestProbe:
    """Outcome of probing a repository for a committed manifest."""

    manifest: dict[str, Any] | None = None
    location: str | None = None
    misses: dict[str, str] = field(default_factory=dict)

    @property
    def found(self) -> bool:
        return self.manifest is not None


class GitHubClient:
    """Blocking GitHub REST client built on ``urllib.request``."""

    def __init__(
        self,
        *,
        api_base: str = GITHUB_API,
        opener: Opener | None = None,
        timeout: float | None = None,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._opener = opener or urllib.request.urlopen
        self._timeout = timeout

    def _headers(self, credential: GitCredential | None) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": f"pveimport/{__version__}",
        }
        if credential is not None:
            headers.update(build_auth_header(credential))
        return headers

    def fetch_bytes(self, url: str, *, credential: GitCredential | None = None) -> bytes:
        """GET ``url``; HTTP and network errors propagate from urllib."""
        request = urllib.request.Request(url, headers=self._headers(credential), method="GET")
        with self._opener(request, timeout=self._timeout) as response:
            return response.read()

    def fetch_json(self, url: str, *, credential: GitCredential | None = None) -> Any:
        return json.loads(self.fetch_bytes(url, credential=credential).decode("utf-8"))

    def get_repository(
        self,
        ref: RepoRef,
        *,
        credential: GitCredential | None = None,
    ) -> RepositoryInfo:
        url = f"{self._api_base}/repos/{ref.owner}/{ref.repo}"
        try:
            payload = self.fetch_json(url, credential=credential)
        except urllib.error.HTTPError as exc:
            if exc.code in {401, 403} and credential is None:
                raise AuthenticationRequired(
                    f"Repository {ref.full_name} requires authentication; "
                    "add a git credential for github.com"
                ) from exc
            if exc.code in {401, 403}:
                raise RepositoryNotFound(
                    f"Repository {ref.full_name} rejected credential '{credential.name}' "
                    f"(HTTP {exc.code})"
                ) from exc
            raise RepositoryNotFound(
                f"Repository {ref.full_name} not found (HTTP {exc.code})"
            ) from exc
        except OSError as exc:
            raise UpstreamUnavailable(f"Could not reach GitHub: {exc}") from exc
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise UpstreamUnavailable(f"GitHub returned malformed repository data: {exc}") from exc

        if not isinstance(payload, dict):
            raise UpstreamUnavailable("GitHub returned malformed repository data")
        description = payload.get("description")
        homepage = payload.get("homepage")
        return RepositoryInfo(
            full_name=str(payload.get("full_name") or ref.full_name),
            description=description if isinstance(description, str) and description else None,
            default_branch=str(payload.get("default_branch") or DEFAULT_BRANCH),
            html_url=str(payload.get("html_url") or ref.html_url),
            homepage=homepage if isinstance(homepage, str) and homepage else None,
            private=bool(payload.get("private", False)),
        )

    def list_root_files(
        self,
        ref: RepoRef,
        branch: str,
        *,
        credential: GitCredential | None = None,
    ) -> list[str]:
        """Return names in the repository root; an HTTP error yields an empty list."""
        query = urllib.parse.urlencode({"ref": branch})
        url = f"{self._api_base}/repos/{ref.owner}/{ref.repo}/contents?{query}"
        try:
            payload = self.fetch_json(url, credential=credential)
        except urllib.error.HTTPError as exc:
            log_event(
                logger,
                logging.WARNING,
                "github.listing_failed",
                repository=ref.full_name,
                branch=branch,
                status_code=exc.code,
            )
            return []
        except OSError as exc:
            raise UpstreamUnavailable(f"Could not reach GitHub: {exc}") from exc
        except (json.JSONDecodeError, UnicodeDecodeError):
            return []
        if not isinstance(payload, list):
            return []
        return [
            str(item["name"]) for item in payload if isinstance(item, dict) and item.get("name")
        ]

    def probe_manifest(
        self,
        ref: RepoRef,
        branch: str,
        *,
        credential: GitCredential | None = None,
    ) -> ManifestProbe:
        """Try each well-known manifest location in order; first parseable hit wins."""
        probe = ManifestProbe()
        query = urllib.parse.urlencode({"ref": branch})
        for location in MANIFEST_LOCATIONS:
            url = f"{self._api_base}/repos/{ref.owner}/{ref.repo}/contents/{location}?{query}"
            try:
                entry = self.fetch_json(url, credential=credential)
                download_url = entry.get("download_url") if isinstance(entry, dict) else None
                if not isinstance(download_url, str) or not download_url:
                    probe.misses[location] = "no download_url"
                    continue
                document = self.fetch_json(download_url, credential=credential)
            except urllib.error.HTTPError as exc:
                probe.misses[location] = f"HTTP {exc.code}"
                continue
            except (OSError, ValueError) as exc:
                probe.misses[location] = str(exc)
                continue
            if not isinstance(document, dict):
                probe.misses[location] = "not a JSON object"
                continue
            probe.manifest = document
            probe.location = location
            log_event(
                logger,
                logging.INFO,
                "github.manifest_found",
                repository=ref.full_name,
                location=location,
            )
            return probe
        return probe
