"""Unit tests for GitHub URL parsing and the REST client."""

from __future__ import annotations

import io
import json
import urllib.error
import urllib.request
from typing import Any

import pytest

from pveimport.credentials import GitCredential
from pveimport.errors import (
    AuthenticationRequired,
    InvalidSourceURL,
    RepositoryNotFound,
    UpstreamUnavailable,
)
from pveimport.github import GitHubClient, RepoRef, parse_github_url

API = "https://api.test"


class _Response(io.BytesIO):
    def __enter__(self) -> _Response:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class FakeOpener:
    """Serve canned JSON bodies or HTTP errors keyed by URL."""

    def __init__(self, routes: dict[str, Any]) -> None:
        self.routes = routes
        self.requests: list[urllib.request.Request] = []

    def __call__(self, request: urllib.request.Request, timeout: float | None = None) -> _Response:
        self.requests.append(request)
        outcome = self.routes.get(request.full_url, 404)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, int):
            raise urllib.error.HTTPError(request.full_url, outcome, "error", {}, None)
        if isinstance(outcome, bytes):
            return _Response(outcome)
        return _Response(json.dumps(outcome).encode("utf-8"))


def _credential(provider: str = "github") -> GitCredential:
    return GitCredential(
        id="c1",
        name="personal",
        provider=provider,
        token="ghp_secret",
        created_at="2025-01-01T00:00:00+00:00",
        updated_at="2025-01-01T00:00:00+00:00",
    )


@pytest.mark.parametrize(
    ("url", "owner", "repo", "branch"),
    [
        ("https://github.com/acme/widget", "acme", "widget", "main"),
        ("http://github.com/acme/widget/", "acme", "widget", "main"),
        ("github.com/acme/widget", "acme", "widget", "main"),
        ("https://www.github.com/acme/widget.git", "acme", "widget", "main"),
        ("git@github.com:acme/widget.git", "acme", "widget", "main"),
        ("https://github.com/acme/widget/tree/develop", "acme", "widget", "develop"),
        ("https://github.com/acme/widget/tree/release/v2", "acme", "widget", "release/v2"),
        ("https://github.com/acme/widget/tree/feature/x/", "acme", "widget", "feature/x"),
        ("https://github.com/acme/my.repo", "acme", "my.repo", "main"),
    ],
)
def test_parse_github_url_accepts_supported_forms(
    url: str, owner: str, repo: str, branch: str
) -> None:
    ref = parse_github_url(url)

    assert (ref.owner, ref.repo, ref.branch) == (owner, repo, branch)


def test_parse_github_url_marks_explicit_branch() -> None:
    assert parse_github_url("https://github.com/a/b/tree/v2").branch_explicit is True
    assert parse_github_url("https://github.com/a/b").branch_explicit is False


@pytest.mark.parametrize(
    "url",
    [
        "",
        "not a url",
        "https://gitlab.com/acme/widget",
        "https://github.com/acme",
        "https://github.com/../widget",
    ],
)
def test_parse_github_url_rejects_invalid(url: str) -> None:
    with pytest.raises(InvalidSourceURL):
        parse_github_url(url)


def test_get_repository_returns_metadata() -> None:
    opener = FakeOpener(
        {
            f"{API}/repos/acme/widget": {
                "full_name": "acme/widget",
                "description": "Widgets",
                "default_branch": "trunk",
                "html_url": "https://github.com/acme/widget",
                "homepage": "",
                "private": False,
            }
        }
    )
    client = GitHubClient(api_base=API, opener=opener)

    info = client.get_repository(RepoRef("acme", "widget"))

    assert info.default_branch == "trunk"
    assert info.description == "Widgets"
    assert info.homepage is None
    assert opener.requests[0].get_header("Accept") == "application/vnd.github.v3+json"


def test_get_repository_sends_credential_header() -> None:
    opener = FakeOpener({f"{API}/repos/acme/widget": {"default_branch": "main"}})
    client = GitHubClient(api_base=API, opener=opener)

    client.get_repository(RepoRef("acme", "widget"), credential=_credential())

    assert opener.requests[0].get_header("Authorization") == "Bearer ghp_secret"


def test_get_repository_maps_http_errors() -> None:
    ref = RepoRef("acme", "widget")
    client = GitHubClient(api_base=API, opener=FakeOpener({f"{API}/repos/acme/widget": 404}))
    with pytest.raises(RepositoryNotFound):
        client.get_repository(ref)

    client = GitHubClient(api_base=API, opener=FakeOpener({f"{API}/repos/acme/widget": 401}))
    with pytest.raises(AuthenticationRequired):
        client.get_repository(ref)

    client = GitHubClient(api_base=API, opener=FakeOpener({f"{API}/repos/acme/widget": 403}))
    with pytest.raises(RepositoryNotFound, match="rejected credential"):
        client.get_repository(ref, credential=_credential())


def test_get_repository_maps_network_errors() -> None:
    opener = FakeOpener({f"{API}/repos/acme/widget": urllib.error.URLError("no route")})
    client = GitHubClient(api_base=API, opener=opener)

    with pytest.raises(UpstreamUnavailable):
        client.get_repository(RepoRef("acme", "widget"))


def test_list_root_files_returns_names_and_tolerates_http_errors() -> None:
    ref = RepoRef("acme", "widget")
    listing_url = f"{API}/repos/acme/widget/contents?ref=main"
    client = GitHubClient(
        api_base=API,
        opener=FakeOpener({listing_url: [{"name": "package.json"}, {"name": "src"}]}),
    )
    assert client.list_root_files(ref, "main") == ["package.json", "src"]

    client = GitHubClient(api_base=API, opener=FakeOpener({listing_url: 404}))
    assert client.list_root_files(ref, "main") == []


def test_probe_manifest_uses_first_parseable_location() -> None:
    contents = f"{API}/repos/acme/widget/contents"
    opener = FakeOpener(
        {
            f"{contents}/pvescripts.json?ref=main": 404,
            f"{contents}/.pvescripts/manifest.json?ref=main": {
                "download_url": "https://raw.test/broken.json"
            },
            "https://raw.test/broken.json": b"{not json",
            f"{contents}/deploy/pvescripts.json?ref=main": {
                "download_url": "https://raw.test/deploy.json"
            },
            "https://raw.test/deploy.json": {"name": "Widget", "slug": "widget"},
            f"{contents}/.claude/pvescripts.json?ref=main": {
                "download_url": "https://raw.test/claude.json"
            },
        }
    )
    client = GitHubClient(api_base=API, opener=opener)

    probe = client.probe_manifest(RepoRef("acme", "widget"), "main")

    assert probe.found
    assert probe.location == "deploy/pvescripts.json"
    assert probe.manifest == {"name": "Widget", "slug": "widget"}
    assert probe.misses["pvescripts.json"] == "HTTP 404"
    assert ".pvescripts/manifest.json" in probe.misses
    assert all("claude" not in request.full_url for request in opener.requests)


def test_probe_manifest_reports_every_miss() -> None:
    client = GitHubClient(api_base=API, opener=FakeOpener({}))

    probe = client.probe_manifest(RepoRef("acme", "widget"), "dev")

    assert not probe.found
    assert len(probe.misses) == 4
