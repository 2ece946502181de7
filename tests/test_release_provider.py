"""Tests for the GitHub release listing provider."""
from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from suictl.artifacts import Environment
from suictl.providers.release_provider import (
    NoReleasesFound,
    ReleaseListingError,
    ReleaseProvider,
    filter_tags,
    parse_listing,
)

API_URL = "https://api.github.com/repos/MystenLabs/sui/releases"

LISTING = [
    {"tag_name": "devnet-v1.41.0", "name": "Devnet v1.41.0"},
    {"tag_name": "testnet-v1.40.1", "name": "Testnet v1.40.1"},
    {"tag_name": "mainnet-v1.39.3", "name": "Mainnet v1.39.3"},
    {"tag_name": "testnet-v1.40.0", "name": "Testnet v1.40.0"},
    {"tag_name": "testnet-v1.40.0-rc1", "name": "Release candidate"},
    {"tag_name": "sui-light-client-v0.0.1"},
    {"name": "no tag at all"},
]


def _client(pages: list[list[dict[str, object]]], seen: list[httpx.Request]) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        page = int(request.url.params.get("page", "1"))
        body = pages[page - 1] if page <= len(pages) else []
        return httpx.Response(200, json=body)

    return httpx.Client(transport=httpx.MockTransport(handler))


def test_parse_listing_structured_and_regex_agree() -> None:
    """The JSON path and the text-scan fallback agree on well-formed input."""
    text = json.dumps(LISTING, indent=2)

    structured = parse_listing(text)
    scanned = parse_listing(text, structured=False)

    assert structured == scanned
    assert structured[:2] == ["devnet-v1.41.0", "testnet-v1.40.1"]
    assert len(structured) == 6


def test_parse_listing_falls_back_on_invalid_json() -> None:
    """Truncated payloads are scanned textually instead of failing."""
    text = '[{"tag_name": "testnet-v1.40.1"}, {"tag_name" : "testnet-v1.40.0"'

    assert parse_listing(text) == ["testnet-v1.40.1", "testnet-v1.40.0"]
    assert parse_listing('{"message": "rate limited"}') == []


def test_filter_tags_preserves_order_and_skips_noise() -> None:
    """Only well-formed tags of the environment survive, in listing order."""
    tags = [item["tag_name"] for item in LISTING if "tag_name" in item]

    filtered = filter_tags([str(tag) for tag in tags], Environment.TESTNET)

    assert [str(tag) for tag in filtered] == ["testnet-v1.40.1", "testnet-v1.40.0"]


def test_list_versions_newest_first_with_limit() -> None:
    """Listing order from upstream is trusted and truncated by limit."""
    seen: list[httpx.Request] = []
    provider = ReleaseProvider(API_URL, client=_client([LISTING], seen))

    tags = provider.list_versions("testnet")

    assert [str(tag) for tag in tags] == ["testnet-v1.40.1", "testnet-v1.40.0"]
    assert [str(tag) for tag in provider.list_versions("testnet", limit=1)] == [
        "testnet-v1.40.1"
    ]
    assert str(provider.latest_version(Environment.MAINNET)) == "mainnet-v1.39.3"
    assert len(seen) == 1
    assert seen[0].url.params["per_page"] == "100"


@pytest.mark.parametrize("environment", list(Environment))
def test_latest_version_matches_environment(environment: Environment) -> None:
    """Latest always carries the requested environment's prefix."""
    provider = ReleaseProvider(API_URL, client=_client([LISTING], []))

    assert str(provider.latest_version(environment)).startswith(environment.prefix)


def test_no_releases_found() -> None:
    """An environment absent from the listing raises NoReleasesFound."""
    provider = ReleaseProvider(API_URL, client=_client([[LISTING[1]]], []))

    with pytest.raises(NoReleasesFound) as excinfo:
        provider.latest_version("devnet")

    assert excinfo.value.context["environment"] == "devnet"
    assert excinfo.value.context["url"] == API_URL


def test_pages_followed_while_full() -> None:
    """Full pages trigger a follow-up request up to max_pages."""
    seen: list[httpx.Request] = []
    pages = [
        [{"tag_name": "testnet-v1.40.2"}, {"tag_name": "testnet-v1.40.1"}],
        [{"tag_name": "testnet-v1.40.0"}],
        [{"tag_name": "testnet-v1.39.0"}],
    ]
    provider = ReleaseProvider(API_URL, client=_client(pages, seen), per_page=2, max_pages=5)

    tags = provider.list_versions("testnet")

    assert [str(tag) for tag in tags] == ["testnet-v1.40.2", "testnet-v1.40.1", "testnet-v1.40.0"]
    assert [request.url.params["page"] for request in seen] == ["1", "2"]


def test_max_pages_caps_requests() -> None:
    """No more than max_pages requests are made."""
    seen: list[httpx.Request] = []
    pages = [[{"tag_name": "testnet-v1.40.2"}], [{"tag_name": "testnet-v1.40.1"}]]
    provider = ReleaseProvider(API_URL, client=_client(pages, seen), per_page=1, max_pages=1)

    assert [str(tag) for tag in provider.list_versions("testnet")] == ["testnet-v1.40.2"]
    assert len(seen) == 1


def test_http_error_status_raises_listing_error() -> None:
    """Non-2xx answers are terminal listing errors."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"message": "API rate limit exceeded"})

    provider = ReleaseProvider(API_URL, client=httpx.Client(transport=httpx.MockTransport(handler)))

    with pytest.raises(ReleaseListingError) as excinfo:
        provider.list_versions("testnet")

    assert excinfo.value.context["status"] == 403


def test_transport_error_raises_listing_error() -> None:
    """Connection failures are wrapped, not retried."""
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectTimeout("timed out", request=request)

    provider = ReleaseProvider(API_URL, client=httpx.Client(transport=httpx.MockTransport(handler)))

    with pytest.raises(ReleaseListingError):
        provider.latest_version("testnet")
    assert len(calls) == 1


def test_listing_file_bypasses_network(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """SUICTL_RELEASES_FILE supplies a saved listing for offline use."""
    listing = tmp_path / "releases.json"
    listing.write_text(json.dumps(LISTING), encoding="utf-8")
    monkeypatch.setenv("SUICTL_RELEASES_FILE", str(listing))

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("network must not be used")

    provider = ReleaseProvider(API_URL, client=httpx.Client(transport=httpx.MockTransport(handler)))

    assert provider.listing_file == listing
    assert str(provider.latest_version("testnet")) == "testnet-v1.40.1"


def test_missing_listing_file_raises(tmp_path: Path) -> None:
    """An unreadable listing file is a listing error."""
    provider = ReleaseProvider(API_URL, listing_file=tmp_path / "absent.json")

    with pytest.raises(ReleaseListingError):
        provider.fetch_tags()
