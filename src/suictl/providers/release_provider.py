"""Release listing provider backed by the GitHub releases API."""
from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping, Sequence
from pathlib import Path

import httpx

from ..artifacts import ArtifactKeyError, Environment, ReleaseTag
from ..config import RELEASES_FILE_ENV_VAR

_TAG_NAME_PATTERN = re.compile(r'"tag_name"\s*:\s*"([^"]+)"')
_DEFAULT_HEADERS = {
    "Accept": "application/vnd.github+json",
    "User-Agent": "suictl",
}


class ReleaseProviderError(RuntimeError):
    """Raised when the release listing cannot be turned into tags."""

    def __init__(self, message: str, *, context: Mapping[str, object] | None = None) -> None:
        """Store *message* plus structured *context* (environment, url, ...)."""
        super().__init__(message)
        self.context = dict(context or {})


class ReleaseListingError(ReleaseProviderError):
    """Raised when the listing endpoint cannot be reached or answers non-2xx."""


class NoReleasesFound(ReleaseProviderError):
    """Raised when an environment has no published releases."""


def parse_listing(text: str, *, structured: bool = True) -> list[str]:
    """Return every ``tag_name`` in a raw release listing, in listing order.

    With *structured* the payload is decoded as JSON; when that fails, or the
    payload is not a list of release objects, the raw text is scanned for
    ``"tag_name": "<tag>"`` pairs instead.
    """
    if structured:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, list) and all(isinstance(item, Mapping) for item in payload):
            return [
                item["tag_name"].strip()
                for item in payload
                if isinstance(item.get("tag_name"), str) and item["tag_name"].strip()
            ]
    return [match.strip() for match in _TAG_NAME_PATTERN.findall(text) if match.strip()]


def filter_tags(tags: Sequence[str], environment: Environment | str) -> list[ReleaseTag]:
    """Return tags belonging to *environment*, preserving listing order.

    Tags carrying the prefix but not the ``<env>-vX.Y.Z`` shape (release
    candidates, for example) are skipped.
    """
    env = Environment.parse(environment)
    selected: list[ReleaseTag] = []
    seen: set[ReleaseTag] = set()
    for raw in tags:
        if not raw.startswith(env.prefix):
            continue
        try:
            tag = ReleaseTag.parse(raw, environment=env)
        except ArtifactKeyError:
            continue
        if tag not in seen:
            seen.add(tag)
            selected.append(tag)
    return selected


class ReleaseProvider:
    """Resolve published release tags for each environment.

    The upstream listing is trusted to be newest first; tags are never
    re-sorted here.
    """

    def __init__(
        self,
        api_url: str,
        *,
        client: httpx.Client | None = None,
        per_page: int = 100,
        max_pages: int = 1,
        listing_file: Path | None = None,
    ) -> None:
        """Configure the endpoint, HTTP client and paging limits.

        When *listing_file* is given (or ``SUICTL_RELEASES_FILE`` is set) the
        listing is read from that file and the network is never touched.
        """
        self.api_url = api_url
        self.client = client
        self.per_page = per_page
        self.max_pages = max_pages
        if listing_file is None:
            env_value = os.environ.get(RELEASES_FILE_ENV_VAR, "").strip()
            listing_file = Path(env_value) if env_value else None
        self.listing_file = listing_file.expanduser() if listing_file is not None else None
        self._tags: list[str] | None = None

    # Listing -------------------------------------------------------
    def fetch_tags(self) -> list[str]:
        """Return all tag names from the listing (cached per provider)."""
        if self._tags is None:
            if self.listing_file is not None:
                self._tags = self._read_listing_file(self.listing_file)
            else:
                self._tags = self._fetch_remote()
        return list(self._tags)

    def list_versions(
        self,
        environment: Environment | str,
        limit: int | None = None,
    ) -> list[ReleaseTag]:
        """Return release tags for *environment*, newest first."""
        env = Environment.parse(environment)
        tags = filter_tags(self.fetch_tags(), env)
        if not tags:
            raise NoReleasesFound(
                f"No releases found for environment '{env.value}'.",
                context={"environment": env.value, "url": self._source_label()},
            )
        if limit is not None and limit > 0:
            return tags[:limit]
        return tags

    def latest_version(self, environment: Environment | str) -> ReleaseTag:
        """Return the newest release tag for *environment*."""
        return self.list_versions(environment, limit=1)[0]

    # Internal helpers ---------------------------------------------
    def _source_label(self) -> str:
        return str(self.listing_file) if self.listing_file is not None else self.api_url

    def _read_listing_file(self, path: Path) -> list[str]:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ReleaseListingError(
                f"Failed to read release listing {path}: {exc}",
                context={"path": str(path)},
            ) from exc
        return parse_listing(text)

    def _fetch_remote(self) -> list[str]:
        client = self.client
        owns_client = client is None
        if client is None:
            client = httpx.Client(headers=_DEFAULT_HEADERS, follow_redirects=True)

        tags: list[str] = []
        try:
            for page in range(1, self.max_pages + 1):
                params = {"per_page": self.per_page, "page": page}
                try:
                    response = client.get(self.api_url, params=params)
                except httpx.HTTPError as exc:
                    raise ReleaseListingError(
                        f"Failed to fetch release listing from {self.api_url}: {exc}",
                        context={"url": self.api_url, "page": page},
                    ) from exc
                if not response.is_success:
                    raise ReleaseListingError(
                        f"Release listing request failed with HTTP {response.status_code}.",
                        context={
                            "url": self.api_url,
                            "page": page,
                            "status": response.status_code,
                        },
                    )
                page_tags = parse_listing(response.text)
                tags.extend(page_tags)
                if len(page_tags) < self.per_page:
                    break
        finally:
            if owns_client:
                client.close()
        return tags


__all__ = [
    "RELEASES_FILE_ENV_VAR",
    "NoReleasesFound",
    "ReleaseListingError",
    "ReleaseProvider",
    "ReleaseProviderError",
    "filter_tags",
    "parse_listing",
]
