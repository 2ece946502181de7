"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import io
import json
import os
import tarfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import httpx
import pytest

API_URL = "https://api.github.com/repos/MystenLabs/sui/releases"


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture(autouse=True)
def _isolate_suictl_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep SUICTL_* variables from the developer's shell out of tests."""
    for key in list(os.environ):
        if key.startswith("SUICTL_"):
            monkeypatch.delenv(key, raising=False)


def build_release_archive(
    version: str = "1.40.1",
    *,
    executables: Iterable[str] = ("sui", "move-analyzer"),
    root: str | None = None,
) -> bytes:
    """Return a gzip tarball shaped like a published Sui release."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name in executables:
            data = f"#!/bin/sh\necho {name} {version}\n".encode()
            info = tarfile.TarInfo(name=f"{root}/{name}" if root else name)
            info.size = len(data)
            info.mode = 0o755
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@dataclass
class FakeReleaseHost:
    """In-memory stand-in for the GitHub API and release download host."""

    tags: list[str] = field(default_factory=list)
    archives: dict[str, bytes] = field(default_factory=dict)
    statuses: dict[str, int] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)

    def add_release(
        self,
        tag: str,
        *,
        platform: str = "ubuntu",
        arch: str = "x86_64",
        payload: bytes | None = None,
    ) -> str:
        """Publish *tag* (appended, so call newest first) and return its file name."""
        if tag not in self.tags:
            self.tags.append(tag)
        file_name = f"sui-{tag}-{platform}-{arch}.tgz"
        version = tag.rsplit("-v", 1)[-1]
        self.archives[file_name] = (
            payload if payload is not None else build_release_archive(version)
        )
        return file_name

    def listing_json(self) -> str:
        """Return the listing body the API would serve."""
        return json.dumps([{"tag_name": tag, "draft": False} for tag in self.tags])

    def download_requests(self) -> list[httpx.Request]:
        """Return requests made against the download host."""
        return [request for request in self.requests if request.url.host == "github.com"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "api.github.com":
            return httpx.Response(200, text=self.listing_json())
        name = request.url.path.rsplit("/", 1)[-1]
        if name in self.statuses:
            return httpx.Response(self.statuses[name])
        if name in self.archives:
            return httpx.Response(200, content=self.archives[name])
        return httpx.Response(404, text="Not Found")

    def client(self) -> httpx.Client:
        """Return an httpx client routed to this fake host."""
        return httpx.Client(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def release_host() -> FakeReleaseHost:
    """Provide an empty fake release host."""
    return FakeReleaseHost()


@pytest.fixture
def release_archive() -> Callable[..., bytes]:
    """Provide the release tarball builder."""
    return build_release_archive
