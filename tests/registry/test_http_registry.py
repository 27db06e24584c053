"""Tests for HttpRegistry and RegistryHttpClient. All HTTP is mocked.

Requests are served by ``httpx.MockTransport`` handlers; the retry delay
is an ``AsyncMock`` so backoff is observable without waiting.
"""

from __future__ import annotations

import asyncio
import base64
import json
from typing import Callable
from unittest.mock import AsyncMock

import httpx
import pytest

from compak.core.dependency import Version
from compak.core.manifest import parse_manifest
from compak.exceptions import (
    IntegrityError,
    MalformedManifestError,
    NotFoundError,
    RegistryError,
    UnavailableError,
)
from compak.registry.base import compute_digest
from compak.registry.http_client import USER_AGENT
from compak.registry.http_registry import DIGEST_HEADER, HttpRegistry
from tests.helpers import manifest_doc

BASE = "https://registry.example.com/api"


def _registry(
    handler: Callable[[httpx.Request], httpx.Response], **kwargs
) -> tuple[HttpRegistry, AsyncMock]:
    sleep = AsyncMock()
    registry = HttpRegistry(
        BASE, transport=httpx.MockTransport(handler), sleep=sleep, **kwargs
    )
    return registry, sleep


def _run(registry: HttpRegistry, coro_factory):
    async def _go():
        async with registry:
            return await coro_factory(registry)

    return asyncio.run(_go())


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class TestProtocol:
    def test_fetch_versions(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"versions": ["1.0.0", "1.2.0"]})

        registry, _ = _registry(handler)
        versions = _run(registry, lambda r: r.fetch_versions("web"))
        assert versions == [Version.parse("1.0.0"), Version.parse("1.2.0")]
        assert seen[0].url.path == "/api/packages/web"
        assert seen[0].headers["User-Agent"] == USER_AGENT

    def test_fetch_manifest(self) -> None:
        doc = manifest_doc("web", "1.2.0", dependencies={"net": "^2.0.0"})

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/packages/web/1.2.0"
            return httpx.Response(200, json=doc)

        registry, _ = _registry(handler)
        manifest = _run(registry, lambda r: r.fetch_manifest("web", Version.parse("1.2.0")))
        assert manifest.id == "web@1.2.0"
        assert manifest.dependency("net") is not None

    def test_fetch_content_uses_digest_header(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"archive", headers={DIGEST_HEADER: "sha256:abc"})

        registry, _ = _registry(handler)
        content = _run(registry, lambda r: r.fetch_content("web", Version.parse("1.0.0")))
        assert content.data == b"archive"
        assert content.digest == "sha256:abc"
        assert not content.verify()

    def test_search(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["q"] == "web"
            assert request.url.params["limit"] == "2"
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"name": "web", "version": "1.0.0", "description": None},
                        {"version": "nameless"},
                        {"name": "webhook", "version": "0.1.0", "author": "ops"},
                        {"name": "extra", "version": "1.0.0"},
                    ]
                },
            )

        registry, _ = _registry(handler)
        results = _run(registry, lambda r: r.search("web", limit=2))
        assert [(r.name, r.description, r.author) for r in results] == [
            ("web", "", ""),
            ("webhook", "", "ops"),
        ]

    def test_publish(self) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "PUT"
            assert request.url.path == "/api/packages/web/1.0.0"
            bodies.append(json.loads(request.content))
            return httpx.Response(201)

        registry, _ = _registry(handler)
        published = _run(
            registry, lambda r: r.publish(parse_manifest(manifest_doc("web")), b"data")
        )
        assert published.digest == compute_digest(b"data")
        assert base64.b64decode(bodies[0]["content"]) == b"data"
        assert bodies[0]["manifest"]["digest"] == published.digest

    def test_publish_digest_mismatch_sends_nothing(self) -> None:
        sent: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            sent.append(request)
            return httpx.Response(201)

        registry, _ = _registry(handler)
        manifest = parse_manifest({**manifest_doc("web"), "digest": "sha256:" + "0" * 64})
        with pytest.raises(IntegrityError):
            _run(registry, lambda r: r.publish(manifest, b"data"))
        assert sent == []


# ---------------------------------------------------------------------------
# Error mapping and retries
# ---------------------------------------------------------------------------


class TestErrors:
    def test_404_is_not_found(self) -> None:
        registry, sleep = _registry(lambda request: httpx.Response(404))
        with pytest.raises(NotFoundError) as excinfo:
            _run(registry, lambda r: r.fetch_versions("ghost"))
        assert excinfo.value.package == "ghost"
        sleep.assert_not_called()

    def test_other_client_error(self) -> None:
        registry, sleep = _registry(lambda request: httpx.Response(403, text="forbidden"))
        with pytest.raises(RegistryError, match="HTTP 403") as excinfo:
            _run(registry, lambda r: r.fetch_versions("web"))
        assert not isinstance(excinfo.value, (NotFoundError, UnavailableError))
        sleep.assert_not_called()

    def test_transient_failure_retried_with_backoff(self) -> None:
        responses = iter([httpx.Response(503), httpx.Response(429)])

        def handler(request: httpx.Request) -> httpx.Response:
            return next(responses, httpx.Response(200, json={"versions": ["1.0.0"]}))

        registry, sleep = _registry(handler, max_retries=3, backoff_base=0.5)
        versions = _run(registry, lambda r: r.fetch_versions("web"))
        assert versions == [Version.parse("1.0.0")]
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    def test_retry_budget_exhausted(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        registry, sleep = _registry(handler, max_retries=2, backoff_base=1.0)
        with pytest.raises(UnavailableError) as excinfo:
            _run(registry, lambda r: r.fetch_versions("web"))
        assert len(calls) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
        assert excinfo.value.package == "web"

    def test_connection_error_is_unavailable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        registry, _ = _registry(handler, max_retries=0)
        with pytest.raises(UnavailableError, match="request error"):
            _run(registry, lambda r: r.fetch_versions("web"))

    def test_timeout_is_unavailable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        registry, _ = _registry(handler, max_retries=0)
        with pytest.raises(UnavailableError, match="timeout"):
            _run(registry, lambda r: r.fetch_versions("web"))

    def test_invalid_json(self) -> None:
        registry, _ = _registry(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(RegistryError, match="invalid JSON"):
            _run(registry, lambda r: r.fetch_versions("web"))

    def test_malformed_version_list(self) -> None:
        registry, _ = _registry(lambda request: httpx.Response(200, json={"versions": ["one"]}))
        with pytest.raises(MalformedManifestError):
            _run(registry, lambda r: r.fetch_versions("web"))
