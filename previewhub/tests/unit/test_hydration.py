from __future__ import annotations

import httpx
import pytest

from previewhub.core.errors import HydrationError
from previewhub.services.files import FileSyncService
from previewhub.services.hydration import (
    HydrationChain,
    ScaffoldStrategy,
    SnapshotStrategy,
    StorageStrategy,
    VersionedApiStrategy,
    default_chain,
)
from previewhub.services.resilience import RetryPolicy
from previewhub.services.snapshots import build_snapshot
from previewhub.tests.utils.builders import RecordingSleep


POLICY = RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=100, max_backoff_ms=1000)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_unreachable_snapshot_falls_through_to_storage(tmp_path) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if request.url.host == "snapshots.test":
            return httpx.Response(503)
        if request.url.path == "/projects/p-1/files":
            return httpx.Response(
                200,
                json={"files": [{"path": "src/a.ts"}, {"path": "package.json", "url": "https://cdn.test/pkg"}]},
            )
        if request.url.path == "/projects/p-1/files/src/a.ts":
            return httpx.Response(200, text="export const a = 1\n")
        if request.url.host == "cdn.test":
            return httpx.Response(200, text="{}")
        return httpx.Response(404)

    sleep = RecordingSleep()
    async with _client(handler) as client:
        chain = default_chain(
            "p-1",
            client=client,
            snapshot_url="https://snapshots.test/p-1.tar.gz",
            storage_url="https://storage.test/",
            policy=POLICY,
            sleep=sleep,
        )
        report = await chain.run(tmp_path)

    assert report.strategy == "storage"
    assert report.files_written == 2
    assert [outcome.strategy for outcome in report.outcomes] == ["snapshot", "storage"]
    assert report.outcomes[0].error
    assert seen.count("https://snapshots.test/p-1.tar.gz") == 3
    assert len(sleep.delays) == 2
    assert (tmp_path / "src" / "a.ts").read_text() == "export const a = 1\n"
    assert report.to_public()["strategy"] == "storage"


@pytest.mark.asyncio
async def test_missing_snapshot_is_not_retried(tmp_path) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(404)

    sleep = RecordingSleep()
    async with _client(handler) as client:
        chain = HydrationChain(
            [
                SnapshotStrategy("https://snapshots.test/p-1.tar.gz", client=client, policy=POLICY, sleep=sleep),
                ScaffoldStrategy("p-1"),
            ]
        )
        report = await chain.run(tmp_path)

    assert report.strategy == "scaffold"
    assert seen == ["https://snapshots.test/p-1.tar.gz"]
    assert sleep.delays == []
    assert "404" in report.outcomes[0].error


@pytest.mark.asyncio
async def test_snapshot_success_stops_the_chain(tmp_path) -> None:
    archive = build_snapshot("p-1", [("index.html", "<html/>")])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=archive)

    async with _client(handler) as client:
        chain = default_chain("p-1", client=client, snapshot_url="https://snapshots.test/p-1", policy=POLICY)
        report = await chain.run(tmp_path)

    assert report.strategy == "snapshot"
    assert [outcome.strategy for outcome in report.outcomes] == ["snapshot"]
    assert (tmp_path / "index.html").read_text() == "<html/>"


@pytest.mark.asyncio
async def test_empty_storage_falls_through_to_versioned_api(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "storage.test":
            return httpx.Response(200, json={"files": []})
        if request.url.path == "/v1/projects/p-1/files":
            return httpx.Response(
                200,
                json={
                    "data": {"items": [{"path": "src/app.ts", "content": "app"}, {"path": "gone.ts", "content": None}]},
                    "meta": {"request_id": "r", "api_version": "v1"},
                },
            )
        return httpx.Response(404)

    async with _client(handler) as client:
        chain = default_chain(
            "p-1",
            client=client,
            storage_url="https://storage.test",
            api_url="https://api.test",
            policy=POLICY,
            sleep=RecordingSleep(),
        )
        report = await chain.run(tmp_path)

    assert report.strategy == "versioned_api"
    assert report.files_written == 1
    assert [outcome.error for outcome in report.outcomes[:2]] == ["no snapshot url configured", "empty"]
    assert (tmp_path / "src" / "app.ts").read_text() == "app"
    assert not (tmp_path / "gone.ts").exists()


@pytest.mark.asyncio
async def test_versioned_api_reads_the_file_service_directly(tmp_path, session_factory) -> None:
    service = FileSyncService(session_factory)
    await service.upsert("p-1", "src/a.ts", "a")
    strategy = VersionedApiStrategy("p-1", file_service=service)
    assert await strategy.hydrate(tmp_path) == 1
    assert (tmp_path / "src" / "a.ts").read_text() == "a"


@pytest.mark.asyncio
async def test_scaffold_is_the_last_resort(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    async with _client(handler) as client:
        chain = default_chain(
            "My Project",
            client=client,
            snapshot_url="https://snapshots.test/x",
            storage_url="https://storage.test",
            api_url="https://api.test",
            policy=POLICY,
            sleep=RecordingSleep(),
        )
        report = await chain.run(tmp_path)

    assert report.strategy == "scaffold"
    assert [outcome.succeeded for outcome in report.outcomes] == [False, False, False, True]
    assert '"name": "preview-my-project"' in (tmp_path / "package.json").read_text()
    assert (tmp_path / "src" / "main.jsx").exists()


@pytest.mark.asyncio
async def test_chain_raises_when_every_strategy_fails(tmp_path) -> None:
    async with _client(lambda request: httpx.Response(500)) as client:
        chain = HydrationChain(
            [
                SnapshotStrategy(None, client=client, policy=POLICY),
                StorageStrategy(None, "p-1", client=client, policy=POLICY),
            ]
        )
        with pytest.raises(HydrationError):
            await chain.run(tmp_path)


@pytest.mark.asyncio
async def test_strategy_order() -> None:
    async with httpx.AsyncClient() as client:
        chain = default_chain("p-1", client=client)
    assert chain.strategy_names == ["snapshot", "storage", "versioned_api", "scaffold"]
    assert ScaffoldStrategy("p").name == "scaffold"
