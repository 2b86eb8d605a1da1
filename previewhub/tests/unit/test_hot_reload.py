from __future__ import annotations

import pytest

from previewhub.domain.events import EVENT_HOT_RELOAD
from previewhub.services.hot_reload import HotReloadCoordinator, is_relevant, requires_rebuild
from previewhub.services.realtime.transport import LocalTransport
from previewhub.tests.utils.builders import AdvancingSleep, ManualClock, RecordingSleep, build_channel
from previewhub.tests.utils.waiting import wait_until


@pytest.mark.asyncio
async def test_burst_of_changes_yields_one_reload() -> None:
    transport = LocalTransport()
    rebuilds: list = []
    sleep = RecordingSleep()
    coordinator = HotReloadCoordinator(
        "p-1", build_channel(transport), rebuild=rebuilds.append, debounce_s=1.0, sleep=sleep
    )

    for index in range(10):
        assert coordinator.record_change(f"src/component{index}.tsx", f"export const v = {index}")
    await wait_until(lambda: len(coordinator.batches) == 1)

    batch = coordinator.batches[0]
    assert len(batch.changed_files) == 10
    assert not batch.requires_rebuild
    assert rebuilds == [batch]
    assert sleep.delays == [1.0]
    reloads = [message for message in transport.published if message.event_type == EVENT_HOT_RELOAD]
    assert len(reloads) == 1
    assert reloads[0].channel_name == "project:p-1:preview"
    assert reloads[0].payload["changedFiles"] == batch.changed_files
    await coordinator.aclose()


@pytest.mark.asyncio
async def test_unchanged_content_and_irrelevant_files_do_not_reload() -> None:
    coordinator = HotReloadCoordinator("p-1", sleep=RecordingSleep())
    coordinator.prime({"src/a.ts": "same"})

    assert not coordinator.record_change("src/a.ts", "same")
    assert not coordinator.record_change("docs/notes.md", "hello")
    assert not coordinator.record_change("assets/logo.png", "binary")
    assert coordinator.pending == []
    assert await coordinator.flush() is None
    assert coordinator.batches == []


@pytest.mark.asyncio
async def test_dependency_changes_require_rebuild() -> None:
    coordinator = HotReloadCoordinator("p-1", sleep=RecordingSleep())
    coordinator.record_change("src/a.ts", "a")
    coordinator.record_change("package.json", '{"dependencies": {}}')

    batch = await coordinator.flush()

    assert batch.requires_rebuild
    assert batch.changed_files == ["src/a.ts", "package.json"]
    await coordinator.aclose()


@pytest.mark.asyncio
async def test_scan_detects_edits_and_deletions(tmp_path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.ts").write_text("a")
    (tmp_path / "src" / "b.ts").write_text("b")
    coordinator = HotReloadCoordinator("p-1", sleep=RecordingSleep())
    assert coordinator.scan(tmp_path) == 2
    await coordinator.flush()

    (tmp_path / "src" / "a.ts").write_text("a2")
    (tmp_path / "src" / "b.ts").unlink()
    (tmp_path / "src" / "a.ts").touch()

    assert coordinator.scan(tmp_path) == 2
    batch = await coordinator.flush()
    assert sorted(batch.changed_files) == ["src/a.ts", "src/b.ts"]
    assert coordinator.scan(tmp_path) == 0
    await coordinator.aclose()


@pytest.mark.asyncio
async def test_rate_limited_reload_is_retried_not_lost() -> None:
    clock = ManualClock()
    transport = LocalTransport()
    sleep = AdvancingSleep(clock)
    coordinator = HotReloadCoordinator("p-1", build_channel(transport, clock=clock), sleep=sleep)

    coordinator.record_change("src/a.ts", "1")
    await coordinator.flush()
    coordinator.record_change("src/b.ts", "2")
    assert await coordinator.flush() is None
    assert coordinator.pending == ["src/b.ts"]

    await wait_until(lambda: len(coordinator.batches) == 2)
    assert coordinator.batches[1].changed_files == ["src/b.ts"]
    assert len([message for message in transport.published if message.event_type == EVENT_HOT_RELOAD]) == 2
    await coordinator.aclose()


@pytest.mark.parametrize(
    ("path", "relevant", "rebuild"),
    [
        ("src/App.tsx", True, False),
        ("styles/site.css", True, False),
        ("package.json", True, True),
        ("nested/vite.config.ts", True, True),
        ("README.md", False, False),
        (".env", True, True),
    ],
)
def test_relevance_filters(path: str, relevant: bool, rebuild: bool) -> None:
    assert is_relevant(path) is relevant
    assert requires_rebuild(path) is rebuild
