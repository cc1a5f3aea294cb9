"""Tests for the session registry and idle reaper."""

from __future__ import annotations

import asyncio

import pytest

from docproxy.connections import ConnectionHandle
from docproxy.docstore import MemoryCluster, MemoryDocumentStore
from docproxy.errors import NoActiveSessionError, NotConnectedError
from docproxy.reaper import IdleReaper
from docproxy.registry import SessionRegistry


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _TrackedStore(MemoryDocumentStore):
    def __init__(self) -> None:
        super().__init__(MemoryCluster("tracked"))
        self.close_calls = 0

    async def close(self) -> None:
        self.close_calls += 1
        await asyncio.sleep(0)
        await super().close()


def _handle() -> tuple[ConnectionHandle, _TrackedStore]:
    store = _TrackedStore()
    return ConnectionHandle(store), store


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock: FakeClock) -> SessionRegistry:
    return SessionRegistry(clock=clock)


@pytest.mark.anyio
async def test_unknown_sessions(registry: SessionRegistry) -> None:
    assert await registry.touch("nobody") is False
    with pytest.raises(NotConnectedError):
        await registry.get("nobody")
    with pytest.raises(NoActiveSessionError):
        await registry.remove("nobody")
    with pytest.raises(NotConnectedError):
        async with registry.lease("nobody"):
            pass


@pytest.mark.anyio
async def test_get_refreshes_timestamp(registry: SessionRegistry, clock: FakeClock) -> None:
    handle, _ = _handle()
    await registry.put("s1", handle)
    clock.advance(30)

    assert await registry.get("s1") is handle
    (entry,) = registry.snapshot()
    assert entry.session_id == "s1"
    assert entry.last_activity == clock.now


@pytest.mark.anyio
async def test_put_releases_previous_handle(registry: SessionRegistry) -> None:
    first, first_store = _handle()
    second, second_store = _handle()

    assert await registry.put("s1", first) is False
    assert await registry.put("s1", second) is True

    assert first_store.close_calls == 1
    assert second_store.close_calls == 0
    assert await registry.get("s1") is second
    assert len(registry) == 1


@pytest.mark.anyio
async def test_remove_closes_once(registry: SessionRegistry) -> None:
    handle, store = _handle()
    await registry.put("s1", handle)

    await registry.remove("s1")
    with pytest.raises(NoActiveSessionError):
        await registry.remove("s1")

    assert store.close_calls == 1
    assert "s1" not in registry


@pytest.mark.anyio
async def test_concurrent_removes_close_once(registry: SessionRegistry) -> None:
    handle, store = _handle()
    await registry.put("s1", handle)

    results = await asyncio.gather(
        registry.remove("s1"),
        registry.remove("s1"),
        return_exceptions=True,
    )

    assert sum(isinstance(result, NoActiveSessionError) for result in results) == 1
    assert store.close_calls == 1


@pytest.mark.anyio
async def test_concurrent_puts_leave_one_live_connection(registry: SessionRegistry) -> None:
    pairs = [_handle() for _ in range(5)]

    await asyncio.gather(*(registry.put("s1", handle) for handle, _ in pairs))

    live = await registry.get("s1")
    open_stores = [store for handle, store in pairs if store.close_calls == 0]
    assert len(open_stores) == 1
    assert open_stores[0] is live.store
    assert all(store.close_calls <= 1 for _, store in pairs)


@pytest.mark.anyio
async def test_sessions_do_not_block_each_other(registry: SessionRegistry) -> None:
    slow, _ = _handle()
    fast, _ = _handle()
    await registry.put("slow", slow)
    await registry.put("fast", fast)
    gate = asyncio.Event()

    async def _hold_slow() -> None:
        async with registry.lease("slow"):
            await gate.wait()

    holder = asyncio.create_task(_hold_slow())
    await asyncio.sleep(0)

    assert await asyncio.wait_for(registry.get("fast"), timeout=1) is fast
    await asyncio.wait_for(registry.remove("fast"), timeout=1)
    gate.set()
    await holder


@pytest.mark.anyio
async def test_lease_keeps_handle_open_until_operation_finishes(registry: SessionRegistry) -> None:
    handle, store = _handle()
    await registry.put("s1", handle)
    gate = asyncio.Event()
    observed: list[int] = []

    async def _operation() -> None:
        async with registry.lease("s1") as leased:
            await gate.wait()
            observed.append(store.close_calls)
            assert leased.closed is True

    worker = asyncio.create_task(_operation())
    await asyncio.sleep(0)
    remover = asyncio.create_task(registry.remove("s1"))
    await asyncio.sleep(0)

    assert "s1" not in registry
    with pytest.raises(NotConnectedError):
        async with registry.lease("s1"):
            pass

    gate.set()
    await worker
    await remover
    assert observed == [0]
    assert store.close_calls == 1


@pytest.mark.anyio
async def test_close_all_drains_registry(registry: SessionRegistry) -> None:
    pairs = [_handle() for _ in range(3)]
    for index, (handle, _) in enumerate(pairs):
        await registry.put(f"s{index}", handle)

    assert await registry.close_all() == 3
    assert len(registry) == 0
    assert all(store.close_calls == 1 for _, store in pairs)


class _ResettingStore(_TrackedStore):
    async def close(self) -> None:
        self.close_calls += 1
        raise ConnectionResetError("pool close failed")


@pytest.mark.anyio
async def test_close_all_survives_failing_store(registry: SessionRegistry) -> None:
    broken = _ResettingStore()
    await registry.put("broken", ConnectionHandle(broken))
    good_handle, good = _handle()
    await registry.put("good", good_handle)

    assert await registry.close_all() == 2
    assert len(registry) == 0
    assert broken.close_calls == 1
    assert good.close_calls == 1


@pytest.mark.anyio
async def test_reaper_keeps_evicting_after_failing_close(registry: SessionRegistry, clock: FakeClock) -> None:
    await registry.put("broken", ConnectionHandle(_ResettingStore()))
    good_handle, good = _handle()
    await registry.put("good", good_handle)
    clock.advance(120)

    evicted = await IdleReaper(registry, idle_timeout=60, scan_interval=10).tick()

    assert sorted(evicted) == ["broken", "good"]
    assert good.close_calls == 1


@pytest.mark.anyio
async def test_reaper_evicts_idle_sessions(registry: SessionRegistry, clock: FakeClock) -> None:
    idle, idle_store = _handle()
    active, active_store = _handle()
    await registry.put("idle", idle)
    await registry.put("active", active)
    reaper = IdleReaper(registry, idle_timeout=60, scan_interval=10)

    clock.advance(45)
    await registry.touch("active")
    clock.advance(30)
    evicted = await reaper.tick()

    assert evicted == ["idle"]
    assert idle_store.close_calls == 1
    assert active_store.close_calls == 0
    with pytest.raises(NotConnectedError):
        await registry.get("idle")


@pytest.mark.anyio
async def test_reaper_keeps_sessions_at_exact_threshold(registry: SessionRegistry, clock: FakeClock) -> None:
    handle, store = _handle()
    await registry.put("s1", handle)
    reaper = IdleReaper(registry, idle_timeout=60, scan_interval=10)

    clock.advance(60)

    assert await reaper.tick() == []
    assert store.close_calls == 0


@pytest.mark.anyio
async def test_eviction_skips_sessions_touched_after_snapshot(registry: SessionRegistry, clock: FakeClock) -> None:
    handle, store = _handle()
    await registry.put("s1", handle)
    clock.advance(120)
    stale = registry.snapshot()

    await registry.touch("s1")

    assert [entry.session_id for entry in stale] == ["s1"]
    assert await registry.evict_if_idle("s1", 60) is False
    assert store.close_calls == 0


@pytest.mark.anyio
async def test_eviction_skips_sessions_removed_after_snapshot(registry: SessionRegistry, clock: FakeClock) -> None:
    handle, store = _handle()
    await registry.put("s1", handle)
    clock.advance(120)
    registry.snapshot()

    await registry.remove("s1")

    assert await registry.evict_if_idle("s1", 60) is False
    assert store.close_calls == 1


@pytest.mark.anyio
async def test_eviction_skips_busy_sessions(registry: SessionRegistry, clock: FakeClock) -> None:
    handle, store = _handle()
    await registry.put("s1", handle)

    async with registry.lease("s1"):
        clock.advance(600)
        assert await registry.evict_if_idle("s1", 60) is False

    clock.advance(600)
    assert await registry.evict_if_idle("s1", 60) is True
    assert store.close_calls == 1


@pytest.mark.anyio
async def test_reaper_task_runs_periodically() -> None:
    registry = SessionRegistry()
    handle, store = _handle()
    await registry.put("s1", handle)
    reaper = IdleReaper(registry, idle_timeout=0.01, scan_interval=0.01)

    reaper.start()
    assert reaper.running is True
    for _ in range(100):
        if "s1" not in registry:
            break
        await asyncio.sleep(0.01)
    await reaper.stop()

    assert "s1" not in registry
    assert store.close_calls == 1
    assert reaper.running is False


@pytest.mark.parametrize(("idle", "interval"), [(0, 1), (1, 0), (-1, 1)])
def test_reaper_requires_positive_settings(idle: float, interval: float) -> None:
    with pytest.raises(ValueError):
        IdleReaper(SessionRegistry(), idle_timeout=idle, scan_interval=interval)
