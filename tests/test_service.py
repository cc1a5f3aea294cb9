"""End-to-end tests for the proxy service operations."""

from __future__ import annotations

import asyncio

import pytest

from docproxy.config import AppConfig
from docproxy.connections import ConnectionHandle, StoreConnector
from docproxy.docstore import MemoryCluster, MemoryDocumentStore
from docproxy.errors import (
    ArgumentParseError,
    ArgumentShapeError,
    BackendError,
    ConnectFailureError,
    DisallowedOperationError,
    InvalidCommandFormatError,
    NoActiveSessionError,
    NotConnectedError,
    UnsupportedOperationError,
)
from docproxy.service import ProxyService


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(clock: FakeClock) -> ProxyService:
    config = AppConfig(idle_timeout_seconds=60, scan_interval_seconds=10)
    return ProxyService(config, connector=StoreConnector(config, clusters={}), clock=clock)


@pytest.mark.anyio
async def test_operations_without_connect_report_not_connected(service: ProxyService) -> None:
    with pytest.raises(NotConnectedError):
        await service.list_databases("s1")
    with pytest.raises(NotConnectedError):
        await service.select_database("s1", "app")
    with pytest.raises(NotConnectedError):
        await service.list_collections("s1")
    with pytest.raises(NotConnectedError):
        await service.query("s1", "db.users.find({})")
    with pytest.raises(NotConnectedError):
        await service.query("s1", "not even a command")
    with pytest.raises(NoActiveSessionError):
        await service.end_session("s1")


@pytest.mark.anyio
async def test_connect_then_list_databases_includes_default(service: ProxyService) -> None:
    assert await service.connect("s1", "memory://local/inventory") == {"message": "Connected successfully"}

    assert "inventory" in await service.list_databases("s1")


@pytest.mark.anyio
async def test_failed_connect_leaves_session_unconnected(service: ProxyService) -> None:
    with pytest.raises(ConnectFailureError):
        await service.connect("s1", "mongodb+srv://cluster0.example.net")

    assert service.active_sessions() == 0
    with pytest.raises(NotConnectedError):
        await service.list_databases("s1")


@pytest.mark.anyio
async def test_failed_reconnect_keeps_previous_connection(service: ProxyService) -> None:
    await service.connect("s1", "memory://local/app")

    with pytest.raises(ConnectFailureError):
        await service.connect("s1", "bogus://")

    assert await service.list_collections("s1") == []


@pytest.mark.anyio
async def test_insert_then_find_round_trip(service: ProxyService) -> None:
    await service.connect("s1", "memory://local/app")

    ack = await service.query("s1", "db.things.insertOne({a: 1})")
    found = await service.query("s1", "db.things.find({a: 1})")

    assert ack["acknowledged"] is True
    assert len(found) == 1
    assert found[0]["a"] == 1
    assert found[0]["_id"] == ack["insertedId"]
    assert await service.list_collections("s1") == ["things"]


@pytest.mark.anyio
async def test_select_database_switches_query_target(service: ProxyService) -> None:
    await service.connect("s1", "memory://local/app")
    await service.query("s1", "db.things.insertOne({a: 1})")

    assert await service.select_database("s1", "archive") == {"message": "Database selected successfully"}

    assert await service.query("s1", "db.things.find({})") == []
    assert await service.list_collections("s1") == []


@pytest.mark.anyio
async def test_select_database_requires_name(service: ProxyService) -> None:
    await service.connect("s1", "memory://local/app")

    with pytest.raises(ArgumentShapeError):
        await service.select_database("s1", "  ")


@pytest.mark.anyio
async def test_query_failures_are_typed(service: ProxyService) -> None:
    await service.connect("s1", "memory://local/app")

    with pytest.raises(InvalidCommandFormatError):
        await service.query("s1", "things.find({})")
    with pytest.raises(DisallowedOperationError):
        await service.query("s1", "db.things.drop()")
    with pytest.raises(UnsupportedOperationError):
        await service.query("s1", "db.things.aggregate([])")
    with pytest.raises(ArgumentParseError):
        await service.query("s1", "db.things.find({a: )")
    with pytest.raises(ArgumentShapeError):
        await service.query("s1", "db.things.updateOne({filter: {a: 1}})")
    with pytest.raises(BackendError):
        await service.query("s1", "db.things.updateOne({filter: {}, update: {a: 2}})")


@pytest.mark.anyio
async def test_update_without_filter_does_not_mutate(service: ProxyService) -> None:
    await service.connect("s1", "memory://local/app")
    await service.query("s1", "db.things.insertOne({_id: 'x', a: 1})")

    with pytest.raises(ArgumentShapeError):
        await service.query("s1", "db.things.updateOne({update: {$set: {a: 2}}})")

    assert await service.query("s1", "db.things.findOne({_id: 'x'})") == {"_id": "x", "a": 1}


@pytest.mark.anyio
async def test_end_session_twice(service: ProxyService) -> None:
    await service.connect("s1", "memory://local/app")

    assert await service.end_session("s1") == {"message": "Session ended successfully"}
    with pytest.raises(NoActiveSessionError):
        await service.end_session("s1")
    with pytest.raises(NotConnectedError):
        await service.query("s1", "db.things.find({})")


@pytest.mark.anyio
async def test_sessions_are_isolated(service: ProxyService) -> None:
    await service.connect("s1", "memory://local/app")
    await service.connect("s2", "memory://local/app")

    await service.select_database("s2", "other")
    await service.end_session("s1")

    assert await service.list_collections("s2") == []
    with pytest.raises(NotConnectedError):
        await service.list_collections("s1")


@pytest.mark.anyio
async def test_idle_session_is_evicted_on_next_tick(service: ProxyService, clock: FakeClock) -> None:
    await service.connect("idle", "memory://local/app")
    await service.connect("busy", "memory://local/app")
    handle = await service.registry.get("idle")

    clock.now = 50
    await service.list_databases("busy")
    clock.now = 61
    evicted = await service.reaper.tick()

    assert evicted == ["idle"]
    assert handle.closed is True
    with pytest.raises(NotConnectedError):
        await service.query("idle", "db.things.find({})")
    assert await service.list_databases("busy")


@pytest.mark.anyio
async def test_concurrent_connects_leave_one_live_connection(clock: FakeClock) -> None:
    config = AppConfig()
    opened: list[ConnectionHandle] = []

    async def _connector(uri: str) -> ConnectionHandle:
        await asyncio.sleep(0)
        handle = ConnectionHandle(MemoryDocumentStore(MemoryCluster("c"), default_database="app"))
        opened.append(handle)
        return handle

    service = ProxyService(config, connector=_connector, clock=clock)

    await asyncio.gather(service.connect("s1", "memory://c"), service.connect("s1", "memory://c"))

    live = [handle for handle in opened if not handle.closed]
    assert len(opened) == 2
    assert len(live) == 1
    assert await service.registry.get("s1") is live[0]


@pytest.mark.anyio
async def test_shutdown_closes_everything(service: ProxyService) -> None:
    await service.start()
    await service.connect("s1", "memory://local/app")
    await service.connect("s2", "memory://local/app")
    handles = [await service.registry.get("s1"), await service.registry.get("s2")]

    await service.shutdown()

    assert service.active_sessions() == 0
    assert all(handle.closed for handle in handles)
    assert service.reaper.running is False
