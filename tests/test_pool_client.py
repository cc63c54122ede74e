import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from keyrelay.admin import coordinator_router
from keyrelay.coordinator import Coordinator
from keyrelay.credential_pool import CredentialPool
from keyrelay.errors import FailureInfo, NoCredentialError, RelayError
from keyrelay.pool_client import (
    DISPATCH_PATH,
    LocalPoolClient,
    RemotePoolClient,
    _OperationClient,
)
from keyrelay.store import MemoryStore


async def make_coordinator(secrets):
    store = MemoryStore()
    pool = CredentialPool(store)
    await pool.reconfigure(secrets)
    return Coordinator(pool, store)


def coordinator_app(coordinator: Coordinator) -> FastAPI:
    app = FastAPI()
    app.include_router(coordinator_router)
    app.state.coordinator = coordinator
    return app


@pytest.fixture
async def coordinator():
    return await make_coordinator(["k1", "k2", "k3"])


@pytest.fixture
async def http_client(coordinator):
    async with AsyncClient(
        transport=ASGITransport(app=coordinator_app(coordinator)),
        base_url="http://coordinator",
    ) as client:
        yield client


@pytest.mark.asyncio
async def test_local_client_round_trip(coordinator):
    client = LocalPoolClient(coordinator)

    assert await client.select() == ("k1", 0)
    assert await client.acquire(2) == ("k3", 2)
    await client.report_failure(1, FailureInfo(kind="quota", message="quota"))
    await client.save_session("s", {"id": "s"})

    assert coordinator.pool.pool.records[1].quota_exhausted is True
    assert await client.get_session("s") == {"id": "s"}
    assert await client.list_sessions() == {"s": {"id": "s"}}
    await client.remove_sessions(["s"])
    assert await client.get_session("s") is None


@pytest.mark.asyncio
async def test_remote_select_served_from_cache(coordinator, http_client):
    client = RemotePoolClient(http_client, cache_ttl_seconds=60)

    first = await client.select()
    assert coordinator.pool.pool.cursor == 1
    second = await client.select()
    third = await client.select()

    assert [first, second, third] == [("k1", 0), ("k2", 1), ("k3", 2)]
    assert coordinator.pool.pool.cursor == 1
    assert client.cached_snapshot is not None


@pytest.mark.asyncio
async def test_remote_report_refreshes_cache(coordinator, http_client):
    client = RemotePoolClient(http_client, cache_ttl_seconds=60)
    await client.select()

    await client.report_failure(1, FailureInfo(kind="quota", message="429"))

    assert coordinator.pool.pool.records[1].quota_exhausted is True
    assert client.cached_snapshot["records"][1]["quota_exhausted"] is True
    indexes = [(await client.select())[1] for _ in range(3)]
    assert 1 not in indexes


@pytest.mark.asyncio
async def test_remote_expired_cache_goes_to_coordinator(coordinator, http_client):
    client = RemotePoolClient(http_client, cache_ttl_seconds=0)

    await client.select()
    await client.select()

    assert coordinator.pool.pool.cursor == 2


@pytest.mark.asyncio
async def test_remote_invalidate_and_refresh(coordinator, http_client):
    client = RemotePoolClient(http_client, cache_ttl_seconds=60)
    await client.refresh()
    assert client.cached_snapshot["cursor"] == 0

    client.invalidate()
    assert client.cached_snapshot is None


@pytest.mark.asyncio
async def test_remote_empty_pool_raises_no_credential():
    empty = await make_coordinator([])
    async with AsyncClient(
        transport=ASGITransport(app=coordinator_app(empty)),
        base_url="http://coordinator",
    ) as http_client:
        client = RemotePoolClient(http_client)

        with pytest.raises(NoCredentialError, match="No API keys configured"):
            await client.select()


@pytest.mark.asyncio
async def test_remote_rejected_operation_raises(http_client):
    client = RemotePoolClient(http_client)

    with pytest.raises(NoCredentialError):
        await client.acquire(42)

    with pytest.raises(RelayError):
        await client.reconfigure([""])


@pytest.mark.asyncio
async def test_remote_sessions(http_client):
    client = RemotePoolClient(http_client)

    await client.save_session("alice", {"id": "alice", "messages": []})

    assert await client.get_session("alice") == {"id": "alice", "messages": []}
    assert list(await client.list_sessions()) == ["alice"]
    await client.remove_sessions(["alice"])
    assert await client.get_session("alice") is None


@pytest.mark.asyncio
async def test_dispatch_route_rejects_unknown_operation(http_client):
    response = await http_client.post(DISPATCH_PATH, json={"op": "drop_everything"})
    assert response.status_code == 400
    assert "drop_everything" in response.json()["detail"]

    response = await http_client.post(DISPATCH_PATH, json=["not", "an", "object"])
    assert response.status_code == 400

    response = await http_client.post(DISPATCH_PATH, json={"op": "report_success"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_dispatch_route_select(http_client):
    response = await http_client.post(DISPATCH_PATH, json={"op": "select_credential"})

    assert response.status_code == 200
    data = response.json()
    assert data["secret"] == "k1"
    assert data["index"] == 0
    assert data["snapshot"]["cursor"] == 1


def test_operation_client_needs_a_transport():
    with pytest.raises(TypeError):
        _OperationClient()
