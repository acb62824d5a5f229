"""Tests for the swap HTTP service."""

import threading

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from htlc_engine.api import CALLER_HEADER, ENGINE_KEY, create_app
from htlc_engine.auth import CallerAuthorizer
from htlc_engine.database import MemorySwapStore
from htlc_engine.engine import HTLCEngine
from htlc_engine.events import RecordingEventSink
from htlc_engine.identity import derive_swap_id, hash_preimage
from htlc_engine.ledger import InMemoryLedger, ManualClock

HASHLOCK = hash_preimage(b"secret")
TIMELOCK = 2_000


@pytest.fixture
def clock():
    return ManualClock(start=1_000)


@pytest.fixture
def ledger():
    ledger = InMemoryLedger()
    ledger.mint("alice", "XLM", 500)
    return ledger


@pytest_asyncio.fixture
async def client(clock, ledger):
    """Run the service around an in-memory engine."""
    authorizer = CallerAuthorizer()
    engine = HTLCEngine(
        clock=clock,
        store=MemorySwapStore(),
        authorizer=authorizer,
        ledger=ledger,
        events=RecordingEventSink(),
        escrow_account="htlc-escrow",
    )
    async with TestClient(TestServer(create_app(engine, authorizer, ledger))) as client:
        yield client


def swap_body(**overrides):
    body = {
        "sender": "alice",
        "receiver": "bob",
        "asset": "XLM",
        "amount": 100,
        "hashlock": HASHLOCK.hex(),
        "timelock": TIMELOCK,
    }
    body.update(overrides)
    return body


def as_caller(identity):
    return {CALLER_HEADER: identity}


async def open_swap(client):
    resp = await client.post("/swaps", json=swap_body(), headers=as_caller("alice"))
    assert resp.status == 201
    return (await resp.json())["swap_id"]


class TestSwapApi:
    """Request handling and error mapping."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")

        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "healthy"
        assert data["service"] == "htlc-engine"

    @pytest.mark.asyncio
    async def test_initiate(self, client, ledger):
        resp = await client.post(
            "/swaps", json=swap_body(amount="100"), headers=as_caller("alice")
        )

        assert resp.status == 201
        data = await resp.json()
        assert data["swap_id"] == derive_swap_id("alice", "bob", HASHLOCK, TIMELOCK).hex()
        assert data["status"] == "pending"
        assert data["escrowed"] == 100
        assert ledger.balance_of("htlc-escrow", "XLM") == 100

    @pytest.mark.asyncio
    async def test_initiate_without_caller_is_forbidden(self, client, ledger):
        resp = await client.post("/swaps", json=swap_body())

        assert resp.status == 403
        assert (await resp.json())["error"] == "unauthorized"
        assert ledger.balance_of("alice", "XLM") == 500

    @pytest.mark.asyncio
    async def test_duplicate_is_conflict(self, client):
        await open_swap(client)
        resp = await client.post("/swaps", json=swap_body(), headers=as_caller("alice"))

        assert resp.status == 409
        assert (await resp.json())["error"] == "duplicate_swap"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides, error",
        [
            ({"amount": 0}, "invalid_amount"),
            ({"amount": "lots"}, "invalid_amount"),
            ({"timelock": 1_000}, "invalid_timelock"),
            ({"amount": 10_000}, "escrow_failed"),
            ({"hashlock": "beef"}, "invalid_request"),
            ({"receiver": 7}, "invalid_request"),
        ],
    )
    async def test_initiate_validation(self, client, overrides, error):
        resp = await client.post(
            "/swaps", json=swap_body(**overrides), headers=as_caller("alice")
        )

        assert resp.status == 400
        assert (await resp.json())["error"] == error

    @pytest.mark.asyncio
    async def test_missing_fields(self, client):
        resp = await client.post("/swaps", json={"sender": "alice"}, headers=as_caller("alice"))

        assert resp.status == 400
        data = await resp.json()
        assert data["error"] == "invalid_request"
        assert "receiver" in data["message"]

    @pytest.mark.asyncio
    async def test_non_json_body(self, client):
        resp = await client.post("/swaps", data="nope", headers=as_caller("alice"))

        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_claim(self, client, ledger):
        swap_id = await open_swap(client)

        resp = await client.post(
            f"/swaps/{swap_id}/claim",
            json={"preimage": b"secret".hex()},
            headers=as_caller("bob"),
        )

        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "claimed"
        assert data["preimage"] == b"secret".hex()
        assert data["escrowed"] == 0
        assert ledger.balance_of("bob", "XLM") == 100

    @pytest.mark.asyncio
    async def test_claim_with_wrong_preimage(self, client):
        swap_id = await open_swap(client)

        resp = await client.post(
            f"/swaps/{swap_id}/claim",
            json={"preimage": b"wrong".hex()},
            headers=as_caller("bob"),
        )

        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_preimage"

        resp = await client.get(f"/swaps/{swap_id}")
        assert (await resp.json())["status"] == "pending"

    @pytest.mark.asyncio
    async def test_claim_after_expiry(self, client, clock):
        swap_id = await open_swap(client)
        clock.set(TIMELOCK)

        resp = await client.post(
            f"/swaps/{swap_id}/claim",
            json={"preimage": b"secret".hex()},
            headers=as_caller("bob"),
        )

        assert resp.status == 400
        assert (await resp.json())["error"] == "expired"

    @pytest.mark.asyncio
    async def test_refund_lifecycle(self, client, clock, ledger):
        swap_id = await open_swap(client)

        resp = await client.post(f"/swaps/{swap_id}/refund", headers=as_caller("alice"))
        assert resp.status == 400
        assert (await resp.json())["error"] == "not_yet_expired"

        clock.set(TIMELOCK)
        resp = await client.post(f"/swaps/{swap_id}/refund", headers=as_caller("bob"))
        assert resp.status == 403

        resp = await client.post(f"/swaps/{swap_id}/refund", headers=as_caller("alice"))
        assert resp.status == 200
        assert (await resp.json())["status"] == "refunded"
        assert ledger.balance_of("alice", "XLM") == 500

        resp = await client.post(f"/swaps/{swap_id}/refund", headers=as_caller("alice"))
        assert resp.status == 409
        assert (await resp.json())["error"] == "already_settled"

    @pytest.mark.asyncio
    async def test_unknown_swap(self, client):
        resp = await client.get(f"/swaps/{'00' * 32}")

        assert resp.status == 404
        assert (await resp.json())["error"] == "swap_not_found"

    @pytest.mark.asyncio
    async def test_malformed_swap_id(self, client):
        resp = await client.get("/swaps/not-hex")

        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_list_and_filter(self, client, clock):
        swap_id = await open_swap(client)
        clock.set(TIMELOCK)
        await client.post(f"/swaps/{swap_id}/refund", headers=as_caller("alice"))

        resp = await client.get("/swaps")
        assert [s["swap_id"] for s in (await resp.json())["swaps"]] == [swap_id]

        resp = await client.get("/swaps", params={"status": "pending"})
        assert (await resp.json())["swaps"] == []

        resp = await client.get("/swaps", params={"status": "bogus"})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_balance(self, client):
        resp = await client.get("/balances/alice/XLM")

        assert resp.status == 200
        assert (await resp.json()) == {"account": "alice", "asset": "XLM", "balance": 500}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", ["0", "-1"])
    async def test_list_rejects_non_positive_limit(self, client, limit):
        await open_swap(client)

        resp = await client.get("/swaps", params={"limit": limit})

        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_engine_calls_run_off_the_event_loop(self, client, mocker):
        engine = client.server.app[ENGINE_KEY]
        loop_thread = threading.get_ident()
        seen = []
        initiate = engine.initiate

        def recording_initiate(**kwargs):
            seen.append((threading.get_ident(), engine.authorizer.current_caller))
            return initiate(**kwargs)

        mocker.patch.object(engine, "initiate", side_effect=recording_initiate)

        await open_swap(client)

        assert len(seen) == 1
        thread, caller = seen[0]
        assert thread != loop_thread
        assert caller == "alice"
