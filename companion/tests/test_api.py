import httpx
import pytest
import pytest_asyncio

from companion.core.system_mode import ADVISORIES, SystemMode
from companion.main import create_app

from .conftest import StubResponder


@pytest_asyncio.fixture
async def client_and_services(build_services):
    services = await build_services(StubResponder(["Hello again! How was your day?"]))
    app = create_app(services=services)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client, services


def _turn(message="Hi, I had a good day", **extra):
    return {"synth_id": "synth-1", "host_id": "host-1", "message": message, **extra}


@pytest.mark.asyncio
async def test_post_turn_returns_final_reply(client_and_services):
    client, _ = client_and_services
    response = await client.post("/turn", json=_turn())

    assert response.status_code == 200
    body = response.json()
    assert body["text"] == "Hello again! How was your day?"
    assert body["outcome"] == {"kind": "OK", "engine_used": "stub", "failure_class": None}
    assert body["committed"] is True
    assert body["bypassed"] is False
    assert body["ambient"] == []
    assert set(body["guardrails"]) == {
        "allow_vulnerable_tone", "allow_high_intensity_joy", "allow_playful_conflict", "max_response_length_factor",
    }


@pytest.mark.asyncio
async def test_empty_message_is_rejected(client_and_services):
    client, _ = client_and_services
    response = await client.post("/turn", json=_turn(message=""))
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_lockdown_via_api_gates_turns(client_and_services):
    client, _ = client_and_services

    response = await client.put("/mode", json={"mode": "lockdown", "reason": "drill"})
    assert response.status_code == 200
    assert response.json()["previous"] == "normal"
    assert response.json()["advisory"] == ADVISORIES[SystemMode.LOCKDOWN]

    body = (await client.post("/turn", json=_turn())).json()
    assert body["text"] == ADVISORIES[SystemMode.LOCKDOWN]
    assert body["bypassed"] is True
    assert body["committed"] is False

    assert (await client.get("/mode")).json() == {"mode": "lockdown", "advisory": ADVISORIES[SystemMode.LOCKDOWN]}


@pytest.mark.asyncio
async def test_unknown_mode_is_rejected(client_and_services):
    client, services = client_and_services
    response = await client.put("/mode", json={"mode": "panic"})
    assert response.status_code == 422
    assert services["mode_controller"].get_mode() == SystemMode.NORMAL


@pytest.mark.asyncio
async def test_state_reflects_committed_turn(client_and_services):
    client, _ = client_and_services
    await client.post("/turn", json=_turn())

    response = await client.get("/state/synth-1/host-1")
    assert response.status_code == 200
    body = response.json()
    assert body["identity"] == "synth-1:host-1"
    assert body["memory_count"] == 1
    assert len(body["sentiment_trend"]) == 1
    assert body["emotional_snapshot"] is not None
    assert body["bond"]["tier_name"] == "UNFAMILIAR"
    assert body["last_active"] is not None


@pytest.mark.asyncio
async def test_state_for_unknown_identity(client_and_services):
    client, _ = client_and_services
    body = (await client.get("/state/synth-9/host-9")).json()
    assert body["emotional_snapshot"] is None
    assert body["memory_count"] == 0
    assert body["emotional_climate"]["weather"] == "CLEAR"


@pytest.mark.asyncio
async def test_cancel_with_nothing_in_flight(client_and_services):
    client, _ = client_and_services
    response = await client.post("/turn/synth-1/host-1/cancel")
    assert response.json() == {"identity": "synth-1:host-1", "cancelled": False}


@pytest.mark.asyncio
async def test_health_reports_mode_and_capabilities(client_and_services):
    client, _ = client_and_services
    body = (await client.get("/health")).json()

    assert body["status"] == "ok"
    assert body["mode"] == "normal"
    assert body["scheduler"] == "inactive"
    assert body["capabilities"]["capabilities"]["persistence"]["backend"] == "memory"
    assert {t["name"] for t in body["background_tasks"]} == {"heartbeat", "idle_ambient", "maintenance"}


@pytest.mark.asyncio
async def test_routes_unavailable_before_startup():
    app = create_app(services={})
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        assert (await client.post("/turn", json=_turn())).status_code == 503
        assert (await client.get("/health")).json()["status"] == "starting"
