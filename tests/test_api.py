import asyncio
import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from riskradar.gemini import GeminiClient
from riskradar.main import stream_events, summarize_counts
from tests.fakes import FakeGeminiClient, http_error


async def wait_for_refresh(app, timeout: float = 5.0) -> None:
    task = app.state.refresh_task
    if task is not None:
        await asyncio.wait_for(task, timeout=timeout)


@pytest.mark.asyncio
async def test_health_and_masked_settings(client):
    res = await client.get("/health")
    assert res.json() == {"ok": True, "has_api_key": True}
    res = await client.get("/settings")
    assert res.status_code == 200
    assert res.json()["settings"]["gemini_api_key"] == "********"


@pytest.mark.asyncio
async def test_refresh_delivers_reports_and_history(client):
    res = await client.post("/api/refresh")
    assert res.status_code == 200
    run_id = res.json()["run_id"]
    await wait_for_refresh(client.app)

    res = await client.get("/api/reports")
    data = res.json()
    assert data["run_id"] == run_id
    assert data["running"] is False
    assert data["last_update"] is not None
    categories = [r["category"] for r in data["reports"]]
    assert categories == [
        "Wetter",
        "Logistik",
        "Rohstoffe",
        "Energie",
        "Verkehr",
        "Politik",
        "Wirtschaft",
        "Kunden",
        "Feiertage",
    ]
    assert all(r["level"] == "LOW" for r in data["reports"])

    res = await client.get("/api/history")
    history = res.json()["history"]
    assert set(history) == {"copper", "electricity"}
    assert all(len(points) == 6 for points in history.values())
    # no real waiting happened
    assert client.app.state.sleep.calls == [10.0] * 8 + [20.0, 20.0]


@pytest.mark.asyncio
async def test_refresh_survives_provider_outage(app_factory):
    fake = FakeGeminiClient({"": [http_error(429, reason="Too Many Requests")]})
    app, _, _ = app_factory(fake_gemini=fake)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/refresh")
            assert res.status_code == 200
            await wait_for_refresh(app)
            reports = (await client.get("/api/reports")).json()["reports"]
            assert len(reports) == 9
            assert all(r["level"] == "UNKNOWN" for r in reports)
            history = (await client.get("/api/history")).json()["history"]
            assert history["copper"][0]["unit"] == "USD/Tonne"
            assert history["electricity"][0]["unit"] == "ct/kWh"


@pytest.mark.asyncio
async def test_refresh_requires_api_key(app_factory):
    app, _, _ = app_factory(gemini_api_key=None)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/refresh")
            assert res.status_code == 400


@pytest.mark.asyncio
async def test_second_refresh_while_running_is_rejected(app_factory):
    gate = asyncio.Event()

    async def blocking_sleep(seconds):
        await gate.wait()

    app, _, _ = app_factory()
    app.state.sleep = blocking_sleep
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            assert (await client.post("/api/refresh")).status_code == 200
            res = await client.post("/api/refresh")
            assert res.status_code == 409
            gate.set()
            await wait_for_refresh(app)


@pytest.mark.asyncio
async def test_post_settings_persists_and_swaps_client(client):
    old = client.app.state.gemini_client
    res = await client.post("/settings", json={"gemini_api_key": "new-key", "report_cooldown_s": 12})
    assert res.status_code == 200
    assert res.json()["settings"]["gemini_api_key"] == "********"
    saved = json.loads(client.config_path.read_text())
    assert saved["gemini_api_key"] == "new-key"
    assert saved["report_cooldown_s"] == 12
    new_client = client.app.state.gemini_client
    assert isinstance(new_client, GeminiClient)
    assert new_client.api_key == "new-key"
    assert old.closed is True
    await new_client.close()


@pytest.mark.asyncio
async def test_sse_stream_receives_report_event(app_factory):
    app, _, _ = app_factory()
    async with LifespanManager(app):
        bus = app.state.bus
        response = await stream_events(bus=bus)

        async def emit_event():
            await asyncio.sleep(0.01)
            await bus.emit("report", {"run_id": "r1", "report": {"category": "Wetter"}})

        task = asyncio.create_task(emit_event())
        chunk = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        line = chunk.decode("utf-8") if isinstance(chunk, (bytes, bytearray)) else chunk
        payload = json.loads(line.replace("data:", "").strip())
        assert payload["event_type"] == "report"
        assert payload["payload"]["report"]["category"] == "Wetter"
        assert payload["seq"] == 1
        await task
        await response.body_iterator.aclose()


def test_summarize_counts_groups_levels():
    assert summarize_counts(["LOW", "UNKNOWN", "LOW"]) == {"LOW": 2, "UNKNOWN": 1}
    assert summarize_counts([]) == {}
