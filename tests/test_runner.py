import random
from datetime import datetime, timezone

import pytest

from riskradar.prompts import DEFAULT_COMMODITY_TOPICS, build_risk_tasks
from riskradar.reports import UNAVAILABLE_SUMMARY
from riskradar.runner import fetch_commodity_histories, run_refresh, stream_risk_analysis
from riskradar.schemas import CommodityTopic, FetchTask, RiskCategory, RiskLevel
from tests.fakes import FakeGeminiClient, RecordingSleep, http_error


NOW = datetime(2025, 10, 18, tzinfo=timezone.utc)


def test_default_task_list_order_and_month():
    tasks = build_risk_tasks(NOW)
    assert [t.category for t in tasks] == [
        RiskCategory.WEATHER,
        RiskCategory.LOGISTICS,
        RiskCategory.RAW_MATERIALS,
        RiskCategory.ENERGY,
        RiskCategory.TRAFFIC,
        RiskCategory.POLITICS,
        RiskCategory.ECONOMY,
        RiskCategory.CUSTOMERS,
        RiskCategory.HOLIDAYS,
    ]
    assert all("Oktober 2025" in t.prompt_text for t in tasks)


@pytest.mark.asyncio
async def test_weather_and_logistics_scenario(settings):
    tasks = [
        FetchTask(category=RiskCategory.WEATHER, prompt_text="Wetter heute?"),
        FetchTask(category=RiskCategory.LOGISTICS, prompt_text="Logistik heute?"),
    ]
    fake = FakeGeminiClient(
        {
            "Wetter": ["[HOCH] **12%** Anstieg der Niederschläge"],
            "Logistik": [http_error(429, reason="Too Many Requests")],
        }
    )
    delivered = []
    sleep = RecordingSleep()
    result = await stream_risk_analysis(
        fake, delivered.append, tasks=tasks, settings=settings, sleep=sleep, rng=random.Random(1)
    )
    assert [r.category for r in delivered] == [RiskCategory.WEATHER, RiskCategory.LOGISTICS]
    assert result == delivered
    weather, logistics = delivered
    assert weather.level is RiskLevel.HIGH
    assert weather.summary == "**12%** Anstieg der Niederschläge"
    assert logistics.level is RiskLevel.UNKNOWN
    assert logistics.summary == UNAVAILABLE_SUMMARY
    assert logistics.sources == []
    # cooldown after weather, then a rate-limit pause per failed attempt; no cooldown after the last task
    assert sleep.calls == [10.0, 15.0, 30.0, 60.0]


@pytest.mark.asyncio
async def test_callback_runs_before_next_call_and_cooldown(settings):
    log = []
    fake = FakeGeminiClient(log=log)
    sleep = RecordingSleep(log=log)
    tasks = build_risk_tasks(NOW)

    def on_report(report):
        log.append(("deliver", report.category))

    await stream_risk_analysis(fake, on_report, tasks=tasks, settings=settings, sleep=sleep)
    kinds = [entry[0] for entry in log]
    assert kinds == ["call", "deliver", "sleep"] * 8 + ["call", "deliver"]
    delivered = [entry[1] for entry in log if entry[0] == "deliver"]
    assert delivered == [t.category for t in tasks]


@pytest.mark.asyncio
async def test_every_task_delivered_even_when_all_fail(settings):
    fake = FakeGeminiClient({"": [ValueError("provider down")]})
    delivered = []

    async def on_report(report):
        delivered.append(report)

    tasks = build_risk_tasks(NOW)
    await stream_risk_analysis(fake, on_report, tasks=tasks, settings=settings, sleep=RecordingSleep())
    assert len(delivered) == len(tasks)
    assert all(r.level is RiskLevel.UNKNOWN for r in delivered)
    assert len(fake.calls) == 3 * len(tasks)


@pytest.mark.asyncio
async def test_histories_cool_down_before_each_call(settings):
    fake = FakeGeminiClient()
    sleep = RecordingSleep()
    slots = []
    history = await fetch_commodity_histories(
        fake,
        on_history=lambda slot, points: slots.append((slot, len(points))),
        settings=settings,
        sleep=sleep,
        now=NOW,
    )
    assert list(history.keys()) == [t.slot for t in DEFAULT_COMMODITY_TOPICS]
    assert slots == [("copper", 6), ("electricity", 6)]
    assert sleep.calls == [20.0, 20.0]
    assert "Kupferpreis (LME)" in fake.calls[0]["prompt"]
    assert "Industriestrompreis Deutschland" in fake.calls[1]["prompt"]


@pytest.mark.asyncio
async def test_history_slot_falls_back_independently(settings):
    fake = FakeGeminiClient({"Graphit": [ValueError("bad")]})
    topics = [
        CommodityTopic(slot="graphite", topic="Graphitpreis"),
        CommodityTopic(slot="copper", topic="Kupferpreis (LME)"),
    ]
    history = await fetch_commodity_histories(
        fake, topics=topics, cooldown=0, settings=settings, sleep=RecordingSleep(), rng=random.Random(4), now=NOW
    )
    assert all(p.unit == "USD/Tonne" for p in history["graphite"])
    assert history["copper"][0].value == 9100.5


@pytest.mark.asyncio
async def test_run_refresh_reports_then_history(settings):
    log = []
    fake = FakeGeminiClient(log=log)
    reports = []
    result = await run_refresh(
        fake,
        on_report=reports.append,
        settings=settings,
        tasks=build_risk_tasks(NOW)[:2],
        sleep=RecordingSleep(log=log),
    )
    assert len(result.reports) == 2
    assert reports == result.reports
    assert set(result.history) == {"copper", "electricity"}
    sleeps = [entry[1] for entry in log if entry[0] == "sleep"]
    assert sleeps == [10.0, 20.0, 20.0]
    assert result.finished_at >= result.started_at
