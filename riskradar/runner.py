import asyncio
import inspect
import logging
import random
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .config import AppSettings
from .history import fetch_commodity_history
from .prompts import DEFAULT_COMMODITY_TOPICS, build_risk_tasks
from .reports import fetch_risk_report
from .retry import SleepFn
from .schemas import CommodityTopic, FetchTask, HistoryDataPoint, RefreshResult, RiskReport


logger = logging.getLogger("uvicorn.error")

ReportCallback = Callable[[RiskReport], Any]
HistoryCallback = Callable[[str, List[HistoryDataPoint]], Any]


async def _deliver(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


async def stream_risk_analysis(
    client,
    on_report: ReportCallback,
    *,
    tasks: Optional[List[FetchTask]] = None,
    cooldown: Optional[float] = None,
    settings: Optional[AppSettings] = None,
    sleep: SleepFn = asyncio.sleep,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> List[RiskReport]:
    """Fetch each task in order, delivering reports one at a time.

    The next task starts only after the callback returned and the cooldown
    elapsed; no cooldown follows the last task.
    """
    settings = settings or AppSettings()
    rng = rng or random.Random()
    wait = settings.report_cooldown_s if cooldown is None else cooldown
    task_list = tasks if tasks is not None else build_risk_tasks(now or datetime.now(timezone.utc))
    delivered: List[RiskReport] = []
    for idx, task in enumerate(task_list):
        report = await fetch_risk_report(client, task, settings=settings, sleep=sleep, rng=rng, now=now)
        logger.info("Report %d/%d %s: %s", idx + 1, len(task_list), task.category.value, report.level.value)
        await _deliver(on_report, report)
        delivered.append(report)
        if idx < len(task_list) - 1 and wait > 0:
            await sleep(wait)
    return delivered


async def fetch_commodity_histories(
    client,
    *,
    topics: Optional[List[CommodityTopic]] = None,
    cooldown: Optional[float] = None,
    on_history: Optional[HistoryCallback] = None,
    settings: Optional[AppSettings] = None,
    sleep: SleepFn = asyncio.sleep,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> Dict[str, List[HistoryDataPoint]]:
    """Fetch each topic's series into its slot, pausing before every call to let the quota window reset."""
    settings = settings or AppSettings()
    rng = rng or random.Random()
    wait = settings.history_cooldown_s if cooldown is None else cooldown
    results: Dict[str, List[HistoryDataPoint]] = {}
    for topic in topics if topics is not None else DEFAULT_COMMODITY_TOPICS:
        if wait > 0:
            await sleep(wait)
        points = await fetch_commodity_history(
            client, topic.topic, settings=settings, sleep=sleep, rng=rng, now=now
        )
        results[topic.slot] = points
        await _deliver(on_history, topic.slot, points)
    return results


async def run_refresh(
    client,
    *,
    on_report: Optional[ReportCallback] = None,
    on_history: Optional[HistoryCallback] = None,
    settings: Optional[AppSettings] = None,
    tasks: Optional[List[FetchTask]] = None,
    topics: Optional[List[CommodityTopic]] = None,
    sleep: SleepFn = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> RefreshResult:
    settings = settings or AppSettings()
    rng = rng or random.Random()
    started_at = datetime.now(timezone.utc)

    reports = await stream_risk_analysis(
        client, on_report, tasks=tasks, settings=settings, sleep=sleep, rng=rng
    )
    history = await fetch_commodity_histories(
        client, topics=topics, on_history=on_history, settings=settings, sleep=sleep, rng=rng
    )
    return RefreshResult(
        reports=reports,
        history=history,
        started_at=started_at,
        finished_at=datetime.now(timezone.utc),
    )
