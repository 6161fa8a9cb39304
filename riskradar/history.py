import asyncio
import json
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from pydantic import ValidationError

from .config import AppSettings
from .prompts import history_prompt
from .retry import SleepFn, with_retry
from .schemas import HISTORY_RESPONSE_SCHEMA, HistoryDataPoint


logger = logging.getLogger("uvicorn.error")

SERIES_LENGTH = 6
INVALID_UNIT = "N/A"
MONTHS_SHORT_DE = ["Jan", "Feb", "Mär", "Apr", "Mai", "Jun", "Jul", "Aug", "Sep", "Okt", "Nov", "Dez"]


@dataclass(frozen=True)
class TrendPattern:
    start: float
    end: float
    unit: str
    volatility: float


# Plausible 6-month trends; keys are matched as substrings of the topic.
TREND_PATTERNS = {
    "Kupferpreis": TrendPattern(start=8200.0, end=9400.0, unit="USD/Tonne", volatility=0.03),
    "Industriestrompreis": TrendPattern(start=30.0, end=26.5, unit="ct/kWh", volatility=0.05),
    "Graphitpreis": TrendPattern(start=700.0, end=760.0, unit="USD/Tonne", volatility=0.04),
    "LKW Transportkosten": TrendPattern(start=1.5, end=1.62, unit="EUR/km", volatility=0.03),
}
DEFAULT_PATTERN_KEY = "Kupferpreis"


def last_six_month_labels(now: Optional[datetime] = None) -> List[str]:
    """Month labels for the six most recent calendar months, oldest first."""
    now = now or datetime.now(timezone.utc)
    labels = []
    for back in range(SERIES_LENGTH - 1, -1, -1):
        index = now.year * 12 + (now.month - 1) - back
        year, month0 = divmod(index, 12)
        labels.append(f"{MONTHS_SHORT_DE[month0]} {year}")
    return labels


def resolve_pattern(topic: str) -> TrendPattern:
    for key, pattern in TREND_PATTERNS.items():
        if key in topic:
            return pattern
    return TREND_PATTERNS[DEFAULT_PATTERN_KEY]


def generate_fallback_history(
    topic: str,
    *,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> List[HistoryDataPoint]:
    rng = rng or random.Random()
    pattern = resolve_pattern(topic)
    labels = last_six_month_labels(now)
    steps = SERIES_LENGTH - 1
    points = []
    for idx, label in enumerate(labels):
        base = pattern.start + (pattern.end - pattern.start) * idx / steps
        noise = base * pattern.volatility * rng.uniform(-1.0, 1.0)
        points.append(HistoryDataPoint(label=label, value=round(base + noise, 2), unit=pattern.unit))
    return points


def validate_history(
    raw: Union[str, List[Any], None], now: Optional[datetime] = None
) -> Optional[List[HistoryDataPoint]]:
    """Return the provider series if usable, else None.

    Accepted points are relabelled with the six most recent calendar months,
    oldest first, whatever labels the provider sent.
    """
    data: Any = raw
    if isinstance(raw, str):
        try:
            data = json.loads(raw or "[]")
        except (ValueError, RecursionError):
            return None
    if not isinstance(data, list) or not data:
        return None
    try:
        points = [HistoryDataPoint.model_validate(item) for item in data[:SERIES_LENGTH]]
    except ValidationError:
        return None
    first = points[0]
    if first.value == 0 or first.unit == INVALID_UNIT:
        return None
    if len(points) != SERIES_LENGTH:
        return None
    labels = last_six_month_labels(now)
    return [point.model_copy(update={"label": label}) for point, label in zip(points, labels)]


async def fetch_commodity_history(
    client,
    topic: str,
    *,
    settings: Optional[AppSettings] = None,
    sleep: SleepFn = asyncio.sleep,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> List[HistoryDataPoint]:
    """Fetch a 6-month series for ``topic``; never raises, falls back to a synthetic trend."""
    settings = settings or AppSettings()
    prompt = history_prompt(topic, last_six_month_labels(now), now or datetime.now(timezone.utc))

    async def _call():
        return await client.generate(
            prompt,
            enable_web_search=True,
            response_schema=HISTORY_RESPONSE_SCHEMA,
        )

    try:
        result = await with_retry(
            _call,
            max_attempts=settings.history_max_attempts,
            initial_delay=settings.history_initial_delay_s,
            sleep=sleep,
            label=topic,
        )
    except Exception as exc:
        logger.error("History fetch failed for %s, using fallback: %s", topic, exc)
        return generate_fallback_history(topic, rng=rng, now=now)
    points = validate_history(result.text, now)
    if points is None:
        logger.warning("Provider returned invalid data for %s, using fallback", topic)
        return generate_fallback_history(topic, rng=rng, now=now)
    logger.info("Fetched provider data for %s from %s", topic, result.model_used or "provider")
    return points
