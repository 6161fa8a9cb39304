import asyncio
import logging
import random
import re
import string
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from .config import AppSettings
from .prompts import risk_system_instruction
from .retry import SleepFn, with_retry
from .schemas import FetchTask, RiskCategory, RiskLevel, RiskReport, Source


logger = logging.getLogger("uvicorn.error")

NO_DATA_TEXT = "Keine Daten verfügbar."
UNAVAILABLE_SUMMARY = (
    "Aktuell keine Datenabfrage möglich (Quota Limit). "
    "Dieser Bericht wird beim nächsten Update erneut versucht."
)
MAX_SOURCES = 5
PLACEHOLDER_URI = "#"
ID_ALPHABET = string.digits + string.ascii_lowercase
ID_LENGTH = 9

SEVERITY_TAGS = {
    "NIEDRIG": RiskLevel.LOW,
    "MITTEL": RiskLevel.MEDIUM,
    "HOCH": RiskLevel.HIGH,
    "KRITISCH": RiskLevel.CRITICAL,
}
_SEVERITY_TAG_RE = re.compile(r"^\[(NIEDRIG|MITTEL|HOCH|KRITISCH)\]\s*", re.IGNORECASE)

# Checked in order; first hit wins.
SEVERITY_KEYWORDS = [
    (RiskLevel.CRITICAL, ("critical", "kritisch", "severe", "schwerwiegend")),
    (RiskLevel.HIGH, ("high", "hoch", "alert", "warnung")),
    (RiskLevel.MEDIUM, ("medium", "mittel", "moderate")),
]


def new_report_id(rng: random.Random) -> str:
    return "".join(rng.choice(ID_ALPHABET) for _ in range(ID_LENGTH))


def determine_risk_level(text: str) -> RiskLevel:
    lower = text.lower()
    for level, keywords in SEVERITY_KEYWORDS:
        if any(word in lower for word in keywords):
            return level
    return RiskLevel.LOW


def parse_severity(text: str) -> RiskLevel:
    match = _SEVERITY_TAG_RE.match(text)
    if match:
        return SEVERITY_TAGS[match.group(1).upper()]
    return determine_risk_level(text)


def strip_severity_tag(text: str) -> str:
    return _SEVERITY_TAG_RE.sub("", text, count=1).strip()


def select_sources(sources: Iterable[Source]) -> List[Source]:
    kept = [src for src in sources if src.uri and src.uri != PLACEHOLDER_URI]
    return kept[:MAX_SOURCES]


def build_report(
    category: RiskCategory,
    text: Optional[str],
    sources: Iterable[Source] = (),
    *,
    rng: random.Random,
    now: Optional[datetime] = None,
) -> RiskReport:
    full_text = text if text and text.strip() else NO_DATA_TEXT
    return RiskReport(
        id=new_report_id(rng),
        category=category,
        title=f"{category.value} Monitor",
        summary=strip_severity_tag(full_text),
        level=parse_severity(full_text),
        timestamp=now or datetime.now(timezone.utc),
        sources=select_sources(sources),
    )


def unavailable_report(
    category: RiskCategory,
    *,
    rng: random.Random,
    now: Optional[datetime] = None,
) -> RiskReport:
    return RiskReport(
        id=new_report_id(rng),
        category=category,
        title=f"{category.value} (Nicht verfügbar)",
        summary=UNAVAILABLE_SUMMARY,
        level=RiskLevel.UNKNOWN,
        timestamp=now or datetime.now(timezone.utc),
        sources=[],
    )


async def fetch_risk_report(
    client,
    task: FetchTask,
    *,
    settings: Optional[AppSettings] = None,
    sleep: SleepFn = asyncio.sleep,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> RiskReport:
    """Fetch one brief; provider failures become an UNKNOWN placeholder report."""
    settings = settings or AppSettings()
    rng = rng or random.Random()
    started = now or datetime.now(timezone.utc)
    system_instruction = risk_system_instruction(started, company=settings.company_name)

    async def _call():
        return await client.generate(
            task.prompt_text,
            system_instruction=system_instruction,
            enable_web_search=True,
        )

    try:
        result = await with_retry(
            _call,
            max_attempts=settings.report_max_attempts,
            initial_delay=settings.report_initial_delay_s,
            sleep=sleep,
            label=task.category.value,
        )
    except Exception as exc:
        logger.error("Error fetching %s: %s", task.category.value, exc)
        return unavailable_report(task.category, rng=rng, now=now)
    logger.info("Fetched %s from %s", task.category.value, result.model_used or "provider")
    return build_report(task.category, result.text, result.sources, rng=rng, now=now)
