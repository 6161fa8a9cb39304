"""Prompt texts for the risk briefs and price histories. Prompts and tags are German."""

from datetime import datetime
from typing import List, Optional

from .schemas import CommodityTopic, FetchTask, RiskCategory

MONTHS_DE = [
    "Januar",
    "Februar",
    "März",
    "April",
    "Mai",
    "Juni",
    "Juli",
    "August",
    "September",
    "Oktober",
    "November",
    "Dezember",
]

RISK_SYSTEM_TEMPLATE = """Du bist ein Senior Risikoanalyst für {company}.
Antworte professionell auf Deutsch.
WICHTIG: Heute ist {today}. Nutze NUR aktuelle Daten aus {year} und den letzten Wochen/Monaten.
Fokus: Fakten, PREISE, DATEN und TRENDS.

FORMAT:
1. Start: [NIEDRIG], [MITTEL], [HOCH] oder [KRITISCH].
2. Bei Preisen: (TREND: STEIGEND/FALLEND/STABIL).
3. Nutze **Fett** für Zahlen.
4. Verwende ECHTE aktuelle Marktdaten, keine veralteten Informationen aus früheren Jahren.
"""

RISK_PROMPTS = [
    (
        RiskCategory.WEATHER,
        "Aktuelle Extremwetter-Situation {month}: Frankfurt, Indien, China, Tunesien. "
        "Welche aktuellen Wetterrisiken gibt es HEUTE/diese Woche?",
    ),
    (
        RiskCategory.LOGISTICS,
        "Aktuelle Logistik-Risiken {month}: Hamburger Hafen, Suezkanal, Luftfracht. "
        "Was sind die neuesten Entwicklungen?",
    ),
    (
        RiskCategory.RAW_MATERIALS,
        "KUPFER und GRAPHIT aktuelle Preise {month} (USD/Tonne). Genaue Zahlen der letzten Wochen. "
        "Welcher Trend zeigt sich aktuell (letzte 4-8 Wochen)? Nutze aktuelle Börsen-/Marktdaten.",
    ),
    (
        RiskCategory.ENERGY,
        "Industriestrom und Erdgas Preise Deutschland {month}. Aktuelle Preise in Cent/kWh bzw. EUR/MWh. "
        "Trend der letzten Wochen? Nutze aktuelle Energiemarkt-Daten.",
    ),
    (
        RiskCategory.TRAFFIC,
        "Aktuelle Verkehrslage {month}: Frankfurt am Main (A3, A5, A66), Hessen (A7, A45), "
        "Deutschland Hauptrouten, Europa Transitwege. Gibt es HEUTE/diese Woche Staus, Baustellen, Unfälle? "
        "Durchschnittliche LKW-Transportkosten pro Kilometer in EUR (aktuell {year}).",
    ),
    (
        RiskCategory.POLITICS,
        "Aktuelle politische Risiken {month}: Neue Gesetze/Regulierungen Deutschland, China/Russland/Nahost. "
        "Was sind die neuesten Entwicklungen?",
    ),
    (
        RiskCategory.ECONOMY,
        "Autoindustrie Wirtschaftslage {month}: Aktuelle Inflation, Zinsen, Konjunktur. "
        "Was sind die neuesten Zahlen und Trends?",
    ),
    (
        RiskCategory.CUSTOMERS,
        "Aktuelle News {month}: Bosch, Nidec, Mahle, Denso, Valeo. "
        "Welche neuen Entwicklungen gibt es bei diesen Unternehmen?",
    ),
    (
        RiskCategory.HOLIDAYS,
        "Kommende Feiertage (nächste 4 Wochen ab {month}): Indien, China, Tunesien, Frankreich. "
        "Welche Feiertage stehen an?",
    ),
]

HISTORY_PROMPT_TEMPLATE = """Recherchiere aktuelle Marktdaten für: {topic}

Zeitraum: Die letzten 6 Monate ({first} bis {last})
Heute: {month}

Aufgabe: Finde echte, aktuelle Preisentwicklungen aus zuverlässigen Finanz- und Marktquellen.

Antworte im folgenden JSON Format:
[
{rows}
]

Nutze Google Search für aktuelle Marktdaten. Keine Schätzungen - nur echte Daten."""

DEFAULT_COMMODITY_TOPICS = [
    CommodityTopic(slot="copper", topic="Kupferpreis (LME)"),
    CommodityTopic(slot="electricity", topic="Industriestrompreis Deutschland"),
]


def month_long_de(now: datetime) -> str:
    return f"{MONTHS_DE[now.month - 1]} {now.year}"


def date_long_de(now: datetime) -> str:
    return f"{now.day:02d}. {month_long_de(now)}"


def risk_system_instruction(now: datetime, company: str = "Avo Carbon Germany") -> str:
    return RISK_SYSTEM_TEMPLATE.format(company=company, today=date_long_de(now), year=now.year)


def build_risk_tasks(now: datetime, categories: Optional[List[RiskCategory]] = None) -> List[FetchTask]:
    """Build the fixed, ordered task list for one run; order here is delivery order."""
    month = month_long_de(now)
    tasks = [
        FetchTask(category=category, prompt_text=template.format(month=month, year=now.year))
        for category, template in RISK_PROMPTS
    ]
    if categories is not None:
        wanted = set(categories)
        tasks = [task for task in tasks if task.category in wanted]
    return tasks


def history_prompt(topic: str, labels: List[str], now: datetime) -> str:
    rows = ",\n".join(
        f'  {{"label": "{label}", "value": [Preis als Zahl], "unit": "[Einheit]"}}' for label in labels
    )
    return HISTORY_PROMPT_TEMPLATE.format(
        topic=topic,
        first=labels[0],
        last=labels[-1],
        month=month_long_de(now),
        rows=rows,
    )
