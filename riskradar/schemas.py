from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RiskCategory(str, Enum):
    WEATHER = "Wetter"
    LOGISTICS = "Logistik"
    RAW_MATERIALS = "Rohstoffe"
    ENERGY = "Energie"
    TRAFFIC = "Verkehr"
    POLITICS = "Politik"
    ECONOMY = "Wirtschaft"
    CUSTOMERS = "Kunden"
    HOLIDAYS = "Feiertage"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"
    UNKNOWN = "UNKNOWN"


class FetchTask(BaseModel):
    category: RiskCategory
    prompt_text: str

    model_config = {"frozen": True}


class Source(BaseModel):
    title: str
    uri: str

    model_config = {"frozen": True}


class RiskReport(BaseModel):
    id: str
    category: RiskCategory
    title: str
    summary: str
    level: RiskLevel
    timestamp: datetime
    sources: List[Source] = Field(default_factory=list, max_length=5)

    model_config = {"frozen": True}


class HistoryDataPoint(BaseModel):
    label: str
    value: float
    unit: str

    model_config = {"frozen": True}


class CommodityTopic(BaseModel):
    slot: str
    topic: str

    model_config = {"frozen": True}


class GenerationResult(BaseModel):
    text: str = ""
    sources: List[Source] = Field(default_factory=list)
    model_used: Optional[str] = None


class RefreshResult(BaseModel):
    reports: List[RiskReport] = Field(default_factory=list)
    history: Dict[str, List[HistoryDataPoint]] = Field(default_factory=dict)
    started_at: datetime
    finished_at: datetime


class SettingsUpdate(BaseModel):
    gemini_api_key: Optional[str] = None
    gemini_model: Optional[str] = None
    gemini_base_url: Optional[str] = None
    report_cooldown_s: Optional[float] = None
    history_cooldown_s: Optional[float] = None
    company_name: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# Gemini responseSchema (OpenAPI subset) for a month-by-month price series.
HISTORY_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "label": {"type": "STRING"},
            "value": {"type": "NUMBER"},
            "unit": {"type": "STRING"},
        },
        "required": ["label", "value", "unit"],
    },
}
