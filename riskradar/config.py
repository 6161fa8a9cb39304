import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "RISKRADAR_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

_INT_FIELDS = ("request_timeout_s", "report_max_attempts", "history_max_attempts", "port")
_FLOAT_FIELDS = (
    "report_cooldown_s",
    "history_cooldown_s",
    "report_initial_delay_s",
    "history_initial_delay_s",
)


class AppSettings(BaseModel):
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    request_timeout_s: int = 60

    # Free tier allows roughly 15 RPM; grounded queries count heavier.
    report_cooldown_s: float = 10.0
    history_cooldown_s: float = 20.0
    report_max_attempts: int = 3
    report_initial_delay_s: float = 5.0
    history_max_attempts: int = 3
    history_initial_delay_s: float = 15.0

    company_name: str = "Avo Carbon Germany"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def has_api_key(self) -> bool:
        return bool((self.gemini_api_key or "").strip())

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("gemini_api_key"):
            data["gemini_api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "gemini_api_key": os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY"),
        "gemini_model": os.getenv("GEMINI_MODEL"),
        "gemini_base_url": os.getenv("GEMINI_BASE_URL"),
        "request_timeout_s": os.getenv("REQUEST_TIMEOUT_S"),
        "report_cooldown_s": os.getenv("REPORT_COOLDOWN_S"),
        "history_cooldown_s": os.getenv("HISTORY_COOLDOWN_S"),
        "report_max_attempts": os.getenv("REPORT_MAX_ATTEMPTS"),
        "report_initial_delay_s": os.getenv("REPORT_INITIAL_DELAY_S"),
        "history_max_attempts": os.getenv("HISTORY_MAX_ATTEMPTS"),
        "history_initial_delay_s": os.getenv("HISTORY_INITIAL_DELAY_S"),
        "company_name": os.getenv("COMPANY_NAME"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_FIELDS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in _FLOAT_FIELDS:
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("gemini_api_key") and env_data.get("gemini_api_key"):
        merged["gemini_api_key"] = env_data["gemini_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
