import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .events import EventBus
from .gemini import GeminiClient, build_gemini_client
from .runner import run_refresh
from .schemas import HistoryDataPoint, RiskReport, SettingsUpdate


logger = logging.getLogger("uvicorn.error")

CLIENT_FIELDS = {"gemini_api_key", "gemini_model", "gemini_base_url"}


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def _report_payload(report: RiskReport) -> Dict[str, Any]:
    return report.model_dump(mode="json")


def _history_payload(points: List[HistoryDataPoint]) -> List[Dict[str, Any]]:
    return [p.model_dump(mode="json") for p in points]


def summarize_counts(levels: List[str]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for level in levels:
        counts[level] = counts.get(level, 0) + 1
    return counts


def refresh_running(app: FastAPI) -> bool:
    task: Optional[asyncio.Task] = app.state.refresh_task
    return task is not None and not task.done()


async def run_refresh_in_background(app: FastAPI, run_id: str) -> None:
    bus: EventBus = app.state.bus
    state = app.state

    async def on_report(report: RiskReport) -> None:
        state.reports.append(report)
        await bus.emit("report", {"run_id": run_id, "report": _report_payload(report)})

    async def on_history(slot: str, points: List[HistoryDataPoint]) -> None:
        state.history[slot] = points
        await bus.emit("history", {"run_id": run_id, "slot": slot, "points": _history_payload(points)})

    try:
        result = await run_refresh(
            state.gemini_client,
            on_report=on_report,
            on_history=on_history,
            settings=state.settings,
            sleep=state.sleep,
            rng=state.rng,
        )
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.exception("Refresh %s failed", run_id)
        await bus.emit("refresh_failed", {"run_id": run_id, "error": str(exc)})
        return
    state.last_update = result.finished_at
    await bus.emit(
        "refresh_finished",
        {
            "run_id": run_id,
            "reports": len(result.reports),
            "levels": summarize_counts([r.level.value for r in result.reports]),
            "history_slots": list(result.history.keys()),
        },
    )


router = APIRouter()


@router.get("/health")
async def health(settings: AppSettings = Depends(get_settings)):
    return {"ok": True, "has_api_key": settings.has_api_key}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    update: SettingsUpdate,
    config_path: Path = Depends(get_config_path),
):
    app = request.app
    changes = update.changes()
    if refresh_running(app) and CLIENT_FIELDS.intersection(changes):
        raise HTTPException(status_code=409, detail="Refresh in progress.")
    new_settings = app.state.settings.model_copy(update=changes)
    save_settings(new_settings, config_path)
    app.state.settings = new_settings
    if CLIENT_FIELDS.intersection(changes):
        old_client = app.state.gemini_client
        app.state.gemini_client = build_gemini_client(new_settings)
        await old_client.close()
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.post("/api/refresh")
async def start_refresh(request: Request, bus: EventBus = Depends(get_event_bus)):
    app = request.app
    if not app.state.settings.has_api_key:
        raise HTTPException(status_code=400, detail="Gemini API key missing.")
    if refresh_running(app):
        raise HTTPException(status_code=409, detail="Refresh already running.")
    run_id = uuid.uuid4().hex[:12]
    app.state.run_id = run_id
    app.state.reports = []
    await bus.emit("refresh_started", {"run_id": run_id, "started_at": datetime.now(timezone.utc).isoformat()})
    app.state.refresh_task = asyncio.create_task(run_refresh_in_background(app, run_id))
    return {"run_id": run_id, "status": "started"}


@router.get("/api/reports")
async def list_reports(request: Request):
    state = request.app.state
    return {
        "run_id": state.run_id,
        "running": refresh_running(request.app),
        "last_update": state.last_update.isoformat() if state.last_update else None,
        "reports": [_report_payload(r) for r in state.reports],
    }


@router.get("/api/history")
async def get_history(request: Request):
    state = request.app.state
    return {
        "running": refresh_running(request.app),
        "history": {slot: _history_payload(points) for slot, points in state.history.items()},
    }


@router.get("/events")
async def stream_events(bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        queue = await bus.subscribe()
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    gemini_client: Optional[GeminiClient] = None,
    config_path: Optional[Path] = None,
    sleep=None,
    rng=None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            task = app.state.refresh_task
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            await app.state.gemini_client.close()

    app = FastAPI(title="Risk Radar", lifespan=lifespan)
    app.state.settings = settings
    app.state.gemini_client = gemini_client or build_gemini_client(settings)
    app.state.bus = EventBus()
    app.state.config_path = config_path or CONFIG_PATH
    app.state.sleep = sleep or asyncio.sleep
    app.state.rng = rng
    app.state.refresh_task = None
    app.state.run_id = None
    app.state.reports = []
    app.state.history = {}
    app.state.last_update = None
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("RISKRADAR_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "riskradar.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
