import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import httpx

from riskradar.config import load_settings
from riskradar.gemini import build_gemini_client
from riskradar.prompts import build_risk_tasks
from riskradar.runner import fetch_commodity_histories, run_refresh, stream_risk_analysis
from riskradar.schemas import HistoryDataPoint, RiskCategory, RiskReport


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_report(report: RiskReport, as_json: bool = False) -> None:
    if as_json:
        print(json.dumps({"type": "report", **report.model_dump(mode="json")}, ensure_ascii=False), flush=True)
        return
    print(f"[{report.level.value}] {report.title}")
    print(report.summary)
    for src in report.sources:
        print(f"  - {src.title}: {src.uri}")
    print("", flush=True)


def _print_history(slot: str, points: List[HistoryDataPoint], as_json: bool = False) -> None:
    if as_json:
        payload = {"type": "history", "slot": slot, "points": [p.model_dump(mode="json") for p in points]}
        print(json.dumps(payload, ensure_ascii=False), flush=True)
        return
    print(f"{slot}:")
    for p in points:
        print(f"  {p.label:>9}  {p.value:>10.2f} {p.unit}")
    print("", flush=True)


def _settings_from_args(args: argparse.Namespace):
    settings = load_settings(Path(args.config) if args.config else None)
    overrides = {}
    if args.api_key:
        overrides["gemini_api_key"] = args.api_key
    if args.cooldown is not None:
        overrides["report_cooldown_s"] = args.cooldown
    if args.history_cooldown is not None:
        overrides["history_cooldown_s"] = args.history_cooldown
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


async def _run(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    if not settings.has_api_key:
        print("No Gemini API key configured (set GEMINI_API_KEY or pass --api-key).")
        return 1
    client = build_gemini_client(settings)
    try:
        if args.command == "reports":
            tasks = None
            if args.category:
                tasks = build_risk_tasks(datetime.now(timezone.utc), [RiskCategory(c) for c in args.category])
            await stream_risk_analysis(
                client, lambda r: _print_report(r, args.json), tasks=tasks, settings=settings
            )
        elif args.command == "history":
            await fetch_commodity_histories(
                client, on_history=lambda s, p: _print_history(s, p, args.json), settings=settings
            )
        else:
            await run_refresh(
                client,
                on_report=lambda r: _print_report(r, args.json),
                on_history=lambda s, p: _print_history(s, p, args.json),
                settings=settings,
            )
    finally:
        await client.close()
    return 0


def run_watch(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client(timeout=None) as client:
        if args.start:
            resp = client.post(_join_url(base, "/api/refresh"), timeout=10)
            if resp.status_code >= 400:
                print(f"Failed to start refresh: HTTP {resp.status_code}")
                return 1
        with client.stream("GET", _join_url(base, "/events")) as resp:
            for line in resp.iter_lines():
                if not line.startswith("data:"):
                    continue
                event = json.loads(line[len("data:"):].strip())
                payload = event.get("payload") or {}
                if event.get("event_type") == "report":
                    _print_report(RiskReport.model_validate(payload["report"]), args.json)
                elif event.get("event_type") == "history":
                    points = [HistoryDataPoint.model_validate(p) for p in payload.get("points") or []]
                    _print_history(payload.get("slot", ""), points, args.json)
                elif event.get("event_type") in ("refresh_finished", "refresh_failed"):
                    print(f"{event['event_type']}: {json.dumps(payload)}")
                    return 0 if event["event_type"] == "refresh_finished" else 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Risk Radar CLI")
    parser.add_argument("--config", default=None, help="Path to config.json")
    parser.add_argument("--api-key", default=None, help="Gemini API key (overrides config)")
    parser.add_argument("--cooldown", type=float, default=None, help="Seconds between report requests")
    parser.add_argument("--history-cooldown", type=float, default=None, help="Seconds before each history request")
    parser.add_argument("--json", action="store_true", help="Print JSON lines")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log retries and fallbacks")
    subparsers = parser.add_subparsers(dest="command")

    reports = subparsers.add_parser("reports", help="Stream the risk briefs")
    reports.add_argument(
        "--category",
        action="append",
        choices=[c.value for c in RiskCategory],
        help="Only these categories (repeatable); order stays fixed",
    )
    subparsers.add_parser("history", help="Fetch the commodity price histories")
    subparsers.add_parser("refresh", help="Briefs, then histories")

    watch = subparsers.add_parser("watch", help="Follow a running server's event stream")
    watch.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    watch.add_argument("--start", action="store_true", help="Start a refresh before watching")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    if args.command in ("reports", "history", "refresh"):
        return asyncio.run(_run(args))
    if args.command == "watch":
        return run_watch(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
