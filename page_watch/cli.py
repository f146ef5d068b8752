from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any

import httpx
import structlog
import uvicorn
import yaml

from page_watch.app import build_services, create_app
from page_watch.checker import CheckRejected
from page_watch.cron import generate_cron_job_name, interval_to_cron_expression
from page_watch.db import SqliteStore
from page_watch.logging_config import configure_logging
from page_watch.schema import MonitorConfig
from page_watch.settings import WatchSettings, load_settings


logger = structlog.get_logger(__name__)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def load_monitor_configs(path: Path) -> list[MonitorConfig]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    items = data.get("monitors") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ValueError("Seed YAML must be a list of monitors or a mapping with a 'monitors' list")
    return [MonitorConfig.model_validate(item) for item in items]


async def _cmd_check(settings: WatchSettings, monitor_id: str, user_id: str) -> int:
    async with httpx.AsyncClient(timeout=httpx.Timeout(settings.fetch_timeout_seconds)) as client:
        services = build_services(settings, http_client=client)
        try:
            outcome = await services.checker.run_check(monitor_id, user_id)
        except CheckRejected as exc:
            _print_json({"success": False, "error": str(exc)})
            return 2
    _print_json(
        {
            "success": outcome.success,
            "status": outcome.status,
            "previous_status": outcome.previous_status,
            "response_time_ms": outcome.response_time_ms,
            "content_snippet": outcome.content_snippet,
            "error": outcome.error,
            "notifications": outcome.notification.to_dict(),
        }
    )
    return 0


async def _cmd_seed(settings: WatchSettings, path: Path) -> int:
    try:
        configs = load_monitor_configs(path)
    except ValueError as exc:
        # pydantic ValidationError is a ValueError too.
        print(f"Invalid seed file: {exc}", file=sys.stderr)
        return 1
    store = SqliteStore(settings.db_path)
    created = []
    for cfg in configs:
        monitor = await store.create_monitor(cfg.to_monitor())
        logger.info("Monitor created", monitor_id=monitor.id, user_id=monitor.user_id, name=monitor.name)
        created.append(
            {
                "id": monitor.id,
                "user_id": monitor.user_id,
                "name": monitor.name,
                "cron": interval_to_cron_expression(monitor.check_interval),
                "job_name": generate_cron_job_name(monitor.id),
            }
        )
    _print_json({"created": created})
    return 0


async def _cmd_costs(settings: WatchSettings, *, reset: bool) -> int:
    async with httpx.AsyncClient() as client:
        monitor = build_services(settings, http_client=client).cost_monitor
        if reset:
            count = await monitor.reset_monthly_costs()
            _print_json({"reset_count": count})
            return 0
        stats = await monitor.get_system_cost_stats()
        alerts = await monitor.get_users_exceeding_limits()
    for alert in alerts:
        monitor.log_cost_alert(alert)
    _print_json({"system_stats": stats.to_dict(), "alerts": [a.to_dict() for a in alerts]})
    return 0


def _cmd_cron(interval: int, monitor_id: str | None) -> int:
    try:
        expression = interval_to_cron_expression(interval)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    out = {"interval_seconds": interval, "cron": expression}
    if monitor_id:
        out["job_name"] = generate_cron_job_name(monitor_id)
    _print_json(out)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="page-watch", description="Web page pattern monitor")
    parser.add_argument("--config", default=os.getenv("PAGE_WATCH_CONFIG") or None, help="Path to YAML settings")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the HTTP API")

    p_check = sub.add_parser("check", help="Run one monitor check and print the result")
    p_check.add_argument("monitor_id")
    p_check.add_argument("user_id")

    p_seed = sub.add_parser("seed", help="Validate and insert monitors from a YAML file")
    p_seed.add_argument("path", type=Path)

    p_costs = sub.add_parser("costs", help="Print SMS cost stats and alerts")
    p_costs.add_argument("--reset", action="store_true", help="Zero monthly SMS counters instead")

    p_cron = sub.add_parser("cron", help="Print the cron schedule for a check interval")
    p_cron.add_argument("interval", type=int, help="Check interval in seconds")
    p_cron.add_argument("--monitor-id", default=None)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "cron":
        return _cmd_cron(args.interval, args.monitor_id)

    settings = load_settings(Path(args.config) if args.config else None)
    configure_logging(args.log_level or settings.log_level, settings.environment)

    if args.command == "serve":
        uvicorn.run(create_app(settings), host=settings.host, port=int(settings.port), log_level="info")
        return 0
    if args.command == "check":
        return asyncio.run(_cmd_check(settings, args.monitor_id, args.user_id))
    if args.command == "seed":
        return asyncio.run(_cmd_seed(settings, args.path))
    if args.command == "costs":
        return asyncio.run(_cmd_costs(settings, reset=bool(args.reset)))
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
