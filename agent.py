"""Command-line entry point for the market signal agent.

Subcommands
-----------
run          start the prediction cycle and nightly maintenance timers
cycle        run one prediction cycle and exit
maintenance  run the nightly rollup/retention job once
predict      produce (or reuse) a prediction for one asset
subscribe    set a recipient's alert preferences
quota        print today's quota headroom
"""

from __future__ import annotations

import argparse
import json
from datetime import timedelta
from typing import Sequence

from config import load_pipeline_settings
from errors import DataUnavailableError
from log_utils import setup_logger
from observability import log_event
from pipeline import Pipeline, build_pipeline
from preferences import update_preferences

logger = setup_logger(__name__)


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _cmd_run(pipeline: Pipeline, args: argparse.Namespace) -> int:
    scheduler = pipeline.scheduler
    logger.info(
        "Starting signal agent for %s (%d per cycle, every %d min)",
        ",".join(pipeline.settings.coins),
        pipeline.settings.predict_coins_per_cycle,
        pipeline.settings.predict_refresh_min,
    )
    scheduler.start()
    try:
        scheduler.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted; stopping timers")
    finally:
        scheduler.stop()
    return 0


def _cmd_cycle(pipeline: Pipeline, args: argparse.Namespace) -> int:
    report = pipeline.scheduler.run_prediction_cycle()
    _print_json({"assets": report.assets, "succeeded": report.succeeded, "failed": report.failed})
    return 1 if report.failed and not report.succeeded else 0


def _cmd_maintenance(pipeline: Pipeline, args: argparse.Namespace) -> int:
    report = pipeline.run_maintenance()
    _print_json(
        {
            "window_start": report.window_start,
            "raw_scanned": report.raw_scanned,
            "rollups_created": report.rollups_created,
            "rollups_updated": report.rollups_updated,
            "rollups_failed": report.rollups_failed,
            "raw_deleted": report.raw_deleted,
        }
    )
    return 0


def _cmd_predict(pipeline: Pipeline, args: argparse.Namespace) -> int:
    try:
        if args.notify:
            outcome = pipeline.orchestrator.run(args.asset, notify=True)
        else:
            max_age = timedelta(minutes=pipeline.settings.predict_refresh_min)
            outcome = pipeline.orchestrator.latest_or_run(args.asset, max_age, force=args.force)
    except DataUnavailableError as exc:
        print(f"Prediction failed: {exc}")
        return 1
    record = outcome.record
    _print_json(
        {
            "asset_id": record.asset_id,
            "action": record.action,
            "confidence": record.confidence,
            "reason": record.reason,
            "created_at": record.created_at,
            "market_price": record.market_price,
            "change_24h": record.change_24h,
            "stats": outcome.stats.to_dict(),
            "meta": {
                "reused": outcome.reused,
                "source": outcome.source,
                "fallback_used": outcome.fallback_used,
                "notified": outcome.notified,
            },
        }
    )
    return 0


def _cmd_subscribe(pipeline: Pipeline, args: argparse.Namespace) -> int:
    tracked = pipeline.settings.coins
    enabled = {a.strip().lower() for a in args.assets.split(",") if a.strip()} if args.assets else set(tracked)
    try:
        prefs = update_preferences(
            pipeline.recipients, args.email, {asset: asset in enabled for asset in tracked}, tracked
        )
    except ValueError as exc:
        print(f"Invalid preferences: {exc}")
        return 1
    _print_json({"email": prefs.email, "alert_preferences": prefs.alert_preferences})
    return 0


def _cmd_quota(pipeline: Pipeline, args: argparse.Namespace) -> int:
    snapshot = pipeline.quota.snapshot()
    log_event(logger, "quota_snapshot", quota=snapshot)
    _print_json(snapshot)
    return 0


def main(cli_args: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Market signal agent: fetch, predict, notify.")
    parser.add_argument(
        "--memory", action="store_true", help="Keep all stores in memory instead of SIGNAL_DATA_DIR"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the scheduler until interrupted")
    sub.add_parser("cycle", help="Run one prediction cycle")
    sub.add_parser("maintenance", help="Run nightly maintenance once")

    predict = sub.add_parser("predict", help="Predict one asset")
    predict.add_argument("asset", help="Asset id, e.g. bitcoin")
    predict.add_argument("--force", action="store_true", help="Ignore a recent prediction")
    predict.add_argument("--notify", action="store_true", help="Run a full cycle step including alerts")

    subscribe = sub.add_parser("subscribe", help="Set alert preferences for a recipient")
    subscribe.add_argument("email")
    subscribe.add_argument("--assets", help="Comma-separated assets to enable (default: all tracked)")

    sub.add_parser("quota", help="Show daily quota headroom")

    args = parser.parse_args(cli_args)
    handlers = {
        "run": _cmd_run,
        "cycle": _cmd_cycle,
        "maintenance": _cmd_maintenance,
        "predict": _cmd_predict,
        "subscribe": _cmd_subscribe,
        "quota": _cmd_quota,
    }
    pipeline = build_pipeline(load_pipeline_settings(), persist=not args.memory)
    return handlers[args.command](pipeline, args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
