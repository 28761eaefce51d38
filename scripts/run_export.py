"""
Script to run the event export in one of its modes

Modes:
    once                 incremental export of every configured table
    retry                re-deliver FAILED rows below the retry limit
    date YYYY-MM-DD      export one partition (no status writes)
    yesterday            export yesterday's partition
    stats [YYYY-MM-DD]   row counts per table for a partition (default today)
    pending              rows awaiting delivery per table
    schedule             run the cron jobs until interrupted
"""

import argparse
import asyncio
import signal
import sys
import os
import logging
from datetime import date

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import Settings
from core.database import create_engine, create_session_factory
from core.logging import setup_logging
from exporter.bootstrap import build_runner
from exporter.runner import ExportRunner
from exporter.scheduler import ExportScheduler

logger = logging.getLogger(__name__)

MODES = ("once", "retry", "date", "yesterday", "stats", "pending", "schedule")


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Export event rows to the analytics endpoint")
    parser.add_argument("mode", nargs="?", default="once", choices=MODES)
    parser.add_argument("date", nargs="?", type=parse_date, help="partition date for 'date' and 'stats'")
    return parser


async def run_schedule(runner: ExportRunner, settings: Settings):
    if not settings.SCHEDULE_ENABLED:
        logger.warning("SCHEDULE_ENABLED is false, nothing to schedule")
        return

    scheduler = ExportScheduler(runner, settings)
    scheduler.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops; Ctrl+C still raises KeyboardInterrupt
            pass

    try:
        await stop.wait()
    finally:
        scheduler.stop()


async def run_mode(args: argparse.Namespace, settings: Settings) -> int:
    engine = create_engine(settings)
    runner = build_runner(settings, create_session_factory(engine))

    try:
        if args.mode == "once":
            summary = await runner.run_incremental()
        elif args.mode == "retry":
            summary = await runner.retry_failed()
        elif args.mode == "date":
            if args.date is None:
                logger.error("Mode 'date' requires a date argument (YYYY-MM-DD)")
                return 2
            summary = await runner.run_for_date(args.date)
        elif args.mode == "yesterday":
            summary = await runner.run_yesterday()
        elif args.mode == "stats":
            dt = args.date or date.today()
            for table_name, count in (await runner.get_date_counts(dt)).items():
                logger.info(f"Table {table_name} (dt={dt.isoformat()}): {count} records")
            return 0
        elif args.mode == "pending":
            for table_name, count in (await runner.get_pending_counts()).items():
                logger.info(f"Table {table_name}: {count} pending records")
            return 0
        else:
            await run_schedule(runner, settings)
            return 0

        return 1 if any(t.status == "failed" for t in summary.tables) else 0

    finally:
        await runner.client.aclose()
        await engine.dispose()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings()
    setup_logging(settings)

    logger.info(f"Starting event export in mode: {args.mode}")
    try:
        return asyncio.run(run_mode(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
