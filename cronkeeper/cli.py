"""
cronkeeper command line: run the scheduler daemon and inspect the job store.

Jobs are created and removed through the CronService API or by editing the
store file directly; the daemon picks such edits up on its next tick.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from cronkeeper.config import DEFAULT_CONFIG, Settings, load_settings
from cronkeeper.errors import CronKeeperError
from cronkeeper.models import KIND_AT, KIND_CRON, KIND_EVERY, Job, Schedule
from cronkeeper.schedule import next_run_times, resolve_timezone
from cronkeeper.service import CronService, now_ms
from cronkeeper.store import JobStore

LOGGER_NAME = "cronkeeper"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
DEFAULT_PREVIEW_COUNT = 5

logger = logging.getLogger(LOGGER_NAME)


def setup_logging(log_file: Optional[Path] = None) -> logging.Logger:
    root = logging.getLogger(LOGGER_NAME)
    formatter = logging.Formatter(LOG_FORMAT)
    if not root.handlers:
        root.setLevel(logging.INFO)
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    if log_file is not None:
        target = str(log_file.resolve())
        if not any(isinstance(h, logging.FileHandler) and h.baseFilename == target for h in root.handlers):
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(target, encoding="utf-8")
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
    return root


def format_ms(value: Optional[int], tz_name: Optional[str] = None) -> str:
    if value is None:
        return "none"
    zone = resolve_timezone(tz_name)
    stamp = datetime.fromtimestamp(value / 1000.0, tz=zone)
    if zone is None:
        stamp = stamp.astimezone()
    return stamp.isoformat(timespec="seconds")


def describe_schedule(schedule: Schedule) -> str:
    if schedule.kind == KIND_AT:
        return f"at {format_ms(schedule.at_ms)}"
    if schedule.kind == KIND_EVERY:
        return f"every {schedule.every_ms}ms"
    if schedule.kind == KIND_CRON:
        tz_text = f" ({schedule.tz})" if schedule.tz else ""
        return f"cron {schedule.expr or '(empty)'}{tz_text}"
    return f"unknown kind {schedule.kind!r}"


def log_payload_handler(job: Job) -> str:
    logger.info(
        "[%s] %s: %s (deliver=%s, channel=%s, to=%s)",
        job.id,
        job.name,
        job.payload.message,
        job.payload.deliver,
        job.payload.channel or "-",
        job.payload.to or "-",
    )
    return "logged"


def _open_service(settings: Settings) -> CronService:
    service = CronService(JobStore(settings.store_path), tick_seconds=settings.tick_seconds, load_store=False)
    service.load()
    return service


def command_list(settings: Settings, include_disabled: bool) -> int:
    service = _open_service(settings)
    jobs = service.list_jobs(include_disabled=include_disabled)
    print(f"Store: {settings.store_path}")
    if not jobs:
        print("No jobs.")
        return 0
    for job in jobs:
        state = job.state
        print(
            f"- {job.id} | {job.name} | {describe_schedule(job.schedule)} | enabled={job.enabled}"
            f" | next={format_ms(state.next_run_at_ms, job.schedule.tz)}"
            f" | last={state.last_status or 'never'}"
            + (f" ({state.last_error})" if state.last_error else "")
        )
    return 0


def command_status(settings: Settings) -> int:
    status = _open_service(settings).status()
    print(f"Store: {settings.store_path}")
    print(f"Running: {status.running}")
    print(f"Jobs: {status.job_count}")
    print(f"Next wake: {format_ms(status.next_wake_at_ms)}")
    return 0


def command_preview(expr: str, tz_name: Optional[str], count: int) -> int:
    schedule = Schedule.cron(expr, tz_name)
    runs = next_run_times(schedule, count, now_ms())
    print(f"Expression: {expr}" + (f" ({tz_name})" if tz_name else ""))
    print(f"Next {count} run(s):")
    if not runs:
        print("- none")
    for run_ms in runs:
        print(f"- {format_ms(run_ms, tz_name)}")
    return 0


def command_daemon(settings: Settings) -> int:
    service = CronService(
        JobStore(settings.store_path),
        handler=log_payload_handler,
        tick_seconds=settings.tick_seconds,
        load_store=False,
    )
    service.start()
    try:
        while service.running:
            time.sleep(settings.tick_seconds)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    finally:
        service.stop()
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="cronkeeper in-process job scheduler")
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to YAML settings (default: {DEFAULT_CONFIG}, optional)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_config(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--config", default=argparse.SUPPRESS, help="Path to YAML settings")

    daemon_parser = subparsers.add_parser("daemon", help="Run the scheduler loop until interrupted")
    add_config(daemon_parser)

    list_parser = subparsers.add_parser("list", help="List jobs in the store")
    add_config(list_parser)
    list_parser.add_argument("--all", action="store_true", help="Include disabled jobs")

    status_parser = subparsers.add_parser("status", help="Show job count and next wake time")
    add_config(status_parser)

    preview_parser = subparsers.add_parser("preview", help="Show upcoming times for a cron expression")
    add_config(preview_parser)
    preview_parser.add_argument("--expr", required=True, help='Cron expression, e.g. "0 9 * * 1-5"')
    preview_parser.add_argument("--tz", default=None, help="IANA timezone name (default: local)")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging()
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()

    try:
        settings = load_settings(config_path, required=args.config is not None)
        setup_logging(settings.log_file)
        if args.command == "daemon":
            return command_daemon(settings)
        if args.command == "list":
            return command_list(settings, include_disabled=args.all)
        if args.command == "status":
            return command_status(settings)
        if args.command == "preview":
            if args.count <= 0:
                raise CronKeeperError("--count must be >= 1")
            return command_preview(args.expr, args.tz, args.count)
        raise CronKeeperError(f"Unsupported command: {args.command}")
    except CronKeeperError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
