import argparse
import json
import logging
import signal
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.blocking import BlockingScheduler

from . import tools
from .config import Config
from .errors import CorruptState, Fatal
from .scheduler import CrawlScheduler, build_report
from .store import PersistentStore
from .sync import GitSync

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CORRUPT = 3
EXIT_INTERRUPTED = 130


def parse_time_window(value: str) -> tuple[int, int]:
    parts = value.split(":")
    if len(parts) != 2:
        raise ValueError("time must be HH:MM")
    hour = int(parts[0])
    minute = int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError("time out of range")
    return hour, minute


def load_config(args: argparse.Namespace) -> Config:
    config = Config(getattr(args, "config", None), use_env=True)
    overrides: Dict[str, Any] = {}
    if getattr(args, "output_dir", None):
        overrides["output_dir"] = args.output_dir
    if getattr(args, "partitions", None):
        overrides["partitions"] = [p.strip() for p in args.partitions.split(",") if p.strip()]
    for key in ("start_page", "end_page", "page_concurrency", "item_concurrency"):
        value = getattr(args, key, None)
        if value is not None:
            overrides[key] = value
    if getattr(args, "lenient", False):
        overrides["lenient_unresolved"] = True
    if getattr(args, "show_browser", False):
        overrides["headless"] = False
    if overrides:
        config.update(overrides)
    return config


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def install_stop_handlers(scheduler: CrawlScheduler) -> None:
    def handle(signum, _frame) -> None:
        print(f"[STOP] signal {signum} received, saving and shutting down")
        scheduler.request_stop()
        # a second signal falls through to the default handler
        signal.signal(signum, signal.SIG_DFL)

    signal.signal(signal.SIGINT, handle)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, handle)


def cmd_crawl(args: argparse.Namespace, config: Config) -> int:
    notifier = GitSync.from_config(config)
    print(f"[INFO] git sync: {'enabled' if notifier else 'disabled'}")
    scheduler = CrawlScheduler.from_config(config, notifier=notifier)
    install_stop_handlers(scheduler)
    print(f"[INFO] partitions {', '.join(config.partitions)} -> {scheduler.store.path}")
    code = EXIT_OK
    try:
        summary = scheduler.run()
        if summary.interrupted:
            code = EXIT_INTERRUPTED
    except CorruptState as exc:
        print(f"[STOP] {exc}")
        code = EXIT_CORRUPT
    except Fatal as exc:
        print(f"[STOP] fatal: {exc}")
        code = EXIT_FATAL
    finally:
        scheduler.shutdown(grace=5.0)
        scheduler.store.wait_for_snapshots()
        if notifier is not None:
            notifier.wait(timeout=60)
    print(json.dumps(scheduler.report(), ensure_ascii=False, indent=2))
    return code


def _schedule_command(args: argparse.Namespace) -> List[str]:
    cmd = [sys.executable, "-m", "cardcrawler"]
    if args.config:
        cmd += ["--config", args.config]
    if args.output_dir:
        cmd += ["--output-dir", args.output_dir]
    return cmd + ["crawl"]


def cmd_schedule(args: argparse.Namespace, config: Config) -> int:
    hour, minute = parse_time_window(args.time)
    cmd = _schedule_command(args)

    def job() -> None:
        print(f"[{datetime.now().isoformat(timespec='seconds')}] run: {' '.join(cmd)}")
        subprocess.run(cmd, check=False)

    scheduler = BlockingScheduler()
    scheduler.add_job(job, "cron", hour=hour, minute=minute, id="crawl_daily", max_instances=1)

    print(f"Scheduler started, daily at {hour:02d}:{minute:02d}")
    print("Press Ctrl+C to stop")
    try:
        scheduler.start()
    except KeyboardInterrupt:
        print("Scheduler stopped")
    return EXIT_OK


def cmd_clean(args: argparse.Namespace, config: Config) -> int:
    store = PersistentStore.from_config(config)
    print(tools.dump(tools.clean(store)))
    return EXIT_OK


def cmd_organize(args: argparse.Namespace, config: Config) -> int:
    store = PersistentStore.from_config(config)
    print(tools.dump(tools.organize(store)))
    return EXIT_OK


def cmd_recover(args: argparse.Namespace, config: Config) -> int:
    store = PersistentStore.from_config(config)
    report = tools.recover(store, restore=args.restore)
    print(tools.dump(report))
    if not report["best"]:
        print("[STOP] no readable document found")
        return EXIT_CORRUPT
    return EXIT_OK


def cmd_search(args: argparse.Namespace, config: Config) -> int:
    store = PersistentStore.from_config(config)
    state = store.load()
    hits = tools.search(state.records, args.keyword, partition=args.partition, limit=args.limit)
    for record in hits:
        print(f"[{record.partition}] {record.display_name} | {record.category} | {record.attribution_name}")
    print(f"[INFO] {len(hits)} match(es) for {args.keyword!r}")
    if args.export:
        count = tools.export_records(hits, Path(args.export), keyword=args.keyword)
        print(f"[INFO] exported {count} records to {args.export}")
    return EXIT_OK


def cmd_report(args: argparse.Namespace, config: Config) -> int:
    store = PersistentStore.from_config(config)
    state, _ = store.load_with_fallback()
    print(json.dumps(build_report(state, config), ensure_ascii=False, indent=2))
    return EXIT_OK


COMMANDS = {
    "crawl": cmd_crawl,
    "schedule": cmd_schedule,
    "clean": cmd_clean,
    "organize": cmd_organize,
    "recover": cmd_recover,
    "search": cmd_search,
    "report": cmd_report,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cardcrawler", description="Resumable card catalogue crawler.")
    parser.add_argument("--config", default=None, help="Path to crawler config JSON.")
    parser.add_argument("--output-dir", dest="output_dir", default=None, help="Override output_dir.")
    sub = parser.add_subparsers(dest="command", required=True)

    crawl = sub.add_parser("crawl", help="Run (or resume) the crawl.")
    crawl.add_argument("--partitions", default=None, help="Comma separated partitions, e.g. 1,2,S.")
    crawl.add_argument("--start-page", dest="start_page", type=int, default=None)
    crawl.add_argument("--end-page", dest="end_page", type=int, default=None)
    crawl.add_argument("--page-concurrency", dest="page_concurrency", type=int, default=None)
    crawl.add_argument("--item-concurrency", dest="item_concurrency", type=int, default=None)
    crawl.add_argument("--lenient", action="store_true", help="Keep unresolved items with a sentinel category.")
    crawl.add_argument("--show-browser", dest="show_browser", action="store_true", help="Disable headless mode.")

    schedule = sub.add_parser("schedule", help="Run the crawl daily at a fixed local time.")
    schedule.add_argument("--time", default="02:30", help="Local run time in HH:MM, default 02:30.")

    sub.add_parser("clean", help="Drop unresolved records and reopen their pages.")
    sub.add_parser("organize", help="Merge, dedupe, sort and number all records.")

    recover = sub.add_parser("recover", help="Inspect backups and snapshots.")
    recover.add_argument("--restore", action="store_true", help="Copy the best readable document over the primary.")

    search = sub.add_parser("search", help="Keyword search across records.")
    search.add_argument("keyword")
    search.add_argument("--partition", default=None)
    search.add_argument("--limit", type=int, default=0)
    search.add_argument("--export", default=None, help="Write matches to this JSON file.")

    sub.add_parser("report", help="Print crawl progress.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args)
    except (OSError, ValueError) as exc:
        print(f"[ERROR] config: {exc}")
        return EXIT_FATAL
    setup_logging(str(config.get("log_level")))
    try:
        return COMMANDS[args.command](args, config)
    except CorruptState as exc:
        print(f"[STOP] {exc}")
        return EXIT_CORRUPT
    except ValueError as exc:
        print(f"[ERROR] {exc}")
        return EXIT_FATAL


if __name__ == "__main__":
    raise SystemExit(main())
