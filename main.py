#!/usr/bin/env python3
"""
pr0-analyze: find text and "richtiges grau" in pr0gramm images.

Usage:
    python main.py backfill --older ID     # Walk back from an item id, store results
    python main.py backfill --resume       # Continue the last backfill
    python main.py poll                    # Store results for new items, every 2 minutes
    python main.py poll --once             # Single pass (for cron)
    python main.py tag                     # Tag new items on pr0gramm, every minute
    python main.py classify FILE...        # Classify local image files
    python main.py stats                   # Show processing stats
"""

import argparse
import logging
import sqlite3
import sys
from datetime import timedelta
from pathlib import Path

from classifier import ClassificationError, Classifier, detect_correct_gray, detect_text
from config import Config, load_config, validate_config
from downloader import CleanupScheduler, Downloader
from feed import FeedError, LoginError, Pr0grammClient
from pipeline import (
    AscendingPolicy,
    ConcurrentPolicy,
    Cursor,
    CursorDedup,
    DatabaseDedup,
    Pipeline,
    repeat,
)
from sinks import DatabaseSink, TagSink
from storage import Storage

log = logging.getLogger("pr0-analyze")

BACKFILL_STATE = "backfill"
TAG_STATE = "tag"


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def open_storage(config: Config) -> Storage:
    return Storage(
        config.db_path,
        max_open=config.db_max_open,
        max_idle=config.db_max_idle,
        max_lifetime=config.db_max_lifetime,
    )


def make_scheduler(config: Config) -> CleanupScheduler | None:
    if config.cleanup != "deferred":
        return None
    scheduler = CleanupScheduler(delay=config.cleanup_delay)
    scheduler.start()
    return scheduler


def database_pipeline(config, storage, policy, scheduler) -> Pipeline:
    """Pipeline that stores has_text rows, deduplicated by the database."""
    return Pipeline(
        source=Pr0grammClient(config),
        dedup=DatabaseDedup(storage),
        downloader=Downloader(config),
        classifier=Classifier(config),
        sink=DatabaseSink(storage),
        policy=policy,
        flags=config.feed_flags,
        cleanup=config.cleanup,
        scheduler=scheduler,
    )


def cmd_backfill(config, storage, older: int | None, resume: bool) -> int:
    """Walk the feed backwards from `older` with no age bound."""
    if resume:
        older = storage.get_state(BACKFILL_STATE).get("older")
        if older is None:
            log.error("No backfill to resume. Start one with --older ID.")
            return 1
        log.info(f"Resuming backfill at item {older}")

    def save_progress(item_id: int):
        try:
            storage.set_state(BACKFILL_STATE, {"older": item_id})
        except sqlite3.Error as e:
            log.warning(f"Could not save backfill position {item_id}: {e}")

    scheduler = make_scheduler(config)
    policy = ConcurrentPolicy(config.workers, config.queue_size, on_progress=save_progress, keep_outcomes=False)
    try:
        summary = database_pipeline(config, storage, policy, scheduler).run(older=older)
    finally:
        if scheduler:
            scheduler.shutdown(drain=True)

    print(f"Backfill: {summary.describe()}")
    if summary.resume_id is not None:
        print(f"Resume point: {summary.resume_id}")
    return 1 if summary.source_error else 0


def cmd_poll(config, storage, once: bool) -> int:
    """Process recent items on a fixed schedule."""
    scheduler = make_scheduler(config)
    policy = ConcurrentPolicy(config.workers, config.queue_size)
    pipeline = database_pipeline(config, storage, policy, scheduler)
    max_age = timedelta(minutes=config.max_age_minutes)

    try:
        repeat(
            lambda: pipeline.run(max_age=max_age),
            config.poll_interval,
            max_runs=1 if once else None,
        )
    finally:
        if scheduler:
            scheduler.shutdown(drain=True)
    return 0


def cmd_tag(config, storage, once: bool) -> int:
    """Tag recent items on pr0gramm, strictly in ascending id order."""
    client = Pr0grammClient(config)
    try:
        client.login(config.username, config.password)
    except (LoginError, FeedError) as e:
        log.error(f"Could not login: {e}")
        return 1

    cursor = Cursor(storage.get_state(TAG_STATE).get("latest", 0))
    log.info(f"Tagging items newer than {cursor.value}")

    def save_cursor(item_id: int):
        try:
            storage.set_state(TAG_STATE, {"latest": item_id})
        except sqlite3.Error as e:
            log.warning(f"Could not save cursor {item_id}: {e}")

    # tagging cleans up right after each item unless configured otherwise
    if config.cleanup == "keep":
        config.cleanup = "immediate"
    scheduler = make_scheduler(config)

    pipeline = Pipeline(
        source=client,
        dedup=CursorDedup(cursor),
        downloader=Downloader(config),
        classifier=Classifier(config),
        sink=TagSink(client),
        policy=AscendingPolicy(cursor, on_progress=save_cursor),
        flags=config.feed_flags,
        cleanup=config.cleanup,
        scheduler=scheduler,
    )
    max_age = timedelta(minutes=config.max_age_minutes)

    try:
        repeat(
            lambda: pipeline.run(max_age=max_age),
            config.tag_poll_interval,
            max_runs=1 if once else None,
        )
    finally:
        if scheduler:
            scheduler.shutdown(drain=True)
    return 0


def cmd_classify(config, paths: list[str]) -> int:
    """Classify local files and print the verdicts."""
    Classifier(config)  # applies tesseract_cmd
    failed = 0
    for name in paths:
        path = Path(name)
        try:
            text = detect_text(path, min_chars=config.text_min_chars, timeout=config.ocr_timeout)
            gray = detect_correct_gray(path, fraction=config.gray_fraction)
        except ClassificationError as e:
            print(f"{path}: error: {e}", file=sys.stderr)
            failed += 1
            continue
        print(f"{path}: text={'yes' if text else 'no'} correct_gray={'yes' if gray else 'no'}")
    return 1 if failed else 0


def cmd_stats(config, storage) -> int:
    """Print processing stats."""
    stats = storage.get_stats()
    print(f"Processed items: {stats['total_items']}")
    print(f"  with text: {stats['with_text']}")
    print(f"  newest: {stats['newest_item']}")
    for name, state in stats["state"].items():
        print(f"State {name}: {state}")
    return 0


def apply_overrides(config: Config, args) -> Config:
    """CLI flags win over env vars."""
    for field_name in ("workers", "cleanup", "username", "password"):
        value = getattr(args, field_name, None)
        if value is not None:
            setattr(config, field_name, value)
    if getattr(args, "db", None):
        config.db_path = Path(args.db)
    if getattr(args, "cache_dir", None):
        config.cache_dir = Path(args.cache_dir)
    if getattr(args, "max_age", None) is not None:
        config.max_age_minutes = args.max_age
    if getattr(args, "interval", None) is not None:
        if args.command == "tag":
            config.tag_poll_interval = args.interval
        else:
            config.poll_interval = args.interval
    return config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pr0-analyze",
        description="Detect text and correct gray in pr0gramm images",
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    common.add_argument("--db", type=str, default=None, help="SQLite database path")
    common.add_argument("--cache-dir", type=str, default=None, help="Scratch directory for images")

    pipeline_opts = argparse.ArgumentParser(add_help=False)
    pipeline_opts.add_argument("--workers", type=int, default=None, help="Worker threads (default 6)")
    pipeline_opts.add_argument(
        "--cleanup", choices=["keep", "immediate", "deferred"], default=None,
        help="What to do with downloaded images after classification",
    )

    polling_opts = argparse.ArgumentParser(add_help=False)
    polling_opts.add_argument("--max-age", type=float, default=None, help="Ignore items older than this many minutes")
    polling_opts.add_argument("--interval", type=float, default=None, help="Seconds between runs")
    polling_opts.add_argument("--once", action="store_true", help="Run once and exit")

    sub = parser.add_subparsers(dest="command", help="Command to run")

    backfill_parser = sub.add_parser("backfill", parents=[common, pipeline_opts], help="Process older items")
    start = backfill_parser.add_mutually_exclusive_group(required=True)
    start.add_argument("--older", type=int, help="Start with items older than this id")
    start.add_argument("--resume", action="store_true", help="Continue the last backfill")

    sub.add_parser("poll", parents=[common, pipeline_opts, polling_opts], help="Process new items periodically")

    tag_parser = sub.add_parser("tag", parents=[common, polling_opts], help="Tag new items on pr0gramm")
    tag_parser.add_argument("--username", type=str, default=None, help="pr0gramm username")
    tag_parser.add_argument("--password", type=str, default=None, help="pr0gramm password")
    tag_parser.add_argument(
        "--cleanup", choices=["immediate", "deferred"], default=None,
        help="When to delete downloaded images",
    )

    classify_parser = sub.add_parser("classify", parents=[common], help="Classify local image files")
    classify_parser.add_argument("files", nargs="+", help="Image files")

    sub.add_parser("stats", parents=[common], help="Show processing stats")
    return parser


def cli(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    config = apply_overrides(load_config(), args)
    try:
        validate_config(config)
    except ValueError as e:
        log.error(f"Invalid configuration: {e}")
        return 1

    # classify doesn't need storage
    if args.command == "classify":
        return cmd_classify(config, args.files)

    try:
        storage = open_storage(config)
    except (sqlite3.Error, OSError) as e:
        log.error(f"Could not open database {config.db_path}: {e}")
        return 1

    try:
        match args.command:
            case "backfill":
                return cmd_backfill(config, storage, args.older, args.resume)
            case "poll":
                return cmd_poll(config, storage, args.once)
            case "tag":
                return cmd_tag(config, storage, args.once)
            case "stats":
                return cmd_stats(config, storage)
            case _:
                parser.print_help()
                return 1
    except KeyboardInterrupt:
        log.info("Interrupted")
        return 130
    finally:
        storage.close()


def main():
    sys.exit(cli())


if __name__ == "__main__":
    main()
