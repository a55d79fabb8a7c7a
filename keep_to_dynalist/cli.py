from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import ConfigurationError, EnvConfig, load_env_file
from .dynalist_client import CallStatistics, DynalistClient
from .exporter import HASHTAG_MODES, HASHTAGS_IN_TITLE, ExportSettings, NoteResult, RunSummary, migrate_folder
from .parser import count_note_files
from .storage import R2Uploader, Uploader


LOG_PATH = Path("migrate.log")
DEBUG_LOG_PATH = Path("migrate.debug.log")
LOGGER_NAME = "keep_to_dynalist"
PROGRESS_WIDTH = 30


def build_arg_parser() -> argparse.ArgumentParser:
    """Construct the command-line parser for the migration CLI."""

    parser = argparse.ArgumentParser(description="Migrate a Google Keep takeout into the Dynalist inbox.")
    parser.add_argument("--env", default=".env", help="Path to the .env file with Dynalist/R2 credentials.")
    parser.add_argument("--dry-run", action="store_true", help="Print payloads instead of sending them.")
    parser.add_argument(
        "--hashtags",
        choices=HASHTAG_MODES,
        default=HASHTAGS_IN_TITLE,
        help="Append label hashtags to the item title (default) or to its note.",
    )
    parser.add_argument("--no-attachments", action="store_true", help="Do not upload attachments to R2.")
    parser.add_argument(
        "--debug-log",
        action="store_true",
        help="Write full payloads and Dynalist responses to migrate.debug.log",
    )
    parser.add_argument("--log-file", default=str(LOG_PATH), help="Where to write the run log.")
    parser.add_argument("takeout_path", help="Google Keep takeout folder (the one holding the .json files).")
    return parser


def configure_logging(log_path: Path = LOG_PATH) -> logging.Logger:
    """Set up the primary info-level logger that writes to the run log."""

    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        logger.setLevel(logging.INFO)
        handler = logging.FileHandler(log_path, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(handler)
    return logger


def configure_debug_logger(log_path: Path = DEBUG_LOG_PATH) -> logging.Logger:
    """Create or return the debug logger that captures payloads/API responses."""

    debug_logger = logging.getLogger(f"{LOGGER_NAME}.debug")
    if not debug_logger.handlers:
        debug_logger.setLevel(logging.INFO)
        handler = logging.FileHandler(log_path, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s [DEBUG] %(message)s"))
        debug_logger.addHandler(handler)
    return debug_logger


def validate_takeout_path(raw_path: str) -> Path:
    path = Path(raw_path).expanduser()
    if not path.exists():
        raise ConfigurationError(f"Takeout path does not exist: {path}")
    if not path.is_dir():
        raise ConfigurationError(f"{path} is not a directory")
    return path


def build_uploader(env: EnvConfig, logger: logging.Logger) -> Optional[Uploader]:
    if env.r2 is None:
        if env.r2_error:
            print(f"[warn] {env.r2_error}; media uploads will be disabled")
            logger.warning("%s; media uploads will be disabled", env.r2_error)
        else:
            logger.info("Cloudflare R2 environment variables not set, media uploads will be disabled")
        return None

    uploader = R2Uploader(env.r2)
    logger.info("Cloudflare R2 client initialized for bucket %s", env.r2.bucket_name)
    return uploader


def format_progress(summary: RunSummary, stats: CallStatistics) -> str:
    total = summary.total_notes or 1
    done = min(summary.handled, total)
    completed = int(PROGRESS_WIDTH * done / total)
    bar = "=" * completed + " " * (PROGRESS_WIDTH - completed)
    return (
        f"\r[{bar}] {100.0 * done / total:.1f}% ({summary.handled}/{summary.total_notes})"
        f" | Elapsed: {summary.elapsed:.0f}s | API: {stats.summary()} | {stats.last_status}"
    )


def run_cli(argv: Optional[list[str]] = None) -> RunSummary:
    """Entry point invoked by export_keep_to_dynalist.py or tests."""

    parser = build_arg_parser()
    args = parser.parse_args(argv)

    takeout_path = validate_takeout_path(args.takeout_path)
    env_config = load_env_file(Path(args.env))
    token = None if args.dry_run else env_config.require_token()

    logger = configure_logging(Path(args.log_file))
    debug_logger = configure_debug_logger() if args.debug_log else None

    settings = ExportSettings(
        token=token
        ,hashtag_mode=args.hashtags
        ,dry_run=args.dry_run
        ,upload_attachments=not args.no_attachments
    )
    stats = CallStatistics()
    client = None if args.dry_run else DynalistClient(env_config.retry, stats=stats, debug_logger=debug_logger)
    uploader = None
    if settings.upload_attachments and not args.dry_run:
        uploader = build_uploader(env_config, logger)

    summary = RunSummary(total_notes=count_note_files(takeout_path))
    print(f"[info] Found {summary.total_notes} JSON files to process")
    logger.info("Found %d total JSON files to process in %s", summary.total_notes, takeout_path)

    def report(result: NoteResult, current: RunSummary) -> None:
        if args.dry_run and result.payload is not None:
            print(f"\n[info] {result.path}")
            print(json.dumps(result.payload, indent=2))
        elif result.status == "failed":
            print(f"\n[warn] Failed to deliver {result.path}: {result.reason}")
        for missing in result.missing_attachments:
            print(f"\n[warn] Missing attachment for {result.path}: {missing}")
        print(format_progress(current, stats), end="", flush=True)

    migrate_folder(
        takeout_path
        ,settings
        ,client=client
        ,uploader=uploader
        ,summary=summary
        ,on_result=report
        ,debug_logger=debug_logger
    )
    print()

    print(
        f"[info] Processed {summary.processed_notes}/{summary.total_notes} Google Keep notes"
        f" in {summary.elapsed:.0f}s"
    )
    print(f"[info] Skipped {summary.skipped_notes} notes (archived or unreadable), {summary.failed_notes} failed")
    logger.info(
        "Processed %d/%d notes, skipped %d, failed %d",
        summary.processed_notes, summary.total_notes, summary.skipped_notes, summary.failed_notes,
    )
    if not args.dry_run:
        print(f"[info] API Stats: {stats.summary()}")
        logger.info(
            "API Stats: %d successful, %d failed, %d retries, %d requests; last status %s, last error %s",
            stats.successful_calls, stats.failed_calls, stats.retries, stats.requests_sent,
            stats.last_status or "-", stats.last_error or "-",
        )
    return summary


def main(argv: Optional[list[str]] = None) -> int:
    try:
        run_cli(sys.argv[1:] if argv is None else argv)
    except ConfigurationError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 2
    return 0
