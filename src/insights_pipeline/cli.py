"""Command-line interface for orchestrating the pipeline.

Provides subcommands: `init-db`, `contribute`, `trends`, `run`, and `purge`.
Each command is implemented as a `cmd_*` function that accepts an argparse
namespace and returns a process exit code.
"""
from __future__ import annotations

import argparse
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

from dotenv import load_dotenv
from pymongo.errors import PyMongoError

from insights_pipeline.anonymize.pseudonym import Pseudonymizer
from insights_pipeline.config import get_settings
from insights_pipeline.contribute.store import MongoContributionStore
from insights_pipeline.db import ensure_indexes, ping
from insights_pipeline.errors import ConfigError, LockHeldError
from insights_pipeline.logging_config import configure_logging, short_pseudonym
from insights_pipeline.pipeline import RunStatus, connect, make_aggregator, make_builder, run

log = logging.getLogger(__name__)


# --------------------------------------------------
# Helpers
# --------------------------------------------------
def _parse_as_of(value: str | None) -> datetime:
    """Parse an ISO timestamp (naive values are taken as UTC); default now."""
    if not value:
        return datetime.now(timezone.utc)
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _window(args: argparse.Namespace, default_days: int) -> timedelta:
    days = getattr(args, "window_days", None) or default_days
    return timedelta(days=days)


# --------------------------------------------------
# INIT
# --------------------------------------------------
def cmd_init_db(_: argparse.Namespace) -> int:
    """Create the indexes used by the contribution and trend stores."""
    s = get_settings()
    db = connect(s)
    ping(db)
    ensure_indexes(db)
    return 0


# --------------------------------------------------
# CONTRIBUTE
# --------------------------------------------------
def cmd_contribute(args: argparse.Namespace) -> int:
    """Run the contribution pass only."""
    s = get_settings()
    db = connect(s)
    result = make_builder(s, db).build_contributions(_parse_as_of(args.as_of))
    status = RunStatus.PARTIAL_SUCCESS if result.partial else RunStatus.SUCCESS
    return status.exit_code


# --------------------------------------------------
# TRENDS
# --------------------------------------------------
def cmd_trends(args: argparse.Namespace) -> int:
    """Recompute trends from the current contribution window."""
    s = get_settings()
    db = connect(s)
    ping(db, "contribution store")
    try:
        written = make_aggregator(s, db).recompute_trends(
            _window(args, s.window_days), _parse_as_of(args.as_of)
        )
    except LockHeldError as e:
        log.warning("Trend aggregation already running: %s", e.message)
        return RunStatus.PARTIAL_SUCCESS.exit_code

    log.info("Trends written: %d", written)
    return 0


# --------------------------------------------------
# RUN
# --------------------------------------------------
def cmd_run(args: argparse.Namespace) -> int:
    """Contribution pass followed by trend aggregation."""
    s = get_settings()
    status = run(as_of=_parse_as_of(args.as_of), window=_window(args, s.window_days), settings=s)
    return status.exit_code


# --------------------------------------------------
# PURGE
# --------------------------------------------------
def cmd_purge(args: argparse.Namespace) -> int:
    """Delete every contribution of one identity after consent revocation."""
    s = get_settings()
    db = connect(s)
    ping(db, "contribution store")
    pseudonym = Pseudonymizer(s.anon_salt)(args.identity)
    deleted = MongoContributionStore(db).delete_for_pseudonym(pseudonym)
    log.info("Purged %d contributions for pseudonym %s", deleted, short_pseudonym(pseudonym))
    return 0


# --------------------------------------------------
# CLI
# --------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    """Build and return the top-level argument parser for the CLI.

    Returns:
        Configured argparse.ArgumentParser instance.
    """
    p = argparse.ArgumentParser(prog="insights_pipeline")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db")

    p_contribute = sub.add_parser("contribute")
    p_contribute.add_argument("--as-of", default=None)

    p_trends = sub.add_parser("trends")
    p_trends.add_argument("--as-of", default=None)
    p_trends.add_argument("--window-days", type=int, default=None)

    p_run = sub.add_parser("run")
    p_run.add_argument("--as-of", default=None)
    p_run.add_argument("--window-days", type=int, default=None)

    p_purge = sub.add_parser("purge")
    p_purge.add_argument("--identity", required=True)

    return p


COMMANDS = {
    "init-db": cmd_init_db,
    "contribute": cmd_contribute,
    "trends": cmd_trends,
    "run": cmd_run,
    "purge": cmd_purge,
}


def main(argv: list[str] | None = None) -> int:
    """CLI entry point: parse args, configure logging and dispatch commands."""
    load_dotenv()
    configure_logging(Path("logs/pipeline.log"))

    args = build_parser().parse_args(argv)

    try:
        return COMMANDS[args.cmd](args)
    except ConfigError as e:
        log.error("Fatal configuration error: %s", e.message)
        return RunStatus.FATAL_CONFIG_ERROR.exit_code
    except PyMongoError:
        log.exception("Store connectivity lost during %s", args.cmd)
        return RunStatus.FATAL_CONFIG_ERROR.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
