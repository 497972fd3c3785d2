"""Scheduled entry point: contribution pass, then trend aggregation.

`run` wires the Mongo-backed collaborators from `Settings` and returns a
`RunStatus`. The two phases are strictly ordered; both are safe to re-run
because contributions are deduplicated by the weekly cadence and trends are
upserted by key.
"""
from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from pymongo.database import Database
from pymongo.errors import PyMongoError

from insights_pipeline.aggregate.load_trends import LOCK_KEY, MongoTrendStore, TrendAggregator
from insights_pipeline.aggregate.lock import MongoAdvisoryLock
from insights_pipeline.anonymize.pseudonym import Pseudonymizer
from insights_pipeline.config import Settings, get_settings
from insights_pipeline.contribute.build import ContributionBuilder
from insights_pipeline.contribute.store import MongoContributionStore
from insights_pipeline.db import get_client, get_db
from insights_pipeline.errors import ConfigError, LockHeldError
from insights_pipeline.ingest.sources import MongoConsentRegistry, MongoRecordStore

log = logging.getLogger(__name__)


class RunStatus(enum.Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FATAL_CONFIG_ERROR = "fatal_config_error"

    @property
    def exit_code(self) -> int:
        return {
            RunStatus.SUCCESS: 0,
            RunStatus.PARTIAL_SUCCESS: 1,
            RunStatus.FATAL_CONFIG_ERROR: 2,
        }[self]


def connect(settings: Settings) -> Database[dict[str, Any]]:
    client = get_client(settings.mongo_uri, tls=settings.mongo_tls)
    return get_db(client, settings.mongo_db)


def make_builder(settings: Settings, db: Database[dict[str, Any]]) -> ContributionBuilder:
    return ContributionBuilder(
        consent_registry=MongoConsentRegistry(db),
        record_store=MongoRecordStore(db),
        contribution_store=MongoContributionStore(db),
        pseudonymizer=Pseudonymizer(settings.anon_salt),
        workers=settings.builder_workers,
    )


def make_aggregator(settings: Settings, db: Database[dict[str, Any]]) -> TrendAggregator:
    return TrendAggregator(
        contribution_store=MongoContributionStore(db),
        trend_store=MongoTrendStore(db),
        lock=MongoAdvisoryLock(db, LOCK_KEY, ttl_seconds=settings.lock_ttl_seconds),
    )


def run(
    as_of: datetime | None = None,
    window: timedelta | None = None,
    settings: Settings | None = None,
    db: Database[dict[str, Any]] | None = None,
    builder: ContributionBuilder | None = None,
    aggregator: TrendAggregator | None = None,
) -> RunStatus:
    """Run the contribution pass followed by trend aggregation.

    Args:
        as_of: Logical run time (defaults to now, UTC).
        window: Contribution window for trends (defaults to the configured days).
        settings: Pre-loaded settings; read from the environment when omitted.
        db: Database to use; connected from settings when omitted.
        builder: Pre-wired builder; built from settings and db when omitted.
        aggregator: Pre-wired aggregator; built from settings and db when omitted.

    Returns:
        SUCCESS, PARTIAL_SUCCESS when per-user or per-domain failures were
        logged (or another aggregation held the lock), or
        FATAL_CONFIG_ERROR when configuration or connectivity failed.
    """
    as_of = as_of or datetime.now(timezone.utc)
    try:
        settings = settings or get_settings()
        window = window or timedelta(days=settings.window_days)
        if builder is None or aggregator is None:
            db = db if db is not None else connect(settings)
            builder = builder or make_builder(settings, db)
            aggregator = aggregator or make_aggregator(settings, db)

        built = builder.build_contributions(as_of)
        status = RunStatus.PARTIAL_SUCCESS if built.partial else RunStatus.SUCCESS

        try:
            written = aggregator.recompute_trends(window, as_of)
        except LockHeldError as e:
            log.warning("Skipping trend aggregation: %s", e.message)
            return RunStatus.PARTIAL_SUCCESS

        log.info(
            "Run complete as of %s: contributions=%d trends=%d status=%s",
            as_of.isoformat(),
            built.count,
            written,
            status.value,
        )
        return status
    except ConfigError as e:
        log.error("Fatal configuration error: %s", e.message)
        return RunStatus.FATAL_CONFIG_ERROR
    except PyMongoError:
        log.exception("Store connectivity lost during run")
        return RunStatus.FATAL_CONFIG_ERROR
