"""Trend store and the aggregator that feeds it.

Trend rows are small and are materialized to pandas before being upserted.
The upsert key is (category, subgroup, metric, period): an existing row has
its value, sample size and timestamp replaced, a missing one is inserted.
After each run, rows of the same period that the run did not write are
deleted, so a subgroup that drops below its floor stops being published.
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Any, ContextManager, Protocol

import pandas as pd
from pymongo import UpdateOne
from pymongo.database import Database

from insights_pipeline.aggregate.build_trends import compute_trends, period_label
from insights_pipeline.contribute.build import ContributionStore
from insights_pipeline.db import TREND_KEY_FIELDS, TRENDS_COLLECTION, bulk_upsert
from insights_pipeline.errors import InsufficientCohortError
from insights_pipeline.models import TrendRecord

log = logging.getLogger(__name__)

LOCK_KEY = "trend_aggregator"


class TrendStore(Protocol):
    def upsert_trend(
        self,
        category: str,
        subgroup: str,
        metric: str,
        value: dict[str, Any],
        sample_size: int,
        period: str,
        calculated_at: datetime,
    ) -> None: ...

    def upsert_trends(self, trends: pd.DataFrame, calculated_at: datetime) -> int: ...

    def retract_stale(self, period: str, calculated_at: datetime) -> int: ...


class Lock(Protocol):
    def hold(self) -> ContextManager[None]: ...


def trend_records(trends: pd.DataFrame, calculated_at: datetime) -> list[TrendRecord]:
    """Validate trend rows against the `TrendRecord` model."""
    return [
        TrendRecord.model_validate({**row, "calculated_at": calculated_at})
        for row in trends.to_dict("records")
    ]


class MongoTrendStore:
    """Upserts trend rows into `anonymized_trends`."""

    def __init__(self, db: Database[dict[str, Any]]) -> None:
        self._collection = db[TRENDS_COLLECTION]

    def upsert_trend(
        self,
        category: str,
        subgroup: str,
        metric: str,
        value: dict[str, Any],
        sample_size: int,
        period: str,
        calculated_at: datetime,
    ) -> None:
        record = TrendRecord(
            category=category,
            subgroup=subgroup,
            metric=metric,
            value=value,
            sample_size=sample_size,
            period=period,
            calculated_at=calculated_at,
        )
        doc = record.model_dump(mode="python")
        self._collection.bulk_write(
            [UpdateOne({k: doc[k] for k in TREND_KEY_FIELDS}, {"$set": doc}, upsert=True)],
            ordered=False,
        )

    def upsert_trends(self, trends: pd.DataFrame, calculated_at: datetime) -> int:
        if trends.empty:
            log.warning("No trend rows to load")
            return 0

        docs = [r.model_dump(mode="python") for r in trend_records(trends, calculated_at)]
        written = bulk_upsert(self._collection, docs, TREND_KEY_FIELDS)
        log.info("Trend load complete: %d rows", written)
        return written

    def retract_stale(self, period: str, calculated_at: datetime) -> int:
        """Delete rows of `period` that were not written by the run at `calculated_at`."""
        result = self._collection.delete_many({"period": period, "calculated_at": {"$ne": calculated_at}})
        if result.deleted_count:
            log.info("Retracted %d stale trend rows for %s", result.deleted_count, period)
        return int(result.deleted_count)


class TrendAggregator:
    """Recomputes trends from the contributions of a rolling window.

    Not re-entrant: when a lock is given it is held for the whole
    read → group → write sequence.
    """

    def __init__(
        self,
        contribution_store: ContributionStore,
        trend_store: TrendStore,
        lock: Lock | None = None,
    ) -> None:
        self.contribution_store = contribution_store
        self.trend_store = trend_store
        self.lock = lock

    def recompute_trends(self, window: timedelta, as_of: datetime) -> int:
        """Recompute and upsert all trends for ``(as_of - window, as_of]``.

        Returns:
            Number of trend rows written; 0 when the window has too few
            contributors, in which case every row of the period is retracted.

        Raises:
            LockHeldError: if another aggregation holds the lock.
        """
        if window.days < 1:
            raise ValueError("window must be at least one day")

        with self.lock.hold() if self.lock is not None else nullcontext():
            contributions = self.contribution_store.list_contributions(as_of - window, as_of)
            period = period_label(window)
            try:
                trends = compute_trends(contributions, window)
            except InsufficientCohortError as e:
                log.info("Insufficient population for trends: %s", e.message)
                self.trend_store.retract_stale(period, calculated_at=as_of)
                return 0

            log.info(
                "Computed %d trends from %d contributions",
                len(trends),
                len(contributions),
            )
            written = self.trend_store.upsert_trends(trends, calculated_at=as_of)
            # Rows this run no longer produces fell below their floor.
            self.trend_store.retract_stale(period, calculated_at=as_of)
            return written
