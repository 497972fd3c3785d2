"""MongoDB-backed store for anonymized contributions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError
from pymongo.database import Database

from insights_pipeline.db import CONTRIBUTIONS_COLLECTION, ping
from insights_pipeline.logging_config import short_pseudonym
from insights_pipeline.models import Contribution

log = logging.getLogger(__name__)

BATCH_SIZE = 1000


class MongoContributionStore:
    """Reads and writes `anonymized_contributions`.

    Contributions are insert-only; the weekly cadence check makes a re-run of
    the builder skip users that were already written.
    """

    def __init__(self, db: Database[dict[str, Any]]) -> None:
        self._db = db
        self._collection = db[CONTRIBUTIONS_COLLECTION]

    def ping(self) -> None:
        ping(self._db, "contribution store")

    def has_recent_contribution(self, pseudonym: str, within_days: int, as_of: datetime) -> bool:
        """Return True if `pseudonym` contributed after ``as_of - within_days``."""
        cutoff = as_of - timedelta(days=within_days)
        doc = self._collection.find_one(
            {"pseudonym": pseudonym, "contributed_at": {"$gt": cutoff}},
            {"_id": True},
        )
        return doc is not None

    def write_contribution(self, contribution: Contribution) -> None:
        self._collection.insert_one(contribution.model_dump(mode="python"))

    def list_contributions(self, since: datetime, until: datetime) -> list[Contribution]:
        """Return contributions with ``since < contributed_at <= until``.

        The cursor is drained in one pass so the caller works on a fixed
        snapshot. Documents that no longer validate are skipped.
        """
        cursor = self._collection.find(
            {"contributed_at": {"$gt": since, "$lte": until}},
            {"_id": False},
        ).batch_size(BATCH_SIZE)

        good: list[Contribution] = []
        bad = 0
        for doc in cursor:
            try:
                good.append(Contribution.model_validate(doc))
            except ValidationError:
                bad += 1

        if bad:
            log.warning("Skipped %d invalid contribution documents", bad)
        log.info("Loaded %d contributions in window", len(good))
        return good

    def delete_for_pseudonym(self, pseudonym: str) -> int:
        """Remove every contribution of one pseudonym (consent revocation)."""
        result = self._collection.delete_many({"pseudonym": pseudonym})
        log.info(
            "Deleted %d contributions for pseudonym %s",
            result.deleted_count,
            short_pseudonym(pseudonym),
        )
        return int(result.deleted_count)
