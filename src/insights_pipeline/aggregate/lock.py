"""Advisory lock so that only one trend aggregation runs at a time.

The lock is a document in `pipeline_locks` keyed by lock name. It expires
after `ttl_seconds`, so a crashed run cannot block the next one forever.

Example::

    lock = MongoAdvisoryLock(db, "trend_aggregator", ttl_seconds=3600)
    with lock.hold():
        recompute()
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from insights_pipeline.db import LOCKS_COLLECTION
from insights_pipeline.errors import LockHeldError

log = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class MongoAdvisoryLock:
    """Expiring mutual-exclusion lock stored in MongoDB."""

    def __init__(
        self,
        db: Database[dict[str, Any]],
        key: str,
        ttl_seconds: int = 3600,
        holder: str | None = None,
    ) -> None:
        self._collection = db[LOCKS_COLLECTION]
        self.key = key
        self.ttl = timedelta(seconds=ttl_seconds)
        self.holder = holder or default_holder()

    def acquire(self) -> bool:
        """Try to take the lock.

        Returns:
            True if acquired (or already held by this holder, which extends
            it), False if another holder has an unexpired lock.
        """
        now = utcnow()
        try:
            self._collection.find_one_and_update(
                {
                    "_id": self.key,
                    "$or": [{"expires_at": {"$lt": now}}, {"holder": self.holder}],
                },
                {"$set": {"holder": self.holder, "acquired_at": now, "expires_at": now + self.ttl}},
                upsert=True,
            )
        except DuplicateKeyError:
            return False
        return True

    def release(self) -> None:
        self._collection.delete_one({"_id": self.key, "holder": self.holder})

    def current_holder(self) -> str | None:
        doc = self._collection.find_one({"_id": self.key}, {"holder": True})
        return doc.get("holder") if doc else None

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Hold the lock for the duration of the block.

        Raises:
            LockHeldError: if another holder has the lock.
        """
        if not self.acquire():
            raise LockHeldError(self.key, self.current_holder())
        log.info("Acquired lock %s as %s", self.key, self.holder)
        try:
            yield
        finally:
            self.release()
            log.info("Released lock %s", self.key)
