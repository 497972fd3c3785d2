"""MongoDB helpers, index setup and bulk upsert utility.

Centralizes creation of Mongo clients, the collection names used by the
pipeline, and the keyed bulk upsert used by the trend store.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

import certifi
from pymongo import ASCENDING, DESCENDING, MongoClient, UpdateOne
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

from insights_pipeline.errors import ConfigError

log = logging.getLogger(__name__)

CONSENT_COLLECTION = "user_data_consent"
CONTRIBUTIONS_COLLECTION = "anonymized_contributions"
TRENDS_COLLECTION = "anonymized_trends"
LOCKS_COLLECTION = "pipeline_locks"

TREND_KEY_FIELDS = ["category", "subgroup", "metric", "period"]


def get_client(uri: str, tls: bool = False) -> MongoClient[dict[str, Any]]:
    """Return a configured PyMongo MongoClient for the provided URI.

    Args:
        uri: MongoDB connection URI.
        tls: Connect over TLS using the certifi CA bundle.

    Returns:
        Configured MongoClient instance.
    """
    options: dict[str, Any] = {
        "serverSelectionTimeoutMS": 30000,
        "socketTimeoutMS": 30000,
        "connectTimeoutMS": 30000,
        "tz_aware": True,
    }
    if tls:
        options.update(tls=True, tlsCAFile=certifi.where())
    return MongoClient(uri, **options)


def get_db(
    client: MongoClient[dict[str, Any]],
    db_name: str,
) -> Database[dict[str, Any]]:
    """Return the named Database instance from a MongoClient."""
    return client[db_name]


def ping(db: Database[dict[str, Any]], what: str = "database") -> None:
    """Fail fast when the server cannot be reached.

    Raises:
        ConfigError: if the ping command fails.
    """
    try:
        db.client.admin.command("ping")
    except PyMongoError as e:
        raise ConfigError(f"{what} is unreachable: {e}", details={"db": db.name}) from e


def ensure_indexes(db: Database[dict[str, Any]]) -> None:
    """Create the indexes the pipeline relies on (idempotent)."""
    contributions = db[CONTRIBUTIONS_COLLECTION]
    contributions.create_index(
        [("pseudonym", ASCENDING), ("contributed_at", DESCENDING)],
        name="pseudonym_contributed_at",
    )
    contributions.create_index([("contributed_at", ASCENDING)], name="contributed_at")

    db[TRENDS_COLLECTION].create_index(
        [(f, ASCENDING) for f in TREND_KEY_FIELDS],
        name="trend_key",
        unique=True,
    )
    db[CONSENT_COLLECTION].create_index(
        [("consent_type", ASCENDING), ("revoked_at", ASCENDING)],
        name="consent_type_revoked_at",
    )
    log.info("Indexes ensured on %s", db.name)


def bulk_upsert(
    collection: Collection[dict[str, Any]],
    docs: Iterable[dict[str, Any]],
    key_fields: list[str],
    batch_size: int = 1000,
) -> int:
    """Bulk upsert documents using `key_fields` as the selector.

    Documents missing any key field are skipped. Driver errors propagate: a
    failed trend write must fail the run rather than leave it half-reported.

    Args:
        collection: Target PyMongo collection.
        docs: Iterable of document dictionaries to upsert.
        key_fields: Document keys used for the upsert selector.
        batch_size: Number of ops per bulk_write call.

    Returns:
        Integer number of documents written.
    """
    ops: list[UpdateOne] = []
    written = 0

    for d in docs:
        if any(k not in d for k in key_fields):
            log.warning("Skipping document without key fields %s", key_fields)
            continue

        ops.append(
            UpdateOne(
                {k: d[k] for k in key_fields},
                {"$set": d},
                upsert=True,
            )
        )

        if len(ops) >= batch_size:
            collection.bulk_write(ops, ordered=False)
            written += len(ops)
            ops.clear()

    if ops:
        collection.bulk_write(ops, ordered=False)
        written += len(ops)

    return written
