"""Consent registry and raw record store backed by MongoDB.

Both are read-only to the pipeline. Record store accessors fail per domain:
any driver or validation problem surfaces as `DomainFetchError` so the
builder can drop that domain for that user and carry on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, TypeVar

from pydantic import BaseModel, ValidationError
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from insights_pipeline.db import CONSENT_COLLECTION, ping
from insights_pipeline.errors import DomainFetchError
from insights_pipeline.models import (
    CompoundInterestEvent,
    CounterfeitCheckRecord,
    LabReportRecord,
    ProfileRecord,
    ProtocolLogRecord,
    SideEffectLogRecord,
)

log = logging.getLogger(__name__)

CONSENT_TYPE = "anonymized_insights"

T = TypeVar("T", bound=BaseModel)


@dataclass(frozen=True)
class EligibleIdentity:
    """An identity with active consent.

    Attributes:
        identity: Raw user identifier (never persisted by the pipeline).
        consented_since: When consent was granted.
    """
    identity: str
    consented_since: datetime | None


@dataclass(frozen=True)
class Domain:
    """Where one raw-record domain lives and how it is ordered."""
    name: str
    collection: str
    owner_field: str
    sort_field: str


PROFILE = Domain("profile", "profiles", "_id", "updated_at")
LAB_REPORTS = Domain("lab_reports", "bloodwork_reports", "user_id", "created_at")
PROTOCOL_LOGS = Domain("protocol_logs", "enhanced_protocols", "user_id", "created_at")
SIDE_EFFECT_LOGS = Domain("side_effect_logs", "side_effect_logs", "user_id", "created_at")
COMPOUND_INTEREST = Domain("compound_interest", "compound_interest_events", "user_id", "occurred_at")
COUNTERFEIT_CHECKS = Domain("counterfeit_checks", "counterfeit_checks", "user_id", "created_at")


class MongoConsentRegistry:
    """Lists identities whose insights consent is active."""

    def __init__(self, db: Database[dict[str, Any]]) -> None:
        self._collection = db[CONSENT_COLLECTION]
        self._db = db

    def ping(self) -> None:
        ping(self._db, "consent registry")

    def list_eligible_identities(self) -> list[EligibleIdentity]:
        """Return each consenting identity once.

        Duplicate consent rows for one identity collapse to a single entry
        carrying the earliest known `consented_at`.
        """
        cursor = self._collection.find(
            {"consent_type": CONSENT_TYPE, "revoked_at": None},
            {"_id": False, "user_id": True, "consented_at": True},
        )
        by_identity: dict[str, EligibleIdentity] = {}
        duplicates = 0
        for doc in cursor:
            if doc.get("user_id") is None:
                continue
            identity = str(doc["user_id"])
            since = doc.get("consented_at")
            seen = by_identity.get(identity)
            if seen is not None:
                duplicates += 1
                if seen.consented_since is None or (since is not None and since >= seen.consented_since):
                    continue
            by_identity[identity] = EligibleIdentity(identity=identity, consented_since=since)

        if duplicates:
            log.warning("Consent registry: collapsed %d duplicate consent rows", duplicates)
        out = list(by_identity.values())
        log.info("Consent registry: %d eligible identities", len(out))
        return out


class MongoRecordStore:
    """Per-domain accessors for a user's raw records, newest first."""

    def __init__(self, db: Database[dict[str, Any]]) -> None:
        self._db = db

    def ping(self) -> None:
        ping(self._db, "record store")

    def _fetch(
        self,
        domain: Domain,
        identity: str,
        limit: int,
        parse: Callable[[dict[str, Any]], T],
    ) -> list[T]:
        try:
            cursor = (
                self._db[domain.collection]
                .find({domain.owner_field: identity})
                .sort(domain.sort_field, DESCENDING)
                .limit(limit)
            )
            return [parse(_strip_ids(doc)) for doc in cursor]
        except (PyMongoError, ValidationError) as e:
            raise DomainFetchError(
                f"Failed to read {domain.name}: {type(e).__name__}",
                domain=domain.name,
            ) from e

    def get_profile(self, identity: str) -> ProfileRecord | None:
        rows = self._fetch(PROFILE, identity, 1, ProfileRecord.model_validate)
        return rows[0] if rows else None

    def get_lab_reports(self, identity: str, limit: int) -> list[LabReportRecord]:
        return self._fetch(LAB_REPORTS, identity, limit, LabReportRecord.model_validate)

    def get_protocol_logs(self, identity: str, limit: int) -> list[ProtocolLogRecord]:
        return self._fetch(PROTOCOL_LOGS, identity, limit, ProtocolLogRecord.model_validate)

    def get_side_effect_logs(self, identity: str, limit: int) -> list[SideEffectLogRecord]:
        return self._fetch(SIDE_EFFECT_LOGS, identity, limit, SideEffectLogRecord.model_validate)

    def get_compound_interest_events(self, identity: str, limit: int) -> list[CompoundInterestEvent]:
        return self._fetch(COMPOUND_INTEREST, identity, limit, CompoundInterestEvent.model_validate)

    def get_counterfeit_checks(self, identity: str, limit: int) -> list[CounterfeitCheckRecord]:
        return self._fetch(COUNTERFEIT_CHECKS, identity, limit, CounterfeitCheckRecord.model_validate)


def _strip_ids(doc: dict[str, Any]) -> dict[str, Any]:
    """Drop Mongo's `_id` and any upstream `kind` so the model's tag applies."""
    return {k: v for k, v in doc.items() if k not in ("_id", "kind")}
