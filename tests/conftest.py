from __future__ import annotations

import hashlib
import threading
from datetime import datetime, timedelta, timezone
from typing import Any

import pandas as pd
import pytest

from insights_pipeline.aggregate.load_trends import trend_records
from insights_pipeline.anonymize.pseudonym import Pseudonymizer
from insights_pipeline.config import get_settings
from insights_pipeline.errors import ConfigError, DomainFetchError
from insights_pipeline.ingest.sources import EligibleIdentity
from insights_pipeline.models import (
    CompoundInterestEvent,
    Contribution,
    CounterfeitCheckRecord,
    LabReportRecord,
    ProfileRecord,
    ProtocolLogRecord,
    SideEffectLogRecord,
)

TEST_SALT = "test-salt-0123456789abcdef0123456789abcdef"
T0 = datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def anon_salt(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ANON_SALT", TEST_SALT)
    get_settings.cache_clear()
    yield TEST_SALT
    get_settings.cache_clear()


@pytest.fixture
def pseudonymizer() -> Pseudonymizer:
    return Pseudonymizer(TEST_SALT)


class FakeConsentRegistry:
    def __init__(self, identities: list[str] | None = None, consented_since: datetime | None = None) -> None:
        self.entries = [EligibleIdentity(i, consented_since) for i in (identities or [])]
        self.reachable = True

    def ping(self) -> None:
        if not self.reachable:
            raise ConfigError("consent registry is unreachable")

    def list_eligible_identities(self) -> list[EligibleIdentity]:
        return list(self.entries)

    def grant(self, *identities: str, since: datetime | None = None) -> None:
        self.entries.extend(EligibleIdentity(i, since) for i in identities)


class FakeRecordStore:
    """Records keyed by (domain, identity); domains in `failing` raise."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], list[Any]] = {}
        self.failing: set[str] = set()
        self.exploding: set[str] = set()
        self.reachable = True

    def ping(self) -> None:
        if not self.reachable:
            raise ConfigError("record store is unreachable")

    def _get(self, domain: str, identity: str, limit: int) -> list[Any]:
        if identity in self.exploding:
            raise RuntimeError("boom")
        if domain in self.failing:
            raise DomainFetchError(f"Failed to read {domain}", domain=domain)
        return self.records.get((domain, identity), [])[:limit]

    def add(self, domain: str, identity: str, *records: Any) -> None:
        self.records.setdefault((domain, identity), []).extend(records)

    def get_profile(self, identity: str) -> ProfileRecord | None:
        rows = self._get("profile", identity, 1)
        return rows[0] if rows else None

    def get_lab_reports(self, identity: str, limit: int) -> list[LabReportRecord]:
        return self._get("lab_reports", identity, limit)

    def get_protocol_logs(self, identity: str, limit: int) -> list[ProtocolLogRecord]:
        return self._get("protocol_logs", identity, limit)

    def get_side_effect_logs(self, identity: str, limit: int) -> list[SideEffectLogRecord]:
        return self._get("side_effect_logs", identity, limit)

    def get_compound_interest_events(self, identity: str, limit: int) -> list[CompoundInterestEvent]:
        return self._get("compound_interest", identity, limit)

    def get_counterfeit_checks(self, identity: str, limit: int) -> list[CounterfeitCheckRecord]:
        return self._get("counterfeit_checks", identity, limit)


class FakeContributionStore:
    def __init__(self) -> None:
        self.contributions: list[Contribution] = []
        self.reachable = True
        self._lock = threading.Lock()

    def ping(self) -> None:
        if not self.reachable:
            raise ConfigError("contribution store is unreachable")

    def has_recent_contribution(self, pseudonym: str, within_days: int, as_of: datetime) -> bool:
        cutoff = as_of - timedelta(days=within_days)
        return any(c.pseudonym == pseudonym and c.contributed_at > cutoff for c in self.contributions)

    def write_contribution(self, contribution: Contribution) -> None:
        with self._lock:
            self.contributions.append(contribution)

    def list_contributions(self, since: datetime, until: datetime) -> list[Contribution]:
        return [c for c in self.contributions if since < c.contributed_at <= until]


class FakeTrendStore:
    """Dict keyed by (category, subgroup, metric, period): one row per key."""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, str, str, str], dict[str, Any]] = {}
        self.writes = 0

    def upsert_trend(self, category, subgroup, metric, value, sample_size, period, calculated_at) -> None:
        self.writes += 1
        self.rows[(category, subgroup, metric, period)] = {
            "value": value,
            "sample_size": sample_size,
            "calculated_at": calculated_at,
        }

    def upsert_trends(self, trends: pd.DataFrame, calculated_at: datetime) -> int:
        records = trend_records(trends, calculated_at)
        for r in records:
            self.upsert_trend(r.category, r.subgroup, r.metric, r.value, r.sample_size, r.period, r.calculated_at)
        return len(records)

    def retract_stale(self, period: str, calculated_at: datetime) -> int:
        stale = [k for k, row in self.rows.items() if k[3] == period and row["calculated_at"] != calculated_at]
        for k in stale:
            del self.rows[k]
        return len(stale)


@pytest.fixture
def consent() -> FakeConsentRegistry:
    return FakeConsentRegistry()


@pytest.fixture
def records() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
def contributions() -> FakeContributionStore:
    return FakeContributionStore()


@pytest.fixture
def trends() -> FakeTrendStore:
    return FakeTrendStore()


@pytest.fixture
def make_contribution():
    """Factory for contributions with a pseudonym derived from `seed`."""

    def _make(seed: str, contributed_at: datetime = T0, **fields: Any) -> Contribution:
        pseudonym = hashlib.sha256(seed.encode("utf-8")).hexdigest()
        return Contribution(pseudonym=pseudonym, contributed_at=contributed_at, **fields)

    return _make
