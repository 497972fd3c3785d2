"""Build one anonymized contribution per eligible user.

Module notes:
- Each user's fetch → generalize → write is independent and runs as a
  `dask.delayed` task on a bounded thread pool.
- A domain that cannot be read is logged and left out of that user's
  contribution; a user that fails outright is counted and skipped.
- Only an unreachable store stops the pass, before anything is written.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Protocol, Sequence, TypeVar, cast

from dask import delayed, compute  # type: ignore[attr-defined]

from insights_pipeline.anonymize.generalize import (
    as_utc,
    generalize_compound_interest,
    generalize_counterfeit,
    generalize_lab_report,
    generalize_profile,
    generalize_protocol,
    generalize_side_effects,
)
from insights_pipeline.errors import DomainFetchError
from insights_pipeline.ingest.sources import EligibleIdentity
from insights_pipeline.logging_config import short_pseudonym
from insights_pipeline.models import (
    CompoundInterestEvent,
    Contribution,
    CounterfeitCheckRecord,
    LabReportRecord,
    ProfileRecord,
    ProtocolLogRecord,
    SideEffectLogRecord,
)

log = logging.getLogger(__name__)

CADENCE_DAYS = 7

WRITTEN = "written"
SKIPPED = "skipped"
FAILED = "failed"

R = TypeVar("R")


class ConsentRegistry(Protocol):
    def ping(self) -> None: ...
    def list_eligible_identities(self) -> list[EligibleIdentity]: ...


class RecordStore(Protocol):
    def ping(self) -> None: ...
    def get_profile(self, identity: str) -> ProfileRecord | None: ...
    def get_lab_reports(self, identity: str, limit: int) -> list[LabReportRecord]: ...
    def get_protocol_logs(self, identity: str, limit: int) -> list[ProtocolLogRecord]: ...
    def get_side_effect_logs(self, identity: str, limit: int) -> list[SideEffectLogRecord]: ...
    def get_compound_interest_events(self, identity: str, limit: int) -> list[CompoundInterestEvent]: ...
    def get_counterfeit_checks(self, identity: str, limit: int) -> list[CounterfeitCheckRecord]: ...


class ContributionStore(Protocol):
    def ping(self) -> None: ...
    def has_recent_contribution(self, pseudonym: str, within_days: int, as_of: datetime) -> bool: ...
    def write_contribution(self, contribution: Contribution) -> None: ...
    def list_contributions(self, since: datetime, until: datetime) -> list[Contribution]: ...


@dataclass(frozen=True)
class DomainLimits:
    """How many of each user's most recent records are read per domain."""
    lab_reports: int = 1
    protocol_logs: int = 1
    side_effect_logs: int = 5
    compound_interest_events: int = 30
    counterfeit_checks: int = 10


@dataclass(frozen=True)
class BuildResult:
    """Outcome of one builder pass.

    Attributes:
        written: Contributions persisted.
        skipped: Users skipped (contributed this week, no data, consent in the future).
        failed: Users whose build raised unexpectedly.
        domain_failures: Domains dropped because they could not be read.
    """
    written: int = 0
    skipped: int = 0
    failed: int = 0
    domain_failures: int = 0

    @property
    def count(self) -> int:
        return self.written

    @property
    def partial(self) -> bool:
        return self.failed > 0 or self.domain_failures > 0


class ContributionBuilder:
    """Orchestrates the contribution pass over all eligible identities."""

    def __init__(
        self,
        consent_registry: ConsentRegistry,
        record_store: RecordStore,
        contribution_store: ContributionStore,
        pseudonymizer: Callable[[str], str],
        workers: int = 8,
        limits: DomainLimits = DomainLimits(),
    ) -> None:
        self.consent_registry = consent_registry
        self.record_store = record_store
        self.contribution_store = contribution_store
        self.pseudonymize = pseudonymizer
        self.workers = max(1, workers)
        self.limits = limits

    def build_contributions(self, as_of: datetime) -> BuildResult:
        """Run one pass and return the per-outcome counts.

        Raises:
            ConfigError: if a store is unreachable (checked before any write).
        """
        self.consent_registry.ping()
        self.record_store.ping()
        self.contribution_store.ping()

        eligible = self.consent_registry.list_eligible_identities()
        log.info("Building contributions for %d eligible users as of %s", len(eligible), as_of.isoformat())

        tasks = [delayed(self._build_one)(e, as_of) for e in eligible]
        if tasks:
            results = cast(Any, compute)(*tasks, scheduler="threads", num_workers=self.workers)
        else:
            results = ()

        result = BuildResult(
            written=sum(1 for outcome, _ in results if outcome == WRITTEN),
            skipped=sum(1 for outcome, _ in results if outcome == SKIPPED),
            failed=sum(1 for outcome, _ in results if outcome == FAILED),
            domain_failures=sum(n for _, n in results),
        )
        log.info(
            "Contribution pass complete: written=%d skipped=%d failed=%d domain_failures=%d",
            result.written,
            result.skipped,
            result.failed,
            result.domain_failures,
        )
        return result

    def _build_one(self, eligible: EligibleIdentity, as_of: datetime) -> tuple[str, int]:
        """Runs inside a worker thread. Returns ``(outcome, domain_failures)``."""
        since = eligible.consented_since
        if since is not None and as_utc(since) > as_utc(as_of):
            return SKIPPED, 0

        pseudonym = self.pseudonymize(eligible.identity)
        tag = short_pseudonym(pseudonym)
        try:
            if self.contribution_store.has_recent_contribution(pseudonym, CADENCE_DAYS, as_of):
                log.debug("Pseudonym %s contributed within %d days; skipping", tag, CADENCE_DAYS)
                return SKIPPED, 0

            contribution, failures = self.assemble(eligible.identity, pseudonym, as_of)
            if not contribution.has_data():
                log.debug("Pseudonym %s has no usable records; skipping", tag)
                return SKIPPED, failures

            self.contribution_store.write_contribution(contribution)
            return WRITTEN, failures
        except Exception:
            log.exception("Contribution build failed for pseudonym %s", tag)
            return FAILED, 0

    def assemble(self, identity: str, pseudonym: str, as_of: datetime) -> tuple[Contribution, int]:
        """Fetch every domain independently and merge the generalized fields."""
        store = self.record_store
        limits = self.limits
        failures = 0

        def fetch(domain: str, fn: Callable[[], R]) -> Optional[R]:
            nonlocal failures
            try:
                return fn()
            except DomainFetchError as e:
                failures += 1
                log.warning(
                    "Domain %s unavailable for pseudonym %s: %s",
                    e.domain or domain,
                    short_pseudonym(pseudonym),
                    e.message,
                )
                return None

        profile = fetch("profile", lambda: store.get_profile(identity))
        labs = fetch("lab_reports", lambda: store.get_lab_reports(identity, limits.lab_reports))
        protocols = fetch("protocol_logs", lambda: store.get_protocol_logs(identity, limits.protocol_logs))
        side_effects = fetch(
            "side_effect_logs", lambda: store.get_side_effect_logs(identity, limits.side_effect_logs)
        )
        interest = fetch(
            "compound_interest",
            lambda: store.get_compound_interest_events(identity, limits.compound_interest_events),
        )
        counterfeit = fetch(
            "counterfeit_checks", lambda: store.get_counterfeit_checks(identity, limits.counterfeit_checks)
        )

        contribution = Contribution(
            pseudonym=pseudonym,
            profile=generalize_profile(profile) if profile else None,
            bloodwork=generalize_lab_report(labs[0]) if labs else None,
            protocol=generalize_protocol(protocols[0], as_of) if protocols else None,
            side_effects=generalize_side_effects(_or_empty(side_effects)),
            compound_interest=generalize_compound_interest(_or_empty(interest)),
            counterfeit=generalize_counterfeit(_or_empty(counterfeit)),
            contributed_at=as_of,
        )
        return contribution, failures


def _or_empty(records: Optional[Sequence[Any]]) -> Sequence[Any]:
    return records or ()
