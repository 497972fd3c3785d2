"""Generalization of raw records into contribution fields.

Each `generalize_*` function is pure and builds its output field by field
from the raw model. Nothing is copied wholesale, so a field that appears
upstream without a rule here never reaches a contribution.

Rules:
- numeric values → decile range ``"{start}-{start+9}"`` with
  ``start = floor(v / 10) * 10``
- dates → calendar quarter ``"YYYY-Qn"``
- age → ``18_29`` / ``30_39`` / ``40_plus``
- protocol age → ``0_30`` / ``31_90`` / ``91_plus`` days
- free text → lower-case, whitespace runs → ``_``, at most 80 characters
- vocabulary lists (compounds, symptoms) → verbatim, deduplicated, at most 30
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from numbers import Real
from typing import Any, Iterable, Optional, Sequence

from insights_pipeline.models import (
    MAX_LIST_ITEMS,
    MAX_TEXT_LENGTH,
    BloodworkSummary,
    CompoundInterestEvent,
    CounterfeitCheckRecord,
    CounterfeitSummary,
    LabReportRecord,
    ProfileBucket,
    ProfileRecord,
    ProtocolLogRecord,
    ProtocolSummary,
    SideEffectLogRecord,
    SideEffectPair,
)

BUCKET_WIDTH = 10
RANGE_RE = re.compile(r"^(-?\d+)-(-?\d+)$")
WHITESPACE_RE = re.compile(r"\s+")
ALLOWED_SEX = {"male", "female", "other"}


# ---------------------------------------------------------
# Primitive rules
# ---------------------------------------------------------

def bucket_start(value: float) -> int:
    return int(math.floor(value / BUCKET_WIDTH)) * BUCKET_WIDTH


def bucket_range(value: float) -> str:
    """Return the decile range containing `value`, e.g. 47 → "40-49"."""
    start = bucket_start(value)
    return f"{start}-{start + BUCKET_WIDTH - 1}"


def range_midpoint(range_str: str) -> float:
    """Midpoint estimator of a bucketed range: start + 5.

    Raises:
        ValueError: if `range_str` is not a range produced by `bucket_range`.
    """
    m = RANGE_RE.match(range_str)
    if not m:
        raise ValueError(f"Not a marker range: {range_str!r}")
    return int(m.group(1)) + BUCKET_WIDTH / 2


def quarter_of(dt: datetime) -> str:
    return f"{dt.year}-Q{(dt.month - 1) // 3 + 1}"


def age_bucket(age: Optional[int]) -> Optional[str]:
    if age is None:
        return None
    if age >= 40:
        return "40_plus"
    if age >= 30:
        return "30_39"
    return "18_29"


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def protocol_age_bucket(created_at: datetime, as_of: datetime) -> str:
    """Bucket the number of days between protocol creation and `as_of`."""
    days = max(0, (as_utc(as_of) - as_utc(created_at)).days)
    if days <= 30:
        return "0_30"
    if days <= 90:
        return "31_90"
    return "91_plus"


def normalize_text(value: Any) -> Optional[str]:
    """Lower-case, collapse whitespace to underscores and truncate.

    Returns:
        The normalized string, or None when nothing is left.
    """
    if value is None:
        return None
    text = WHITESPACE_RE.sub("_", str(value).strip().lower())
    text = text[:MAX_TEXT_LENGTH]
    return text or None


def capped(items: Iterable[Any], normalize: bool = False) -> list[str]:
    """Deduplicate (first occurrence wins), drop blanks, keep at most 30."""
    out: list[str] = []
    seen: set[str] = set()
    for item in items:
        if item is None:
            continue
        value = normalize_text(item) if normalize else str(item).strip()
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
        if len(out) >= MAX_LIST_ITEMS:
            break
    return out


def _is_measurement(value: Any) -> bool:
    return (
        isinstance(value, Real)
        and not isinstance(value, bool)
        and math.isfinite(float(value))
    )


# ---------------------------------------------------------
# Per-domain generalizers
# ---------------------------------------------------------

def generalize_profile(record: ProfileRecord) -> Optional[ProfileBucket]:
    sex = normalize_text(record.sex)
    bucket = ProfileBucket(
        age_bucket=age_bucket(record.age),
        sex=sex if sex in ALLOWED_SEX else None,
        experience=normalize_text(record.ped_experience_level or record.experience_level),
        goal=normalize_text(record.primary_goal),
    )
    if bucket == ProfileBucket():
        return None
    return bucket


def generalize_lab_report(record: LabReportRecord) -> Optional[BloodworkSummary]:
    """Map each numeric marker to its decile range.

    Non-numeric, boolean and non-finite values are dropped. Marker names are
    normalized; when two names normalize to the same key the first one (in
    sorted order) wins.
    """
    ranges: dict[str, str] = {}
    for name in sorted(record.markers):
        value = record.markers[name]
        key = normalize_text(name)
        if key is None or key in ranges or not _is_measurement(value):
            continue
        ranges[key] = bucket_range(float(value))
        if len(ranges) >= MAX_LIST_ITEMS:
            break

    if not ranges:
        return None

    return BloodworkSummary(
        period=quarter_of(record.report_date) if record.report_date else None,
        marker_ranges=ranges,
    )


def generalize_protocol(record: ProtocolLogRecord, as_of: datetime) -> ProtocolSummary:
    return ProtocolSummary(
        age_bucket=protocol_age_bucket(record.created_at, as_of),
        started_quarter=quarter_of(record.created_at),
        compounds=capped(record.items),
    )


def generalize_side_effects(records: Sequence[SideEffectLogRecord]) -> list[SideEffectPair]:
    pairs: list[SideEffectPair] = []
    seen: set[tuple[str, str]] = set()
    for rec in records:
        for compound in capped(rec.compounds):
            for symptom in capped(rec.symptoms):
                if (compound, symptom) in seen:
                    continue
                seen.add((compound, symptom))
                pairs.append(SideEffectPair(compound=compound, symptom=symptom))
                if len(pairs) >= MAX_LIST_ITEMS:
                    return pairs
    return pairs


def generalize_compound_interest(events: Sequence[CompoundInterestEvent]) -> list[str]:
    return capped(e.compound for e in events)


def generalize_counterfeit(records: Sequence[CounterfeitCheckRecord]) -> Optional[CounterfeitSummary]:
    product_types = capped((r.product_type for r in records), normalize=True)
    flags = capped((f for r in records for f in r.flags), normalize=True)
    if not product_types and not flags:
        return None
    return CounterfeitSummary(product_types=product_types, flags=flags)
