"""Trend aggregation functions.

Functions in this module build Trend-layer tables from contributions. They
are pure: input is a pandas DataFrame from `contributions_frame`, output is a
DataFrame with the `TREND_COLUMNS` schema. Nothing here touches MongoDB.

Expectations:
- One row per distinct pseudonym (the latest contribution in the window), so
  member counts and row counts coincide.
- Subgroups below their cohort floor never appear in the output.
- Output order is deterministic (sorted by category, subgroup, metric).
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Sequence

import numpy as np
import pandas as pd

from insights_pipeline.anonymize.generalize import range_midpoint
from insights_pipeline.errors import InsufficientCohortError
from insights_pipeline.models import Contribution

log = logging.getLogger(__name__)

TREND_COLUMNS = ["category", "subgroup", "metric", "value", "sample_size", "period"]

GLOBAL_FLOOR = 10
FLAG_TOP_N = 20

# Minimum distinct contributors per subgroup before a statistic is published.
COHORT_FLOORS: dict[str, int] = {
    "bloodwork_by_experience": 10,
    "bloodwork_by_age": 5,
    "bloodwork_by_goal": 5,
    "protocols": 10,
    "compound_interest": 5,
    "side_effects": 5,
    "counterfeit_product_type": 3,
    "counterfeit_flags": 3,
}


def period_label(window: timedelta) -> str:
    return f"last_{window.days}_days"


def empty_trends() -> pd.DataFrame:
    return pd.DataFrame(columns=TREND_COLUMNS)


# =========================================================
# INPUT SHAPING
# =========================================================

def contributions_frame(contributions: Sequence[Contribution]) -> pd.DataFrame:
    """Flatten contributions into one row each.

    Returns:
        DataFrame with columns `pseudonym`, `contributed_at`, `experience`,
        `age_bucket`, `goal`, `marker_ranges` (dict), `protocol_age_bucket`,
        `compound_interest`, `side_effects`, `product_types`, `flags` (lists).
    """
    rows: list[dict[str, Any]] = []
    for c in contributions:
        profile = c.profile
        rows.append(
            {
                "pseudonym": c.pseudonym,
                "contributed_at": c.contributed_at,
                "experience": profile.experience if profile else None,
                "age_bucket": profile.age_bucket if profile else None,
                "goal": profile.goal if profile else None,
                "marker_ranges": dict(c.bloodwork.marker_ranges) if c.bloodwork else {},
                "protocol_age_bucket": c.protocol.age_bucket if c.protocol else None,
                "compound_interest": list(c.compound_interest),
                "side_effects": [p.key for p in c.side_effects],
                "product_types": list(c.counterfeit.product_types) if c.counterfeit else [],
                "flags": list(c.counterfeit.flags) if c.counterfeit else [],
            }
        )
    return pd.DataFrame(
        rows,
        columns=[
            "pseudonym",
            "contributed_at",
            "experience",
            "age_bucket",
            "goal",
            "marker_ranges",
            "protocol_age_bucket",
            "compound_interest",
            "side_effects",
            "product_types",
            "flags",
        ],
    )


def latest_per_pseudonym(df: pd.DataFrame) -> pd.DataFrame:
    """Keep only each pseudonym's most recent contribution."""
    if df.empty:
        return df
    return (
        df.sort_values(["contributed_at", "pseudonym"], kind="mergesort")
        .drop_duplicates(subset="pseudonym", keep="last")
        .reset_index(drop=True)
    )


# =========================================================
# BLOODWORK
# =========================================================

def bloodwork_trends(
    df: pd.DataFrame,
    key_column: str,
    category: str,
    subgroup_format: str,
    period: str,
    min_size: int | None = None,
) -> pd.DataFrame:
    """Per-marker average of bucket midpoints within each subgroup.

    Each range contributes its midpoint (start + 5): a biased but bounded
    approximation, not a reconstruction of true values. A marker is
    published only if both the subgroup and the marker's reporters within it
    reach the floor.

    Args:
        df: Output of `contributions_frame` (one row per pseudonym).
        key_column: Column holding the subgroup key (e.g. `experience`).
        category: Trend category name.
        subgroup_format: Format string applied to the key, e.g. "age_{}".
        period: Period label for the rows.
        min_size: Cohort floor; defaults to `COHORT_FLOORS[category]`.

    Returns:
        DataFrame with `TREND_COLUMNS`; `value` is
        ``{"average": int, "unit": "approximate"}``.
    """
    floor = COHORT_FLOORS[category] if min_size is None else min_size
    x = df[df[key_column].notna() & df["marker_ranges"].map(bool)]
    if x.empty:
        return empty_trends()

    members = x.groupby(key_column)["pseudonym"].nunique()
    keep = members[members >= floor].index
    if len(keep) < len(members):
        log.debug("%s: suppressed %d subgroups below %d", category, len(members) - len(keep), floor)
    x = x[x[key_column].isin(keep)]
    if x.empty:
        return empty_trends()

    long = pd.DataFrame(
        [
            (key, pseudonym, marker, range_midpoint(rng))
            for key, pseudonym, ranges in zip(x[key_column], x["pseudonym"], x["marker_ranges"])
            for marker, rng in ranges.items()
        ],
        columns=["key", "pseudonym", "marker", "estimate"],
    )
    agg = (
        long.groupby(["key", "marker"])
        .agg(total=("estimate", "sum"), reporters=("pseudonym", "nunique"))
        .reset_index()
    )
    agg = agg[agg["reporters"] >= floor]

    rows = [
        {
            "category": category,
            "subgroup": subgroup_format.format(key),
            "metric": f"{marker}_average_range",
            "value": {"average": int(np.floor(total / reporters + 0.5)), "unit": "approximate"},
            "sample_size": int(reporters),
            "period": period,
        }
        for key, marker, total, reporters in agg[["key", "marker", "total", "reporters"]].itertuples(
            index=False, name=None
        )
    ]
    return pd.DataFrame(rows, columns=TREND_COLUMNS)


# =========================================================
# FREQUENCY / CO-OCCURRENCE
# =========================================================

def frequency_trends(
    df: pd.DataFrame,
    column: str,
    category: str,
    metric: str,
    period: str,
    min_size: int | None = None,
    top_n: int | None = None,
) -> pd.DataFrame:
    """Count distinct contributors per value of `column`.

    `column` may hold scalars or lists; lists are exploded so each member
    counts once per distinct value it carries.

    Args:
        df: Output of `contributions_frame`.
        column: Column whose values are the subgroups.
        category: Trend category name.
        metric: Metric name for the rows.
        period: Period label for the rows.
        min_size: Cohort floor; defaults to `COHORT_FLOORS[category]`.
        top_n: Keep only the N most frequent subgroups (after the floor).

    Returns:
        DataFrame with `TREND_COLUMNS`; `value` is ``{"count": int}``.
    """
    floor = COHORT_FLOORS[category] if min_size is None else min_size
    x = df[["pseudonym", column]].explode(column)
    x = x[x[column].notna()]
    if x.empty:
        return empty_trends()

    counts = (
        x.groupby(column)["pseudonym"]
        .nunique()
        .reset_index()
        .rename(columns={column: "subgroup", "pseudonym": "count"})
    )
    suppressed = int((counts["count"] < floor).sum())
    if suppressed:
        log.debug("%s: suppressed %d subgroups below %d", category, suppressed, floor)
    counts = counts[counts["count"] >= floor]
    counts = counts.sort_values(["count", "subgroup"], ascending=[False, True], kind="mergesort")
    if top_n is not None:
        counts = counts.head(top_n)

    rows = [
        {
            "category": category,
            "subgroup": str(subgroup),
            "metric": metric,
            "value": {"count": int(count)},
            "sample_size": int(count),
            "period": period,
        }
        for subgroup, count in counts[["subgroup", "count"]].itertuples(index=False, name=None)
    ]
    return pd.DataFrame(rows, columns=TREND_COLUMNS)


# =========================================================
# ALL CATEGORIES
# =========================================================

def compute_trends(
    contributions: Sequence[Contribution],
    window: timedelta,
    global_floor: int = GLOBAL_FLOOR,
) -> pd.DataFrame:
    """Compute every category's surviving trends for one window.

    Raises:
        InsufficientCohortError: if fewer than `global_floor` distinct
            pseudonyms contributed in the window.
    """
    df = latest_per_pseudonym(contributions_frame(contributions))
    if len(df) < global_floor:
        raise InsufficientCohortError(len(df), global_floor)

    period = period_label(window)
    parts = [
        bloodwork_trends(df, "experience", "bloodwork_by_experience", "{}_experience", period),
        bloodwork_trends(df, "age_bucket", "bloodwork_by_age", "age_{}", period),
        bloodwork_trends(df, "goal", "bloodwork_by_goal", "goal_{}", period),
        frequency_trends(df, "protocol_age_bucket", "protocols", "protocol_age_distribution", period),
        frequency_trends(df, "compound_interest", "compound_interest", "exploration_count", period),
        frequency_trends(df, "side_effects", "side_effects", "report_count", period),
        frequency_trends(df, "product_types", "counterfeit_product_type", "check_count", period),
        frequency_trends(df, "flags", "counterfeit_flags", "flag_count", period, top_n=FLAG_TOP_N),
    ]
    parts = [p for p in parts if not p.empty]
    if not parts:
        return empty_trends()

    out = pd.concat(parts, ignore_index=True)
    return out.sort_values(["category", "subgroup", "metric"], kind="mergesort").reset_index(drop=True)
