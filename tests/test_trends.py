from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from insights_pipeline.aggregate.build_trends import (
    TREND_COLUMNS,
    compute_trends,
    contributions_frame,
    frequency_trends,
    latest_per_pseudonym,
    period_label,
)
from insights_pipeline.errors import InsufficientCohortError
from insights_pipeline.models import (
    BloodworkSummary,
    CounterfeitSummary,
    ProfileBucket,
    ProtocolSummary,
    SideEffectPair,
)

WINDOW = timedelta(days=90)
T0 = datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc)


def _rows(df: pd.DataFrame, category: str) -> dict[str, dict]:
    sub = df[df["category"] == category]
    return {r["subgroup"]: r for r in sub.to_dict("records")}


def _interest_population(make_contribution, a: int, b: int) -> list:
    out = [make_contribution(f"a{i}", compound_interest=["Compound A"]) for i in range(a)]
    out += [make_contribution(f"b{i}", compound_interest=["Compound B"]) for i in range(b)]
    return out


def test_period_label() -> None:
    assert period_label(WINDOW) == "last_90_days"


def test_small_subgroup_is_suppressed_large_one_published(make_contribution) -> None:
    trends = compute_trends(_interest_population(make_contribution, 6, 4), WINDOW)
    rows = _rows(trends, "compound_interest")

    assert set(rows) == {"Compound A"}
    assert rows["Compound A"]["value"] == {"count": 6}
    assert rows["Compound A"]["sample_size"] == 6
    assert rows["Compound A"]["metric"] == "exploration_count"
    assert rows["Compound A"]["period"] == "last_90_days"


@pytest.mark.parametrize("b,published", [(4, False), (5, True)])
def test_compound_interest_floor_boundary(make_contribution, b: int, published: bool) -> None:
    trends = compute_trends(_interest_population(make_contribution, 6, b), WINDOW)
    assert ("Compound B" in _rows(trends, "compound_interest")) is published


def test_experience_subgroup_published_while_small_age_bucket_is_not(make_contribution) -> None:
    population = [
        make_contribution(
            f"u{i}",
            profile=ProfileBucket(experience="beginner", age_bucket="40_plus" if i < 4 else "30_39"),
            bloodwork=BloodworkSummary(period="2024-Q2", marker_ranges={"ldl": "40-49"}),
        )
        for i in range(12)
    ]
    trends = compute_trends(population, WINDOW)

    by_experience = _rows(trends, "bloodwork_by_experience")
    assert set(by_experience) == {"beginner_experience"}
    row = by_experience["beginner_experience"]
    assert row["metric"] == "ldl_average_range"
    assert row["sample_size"] == 12
    assert row["value"] == {"average": 45, "unit": "approximate"}

    by_age = _rows(trends, "bloodwork_by_age")
    assert "age_40_plus" not in by_age
    assert by_age["age_30_39"]["sample_size"] == 8


def test_bloodwork_average_uses_range_midpoints(make_contribution) -> None:
    ranges = ["40-49"] * 5 + ["60-69"] * 5
    population = [
        make_contribution(
            f"u{i}",
            profile=ProfileBucket(experience="advanced", goal="fat_loss"),
            bloodwork=BloodworkSummary(marker_ranges={"hdl": rng}),
        )
        for i, rng in enumerate(ranges)
    ]
    trends = compute_trends(population, WINDOW)
    assert _rows(trends, "bloodwork_by_experience")["advanced_experience"]["value"]["average"] == 55
    assert _rows(trends, "bloodwork_by_goal")["goal_fat_loss"]["sample_size"] == 10


def test_marker_with_too_few_reporters_is_suppressed(make_contribution) -> None:
    population = [
        make_contribution(
            f"u{i}",
            profile=ProfileBucket(experience="beginner"),
            bloodwork=BloodworkSummary(
                marker_ranges={"ldl": "120-129", **({"estradiol": "20-29"} if i < 3 else {})}
            ),
        )
        for i in range(10)
    ]
    trends = compute_trends(population, WINDOW)
    metrics = set(trends[trends["category"] == "bloodwork_by_experience"]["metric"])
    assert metrics == {"ldl_average_range"}


def test_side_effect_pairs_use_compound_symptom_subgroups(make_contribution) -> None:
    pair = SideEffectPair(compound="Compound A", symptom="acne")
    population = [make_contribution(f"s{i}", side_effects=[pair]) for i in range(5)]
    population += [make_contribution(f"x{i}", compound_interest=["Compound C"]) for i in range(5)]
    rows = _rows(compute_trends(population, WINDOW), "side_effects")
    assert rows["Compound A::acne"]["value"] == {"count": 5}


def test_protocols_need_ten_members(make_contribution) -> None:
    population = [
        make_contribution(
            f"p{i}",
            protocol=ProtocolSummary(age_bucket="0_30" if i < 10 else "91_plus", started_quarter="2024-Q2"),
        )
        for i in range(14)
    ]
    rows = _rows(compute_trends(population, WINDOW), "protocols")
    assert set(rows) == {"0_30"}
    assert rows["0_30"]["metric"] == "protocol_age_distribution"


def test_counterfeit_flags_keep_top_twenty(make_contribution) -> None:
    flags = [f"flag_{i:02d}" for i in range(25)]
    population = [
        make_contribution(f"c{i}", counterfeit=CounterfeitSummary(product_types=["vial"], flags=flags))
        for i in range(10)
    ]
    trends = compute_trends(population, WINDOW)
    flag_rows = _rows(trends, "counterfeit_flags")
    assert sorted(flag_rows) == flags[:20]
    assert _rows(trends, "counterfeit_product_type")["vial"]["sample_size"] == 10


def test_frequency_trends_orders_by_count_then_name(make_contribution) -> None:
    population = [make_contribution(f"a{i}", compound_interest=["Zeta", "Alpha"]) for i in range(6)]
    population += [make_contribution(f"b{i}", compound_interest=["Beta"]) for i in range(7)]
    df = contributions_frame(population)
    out = frequency_trends(df, "compound_interest", "compound_interest", "exploration_count", "last_90_days")
    assert list(out["subgroup"]) == ["Beta", "Alpha", "Zeta"]
    assert list(out.columns) == TREND_COLUMNS


def test_only_latest_contribution_per_pseudonym_counts(make_contribution) -> None:
    population = [make_contribution(f"u{i}", compound_interest=["Compound A"]) for i in range(10)]
    population += [
        make_contribution(f"u{i}", contributed_at=T0 - timedelta(days=10), compound_interest=["Compound Z"])
        for i in range(5)
    ]
    df = latest_per_pseudonym(contributions_frame(population))
    assert len(df) == 10

    rows = _rows(compute_trends(population, WINDOW), "compound_interest")
    assert "Compound Z" not in rows
    assert rows["Compound A"]["sample_size"] == 10


def test_global_floor_counts_distinct_pseudonyms(make_contribution) -> None:
    population = [make_contribution(f"u{i}", compound_interest=["Compound A"]) for i in range(9)]
    population.append(
        make_contribution("u0", contributed_at=T0 - timedelta(days=1), compound_interest=["Compound A"])
    )
    with pytest.raises(InsufficientCohortError) as exc:
        compute_trends(population, WINDOW)
    assert exc.value.contributors == 9
    assert exc.value.floor == 10


def test_no_contributions_is_insufficient() -> None:
    with pytest.raises(InsufficientCohortError):
        compute_trends([], WINDOW)


def test_trends_are_deterministic(make_contribution) -> None:
    population = _interest_population(make_contribution, 6, 5)
    first = compute_trends(population, WINDOW)
    second = compute_trends(list(reversed(population)), WINDOW)
    pd.testing.assert_frame_equal(first, second)


def test_no_published_row_is_below_its_floor(make_contribution) -> None:
    population = [
        make_contribution(
            f"m{i}",
            profile=ProfileBucket(age_bucket="18_29", experience="beginner", goal="bulk"),
            bloodwork=BloodworkSummary(marker_ranges={"ldl": "100-109", "hdl": "50-59"}),
            compound_interest=["Compound A"] if i % 2 else ["Compound B", "Compound C"],
            counterfeit=CounterfeitSummary(flags=["bad_print"]),
        )
        for i in range(11)
    ]
    trends = compute_trends(population, WINDOW)
    assert not trends.empty
    assert (trends["sample_size"] >= 3).all()
    assert (trends[trends["category"] == "compound_interest"]["sample_size"] >= 5).all()


def test_bloodwork_average_rounds_half_up(make_contribution) -> None:
    ranges = ["40-49"] * 5 + ["60-69"] * 3
    population = [
        make_contribution(
            f"h{i}",
            profile=ProfileBucket(age_bucket="30_39"),
            bloodwork=BloodworkSummary(marker_ranges={"hdl": rng}),
        )
        for i, rng in enumerate(ranges)
    ]
    population += [make_contribution(f"f{i}", compound_interest=["Compound A"]) for i in range(2)]

    row = _rows(compute_trends(population, WINDOW), "bloodwork_by_age")["age_30_39"]
    assert row["value"] == {"average": 53, "unit": "approximate"}
    assert row["sample_size"] == 8
