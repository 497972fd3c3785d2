from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import TypeAdapter, ValidationError

from insights_pipeline.models import (
    BloodworkSummary,
    Contribution,
    LabReportRecord,
    ProfileBucket,
    RawRecord,
    TrendRecord,
)

NOW = datetime(2024, 5, 6, tzinfo=timezone.utc)
PSEUDONYM = "ab" * 32


def test_raw_records_dispatch_on_kind() -> None:
    adapter = TypeAdapter(RawRecord)
    rec = adapter.validate_python({"kind": "lab_report", "raw_json": {"ldl": 120}, "vendor": "x"})
    assert isinstance(rec, LabReportRecord)
    assert rec.markers == {"ldl": 120}


def test_raw_records_keep_unknown_upstream_fields() -> None:
    rec = LabReportRecord.model_validate({"markers": {}, "new_upstream_field": "value"})
    assert rec.model_extra == {"new_upstream_field": "value"}


def test_contribution_validates() -> None:
    c = Contribution(
        pseudonym=PSEUDONYM,
        profile=ProfileBucket(age_bucket="40_plus"),
        bloodwork=BloodworkSummary(period="2024-Q2", marker_ranges={"ldl": "120-129"}),
        compound_interest=["Compound A"],
        contributed_at=NOW,
    )
    assert c.has_data()


def test_contribution_rejects_unknown_fields() -> None:
    with pytest.raises(ValidationError):
        Contribution.model_validate({"pseudonym": PSEUDONYM, "contributed_at": NOW, "email": "a@b.c"})


def test_contribution_rejects_day_granularity_period() -> None:
    with pytest.raises(ValidationError):
        BloodworkSummary(period="2024-02-14", marker_ranges={})


def test_contribution_rejects_raw_identity_as_pseudonym() -> None:
    with pytest.raises(ValidationError):
        Contribution(pseudonym="user-1", contributed_at=NOW)


def test_contribution_rejects_oversized_lists() -> None:
    with pytest.raises(ValidationError):
        Contribution(pseudonym=PSEUDONYM, compound_interest=[f"c{i}" for i in range(31)], contributed_at=NOW)


def test_contribution_is_immutable() -> None:
    c = Contribution(pseudonym=PSEUDONYM, contributed_at=NOW)
    with pytest.raises(ValidationError):
        c.compound_interest = ["x"]  # type: ignore[misc]


def test_trend_record_requires_positive_sample_size() -> None:
    base = {
        "category": "compound_interest",
        "subgroup": "Compound A",
        "metric": "exploration_count",
        "value": {"count": 6},
        "period": "last_90_days",
        "calculated_at": NOW,
    }
    TrendRecord.model_validate({**base, "sample_size": 6})
    with pytest.raises(ValidationError):
        TrendRecord.model_validate({**base, "sample_size": 0})
