"""Pydantic models for the Raw, Contribution and Trend layers.

Raw models describe upstream documents as they are stored and accept any
extra fields. Contribution and Trend models forbid extra fields: they are the
only shapes the pipeline ever writes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

MAX_LIST_ITEMS = 30
MAX_TEXT_LENGTH = 80

AgeBucket = Literal["18_29", "30_39", "40_plus"]
ProtocolAgeBucket = Literal["0_30", "31_90", "91_plus"]


# =========================================================
# RAW LAYER (read-only, owned by the record store)
# =========================================================

class _RawBase(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class ProfileRecord(_RawBase):
    """User profile merged with onboarding answers."""
    kind: Literal["profile"] = "profile"
    age: int | None = None
    sex: str | None = None
    experience_level: str | None = None
    ped_experience_level: str | None = None
    primary_goal: str | None = None


class LabReportRecord(_RawBase):
    """A bloodwork report: named markers mapped to measured values."""
    kind: Literal["lab_report"] = "lab_report"
    markers: dict[str, Any] = Field(default_factory=dict, alias="raw_json")
    report_date: datetime | None = None


class ProtocolLogRecord(_RawBase):
    """A logged supplement/compound protocol."""
    kind: Literal["protocol_log"] = "protocol_log"
    items: list[str] = Field(default_factory=list)
    created_at: datetime


class SideEffectLogRecord(_RawBase):
    kind: Literal["side_effect_log"] = "side_effect_log"
    compounds: list[str] = Field(default_factory=list)
    symptoms: list[str] = Field(default_factory=list)


class CompoundInterestEvent(_RawBase):
    kind: Literal["compound_interest"] = "compound_interest"
    compound: str
    occurred_at: datetime


class CounterfeitCheckRecord(_RawBase):
    kind: Literal["counterfeit_check"] = "counterfeit_check"
    product_type: str | None = None
    flags: list[str] = Field(default_factory=list)


RawRecord = Annotated[
    Union[
        ProfileRecord,
        LabReportRecord,
        ProtocolLogRecord,
        SideEffectLogRecord,
        CompoundInterestEvent,
        CounterfeitCheckRecord,
    ],
    Field(discriminator="kind"),
]


# =========================================================
# CONTRIBUTION LAYER
# =========================================================

class _Generalized(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ProfileBucket(_Generalized):
    """Coarse demographic buckets used as subgroup keys."""
    age_bucket: AgeBucket | None = None
    sex: Literal["male", "female", "other"] | None = None
    experience: str | None = Field(default=None, max_length=MAX_TEXT_LENGTH)
    goal: str | None = Field(default=None, max_length=MAX_TEXT_LENGTH)


class BloodworkSummary(_Generalized):
    """Quarter of the report and each marker's decile range, e.g. "40-49"."""
    period: str | None = Field(default=None, pattern=r"^\d{4}-Q[1-4]$")
    marker_ranges: dict[str, str] = Field(default_factory=dict, max_length=MAX_LIST_ITEMS)


class ProtocolSummary(_Generalized):
    age_bucket: ProtocolAgeBucket
    started_quarter: str = Field(pattern=r"^\d{4}-Q[1-4]$")
    compounds: list[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)


class SideEffectPair(_Generalized):
    compound: str
    symptom: str

    @property
    def key(self) -> str:
        return f"{self.compound}::{self.symptom}"


class CounterfeitSummary(_Generalized):
    product_types: list[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    flags: list[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)


class Contribution(_Generalized):
    """One user's pseudonymized, generalized snapshot.

    Attributes:
        pseudonym: Salted SHA-256 of the user identity (hex).
        profile: Demographic buckets, when a profile was readable.
        bloodwork: Generalized latest lab report.
        protocol: Generalized latest protocol.
        side_effects: (compound, symptom) pairs from recent side-effect logs.
        compound_interest: Compounds the user explored.
        counterfeit: Normalized product types and flags from counterfeit checks.
        contributed_at: Timestamp of the build run that produced it.
    """
    pseudonym: str = Field(pattern=r"^[0-9a-f]{64}$")
    profile: ProfileBucket | None = None
    bloodwork: BloodworkSummary | None = None
    protocol: ProtocolSummary | None = None
    side_effects: list[SideEffectPair] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    compound_interest: list[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    counterfeit: CounterfeitSummary | None = None
    contributed_at: datetime

    def has_data(self) -> bool:
        return any(
            (
                self.profile is not None,
                self.bloodwork is not None,
                self.protocol is not None,
                bool(self.side_effects),
                bool(self.compound_interest),
                self.counterfeit is not None,
            )
        )


# =========================================================
# TREND LAYER
# =========================================================

class TrendRecord(BaseModel):
    """A published population statistic, unique on (category, subgroup, metric, period)."""
    model_config = ConfigDict(extra="forbid")
    category: str
    subgroup: str
    metric: str
    value: dict[str, Any]
    sample_size: int = Field(..., ge=1)
    period: str
    calculated_at: datetime
