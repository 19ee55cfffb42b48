"""Shared data types for fits, priors, predictions and projections."""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass
from typing import Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

UnitSystem = Literal["eu", "us"]
SamplingTiming = Literal["unknown", "trough", "mid", "peak"]
FitStatus = Literal["clear", "insufficient", "flat"]
SamplingMode = Literal["trough", "all"]
ModelType = Literal["linear-ols", "theil-sen", "none"]
PredictionSource = Literal["personal", "hybrid", "study_prior"]
Confidence = Literal["High", "Medium", "Low"]
PriorProvenance = Literal["local", "remote"]

UNIT_SYSTEMS: tuple[str, ...] = ("eu", "us")


class Observation(BaseModel):
    """One dose-linked lab measurement. Rejects invalid values instead of coercing them."""

    model_config = ConfigDict(frozen=True)

    marker: str
    date: dt.date
    dose_mg_per_week: float = Field(validation_alias=AliasChoices("dose_mg_per_week", "doseMgPerWeek"))
    value: float
    unit: str
    sampling_timing: SamplingTiming = Field(
        default="unknown", validation_alias=AliasChoices("sampling_timing", "samplingTiming")
    )

    @field_validator("marker", "unit")
    @classmethod
    def non_empty_text(cls, value: str, info) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError(f"{info.field_name} must not be empty")
        return cleaned

    @field_validator("dose_mg_per_week")
    @classmethod
    def dose_finite_non_negative(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("dose_mg_per_week must be finite")
        if value < 0:
            raise ValueError("dose_mg_per_week must not be negative")
        return value

    @field_validator("value")
    @classmethod
    def value_finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("value must be finite")
        return value


@dataclass(frozen=True)
class ExcludedPoint:
    date: str
    reason: str


@dataclass(frozen=True)
class RegressionFit:
    marker: str
    unit: str
    slope_per_mg: float
    intercept: float
    sample_count: int
    unique_dose_levels: int
    correlation_r: float | None
    r_squared: float
    model_type: ModelType
    status: FitStatus
    status_reason: str
    sampling_mode: SamplingMode
    sampling_warning: str | None
    excluded_points: tuple[ExcludedPoint, ...]
    used_observation_dates: tuple[str, ...]
    current_dose: float
    latest_value: float
    residual_sd: float | None
    mean_value: float
    observed_dose_min: float
    observed_dose_max: float
    trough_sample_count: int
    all_sample_count: int


@dataclass(frozen=True)
class DoseRange:
    min: float
    max: float


@dataclass(frozen=True)
class PriorEvidence:
    citation: str
    study_type: str
    relevance: str
    quality: Literal["high", "medium", "low"]


@dataclass(frozen=True)
class DosePrior:
    marker: str
    unit: str
    unit_system: UnitSystem
    slope_per_mg: float
    intercept: float
    sigma_prior: float
    provenance: PriorProvenance = "local"
    dose_range: DoseRange | None = None
    evidence: tuple[PriorEvidence, ...] = ()


@dataclass(frozen=True)
class BlendDiagnostics:
    w_personal: float
    w_prior: float
    sigma_personal: float | None
    sigma_prior: float
    sigma_residual: float
    offline_prior_fallback: bool
    prior_provenance: PriorProvenance


@dataclass(frozen=True)
class PersonalOnly:
    """No prior contributed weight to the estimate."""

    kind: Literal["personal_only"] = "personal_only"


@dataclass(frozen=True)
class PriorBlend:
    """A prior contributed weight; diagnostics describe exactly how."""

    diagnostics: BlendDiagnostics
    kind: Literal["prior_blend"] = "prior_blend"


PriorContribution = Union[PersonalOnly, PriorBlend]


@dataclass(frozen=True)
class PredictionBand:
    low: float
    high: float


@dataclass(frozen=True)
class DosePrediction:
    marker: str
    unit: str
    current_dose: float
    current_estimate: float
    source: PredictionSource
    confidence: Confidence
    slope_per_mg: float
    intercept: float
    band: PredictionBand | None
    blend: PriorContribution
    status: FitStatus
    status_reason: str
    excluded_points: tuple[ExcludedPoint, ...]
    sample_count: int
    unique_dose_levels: int
    correlation_r: float | None
    r_squared: float
    model_type: str
    sigma_residual: float | None
    observed_dose_min: float
    observed_dose_max: float
    sampling_mode: SamplingMode
    sampling_warning: str | None
    is_api_assisted: bool = False

    @property
    def blend_diagnostics(self) -> BlendDiagnostics | None:
        if isinstance(self.blend, PriorBlend):
            return self.blend.diagnostics
        return None

    @property
    def predicted_low(self) -> float | None:
        return self.band.low if self.band is not None else None

    @property
    def predicted_high(self) -> float | None:
        return self.band.high if self.band is not None else None


@dataclass(frozen=True)
class Projection:
    dose: float
    estimate: float
    low: float | None
    high: float | None
    extrapolation_distance: float


@dataclass(frozen=True)
class RejectedObservation:
    index: int
    marker: str | None
    reason: str


@dataclass(frozen=True)
class QuotaState:
    daily_count: int
    daily_reset_at: dt.datetime
    monthly_count: int
    monthly_reset_at: dt.datetime


@dataclass(frozen=True)
class RemainingAssisted:
    daily_remaining: int
    monthly_remaining: int


@dataclass(frozen=True)
class PredictionSet:
    """Published outcome of one recomputation."""

    predictions: tuple[DosePrediction, ...]
    unit_system: UnitSystem
    loading: bool = False
    offline_prior_fallback: bool = False
    limit_reason: str = ""
    limit_code: str | None = None
    remaining_assisted: RemainingAssisted | None = None
    assisted_markers: tuple[str, ...] = ()
    rejected_observations: tuple[RejectedObservation, ...] = ()
    fingerprint: str | None = None
    superseded: bool = False

    @property
    def api_assisted_count(self) -> int:
        return len(self.assisted_markers)
