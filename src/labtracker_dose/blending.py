"""Precision-weighted blending of personal fits with population priors.

Normal-Normal update on the regression line: the personal fit and the prior
are each treated as a Gaussian estimate of the same line, and the weights are
their relative precisions. With little personal data the prior dominates;
as the personal sample grows its precision grows and ``w_personal -> 1``.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Collection, Iterable

from .config import EnginePolicy
from .local_priors import prior_key
from .models import (
    BlendDiagnostics,
    DosePrediction,
    DosePrior,
    PersonalOnly,
    PredictionBand,
    PriorBlend,
    PriorContribution,
    RegressionFit,
)
from .regression import has_personal_slope, is_personal_eligible

logger = logging.getLogger(__name__)

_STATUS_RANK = {"clear": 0, "flat": 1, "insufficient": 2}
_CONFIDENCE_RANK = {"High": 0, "Medium": 1, "Low": 2}


def _estimate(intercept: float, slope: float, dose: float) -> float:
    return max(0.0, intercept + slope * dose)


def _band(estimate: float, sigma: float | None, z: float) -> PredictionBand | None:
    if sigma is None or not math.isfinite(sigma):
        return None
    half_width = z * sigma
    return PredictionBand(low=max(0.0, estimate - half_width), high=estimate + half_width)


def personal_sigma(fit: RegressionFit, policy: EnginePolicy) -> float:
    """Standard error of the personal line, shrinking with sample count."""
    residual_sd = fit.residual_sd or 0.0
    floor = max(1e-6, policy.sigma_floor_fraction * abs(fit.mean_value))
    return max(residual_sd, floor) / math.sqrt(max(1, fit.sample_count))


def personal_weight(sigma_personal: float, sigma_prior: float) -> float:
    precision_personal = 1.0 / (sigma_personal**2)
    precision_prior = 1.0 / (max(1e-9, sigma_prior) ** 2)
    weight = precision_personal / (precision_personal + precision_prior)
    return min(1.0, max(0.0, weight))


def classify_confidence(
    fit: RegressionFit,
    w_personal: float,
    policy: EnginePolicy,
) -> str:
    if w_personal < policy.heavy_prior_weight or fit.status in ("flat", "insufficient"):
        return "Low"
    if (
        fit.sample_count >= policy.high_confidence_min_samples
        and fit.unique_dose_levels >= policy.high_confidence_min_dose_levels
        and fit.status == "clear"
        and (
            fit.r_squared >= policy.high_confidence_min_r_squared
            or w_personal >= policy.negligible_prior_weight
        )
    ):
        return "High"
    return "Medium"


def _prediction(
    fit: RegressionFit,
    *,
    source: str,
    slope: float,
    intercept: float,
    sigma: float | None,
    w_personal: float,
    contribution: PriorContribution,
    model_type: str,
    is_api_assisted: bool,
    policy: EnginePolicy,
    dose_min: float,
    dose_max: float,
) -> DosePrediction:
    estimate = _estimate(intercept, slope, fit.current_dose)
    return DosePrediction(
        marker=fit.marker,
        unit=fit.unit,
        current_dose=fit.current_dose,
        current_estimate=estimate,
        source=source,
        confidence=classify_confidence(fit, w_personal, policy),
        slope_per_mg=slope,
        intercept=intercept,
        band=_band(estimate, sigma, policy.band_z),
        blend=contribution,
        status=fit.status,
        status_reason=fit.status_reason,
        excluded_points=fit.excluded_points,
        sample_count=fit.sample_count,
        unique_dose_levels=fit.unique_dose_levels,
        correlation_r=fit.correlation_r,
        r_squared=fit.r_squared,
        model_type=model_type,
        sigma_residual=sigma,
        observed_dose_min=dose_min,
        observed_dose_max=dose_max,
        sampling_mode=fit.sampling_mode,
        sampling_warning=fit.sampling_warning,
        is_api_assisted=is_api_assisted,
    )


def blend(
    fit: RegressionFit,
    prior: DosePrior | None,
    *,
    offline_prior_fallback: bool = False,
    api_assisted: bool = False,
    policy: EnginePolicy | None = None,
) -> DosePrediction:
    """Combine one fit with its matching prior (if any) into a prediction."""
    policy = policy or EnginePolicy()

    if prior is None or is_personal_eligible(fit, policy):
        return _prediction(
            fit,
            source="personal",
            slope=fit.slope_per_mg,
            intercept=fit.intercept,
            sigma=fit.residual_sd,
            w_personal=1.0,
            contribution=PersonalOnly(),
            model_type=fit.model_type,
            is_api_assisted=False,
            policy=policy,
            dose_min=fit.observed_dose_min,
            dose_max=fit.observed_dose_max,
        )

    is_api_assisted = api_assisted and prior.provenance == "remote"

    if not has_personal_slope(fit):
        dose_range = prior.dose_range
        diagnostics = BlendDiagnostics(
            w_personal=0.0,
            w_prior=1.0,
            sigma_personal=None,
            sigma_prior=prior.sigma_prior,
            sigma_residual=prior.sigma_prior,
            offline_prior_fallback=offline_prior_fallback,
            prior_provenance=prior.provenance,
        )
        return _prediction(
            fit,
            source="study_prior",
            slope=prior.slope_per_mg,
            intercept=prior.intercept,
            sigma=prior.sigma_prior,
            w_personal=0.0,
            contribution=PriorBlend(diagnostics=diagnostics),
            model_type="prior",
            is_api_assisted=is_api_assisted,
            policy=policy,
            dose_min=dose_range.min if dose_range is not None else fit.observed_dose_min,
            dose_max=dose_range.max if dose_range is not None else fit.observed_dose_max,
        )

    sigma_p = personal_sigma(fit, policy)
    w = personal_weight(sigma_p, prior.sigma_prior)
    residual_sd = fit.residual_sd or 0.0
    sigma_residual = math.sqrt(w * residual_sd**2 + (1.0 - w) * prior.sigma_prior**2)
    diagnostics = BlendDiagnostics(
        w_personal=w,
        w_prior=1.0 - w,
        sigma_personal=sigma_p,
        sigma_prior=prior.sigma_prior,
        sigma_residual=sigma_residual,
        offline_prior_fallback=offline_prior_fallback,
        prior_provenance=prior.provenance,
    )
    return _prediction(
        fit,
        source="hybrid",
        slope=w * fit.slope_per_mg + (1.0 - w) * prior.slope_per_mg,
        intercept=w * fit.intercept + (1.0 - w) * prior.intercept,
        sigma=sigma_residual,
        w_personal=w,
        contribution=PriorBlend(diagnostics=diagnostics),
        model_type="hybrid",
        is_api_assisted=is_api_assisted,
        policy=policy,
        dose_min=fit.observed_dose_min,
        dose_max=fit.observed_dose_max,
    )


def sort_predictions(predictions: Iterable[DosePrediction]) -> list[DosePrediction]:
    return sorted(
        predictions,
        key=lambda p: (
            _STATUS_RANK.get(p.status, 3),
            _CONFIDENCE_RANK.get(p.confidence, 3),
            -abs(p.correlation_r or 0.0),
            p.marker,
        ),
    )


def apply_priors(
    fits: Iterable[RegressionFit],
    priors: Iterable[DosePrior],
    unit_system: str,
    *,
    offline_prior_fallback: bool = False,
    assisted_markers: Collection[str] = (),
    policy: EnginePolicy | None = None,
) -> list[DosePrediction]:
    """Blend every fit with the prior sharing its key and return sorted predictions."""
    policy = policy or EnginePolicy()
    by_key = {prior_key(prior.marker, prior.unit_system, prior.unit): prior for prior in priors}

    predictions = []
    for fit in fits:
        prior = by_key.get(prior_key(fit.marker, unit_system, fit.unit))
        predictions.append(
            blend(
                fit,
                prior,
                offline_prior_fallback=offline_prior_fallback,
                api_assisted=fit.marker in assisted_markers,
                policy=policy,
            )
        )

    logger.debug(
        "Blended %d fits against %d priors",
        len(predictions),
        len(by_key),
        extra={"dose_unit_system": unit_system},
    )
    return sort_predictions(predictions)
