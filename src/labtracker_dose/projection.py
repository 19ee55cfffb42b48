"""Estimate and uncertainty band for a hypothetical weekly dose."""

from __future__ import annotations

import math
from collections.abc import Iterable

from .config import EnginePolicy
from .errors import InvalidDoseError
from .models import DosePrediction, Projection

DEFAULT_SCENARIO_GRID_MG: tuple[float, ...] = (80.0, 100.0, 120.0, 140.0, 160.0, 180.0)
SCENARIO_MARGIN_BELOW_MG = 20.0
SCENARIO_MARGIN_ABOVE_MG = 30.0


def extrapolation_distance(prediction: DosePrediction, dose: float) -> float:
    if dose < prediction.observed_dose_min:
        return prediction.observed_dose_min - dose
    if dose > prediction.observed_dose_max:
        return dose - prediction.observed_dose_max
    return 0.0


def project(
    prediction: DosePrediction,
    target_dose: float,
    policy: EnginePolicy | None = None,
) -> Projection:
    """Project a prediction's line to ``target_dose`` mg/week.

    The band widens linearly with distance outside the observed dose range,
    scaled by the observed span (never less than the minimum scale).
    """
    if isinstance(target_dose, bool) or not isinstance(target_dose, (int, float)):
        raise InvalidDoseError(f"Target dose must be a number, got {target_dose!r}")
    if not math.isfinite(target_dose) or target_dose < 0:
        raise InvalidDoseError(f"Target dose must be a finite non-negative number, got {target_dose!r}")

    policy = policy or EnginePolicy()
    dose = float(target_dose)
    estimate = max(0.0, prediction.intercept + prediction.slope_per_mg * dose)
    distance = extrapolation_distance(prediction, dose)

    sigma = prediction.sigma_residual
    if sigma is None:
        return Projection(dose=dose, estimate=estimate, low=None, high=None, extrapolation_distance=distance)

    span = prediction.observed_dose_max - prediction.observed_dose_min
    scale = max(span, policy.extrapolation_min_scale_mg)
    half_width = policy.band_z * sigma * (1.0 + policy.extrapolation_penalty * distance / scale)
    return Projection(
        dose=dose,
        estimate=estimate,
        low=max(0.0, estimate - half_width),
        high=estimate + half_width,
        extrapolation_distance=distance,
    )


def default_scenario_doses(prediction: DosePrediction) -> list[float]:
    low = max(0.0, prediction.observed_dose_min - SCENARIO_MARGIN_BELOW_MG)
    high = prediction.observed_dose_max + SCENARIO_MARGIN_ABOVE_MG
    doses = [dose for dose in DEFAULT_SCENARIO_GRID_MG if low <= dose <= high]
    if not doses:
        return [round(prediction.current_dose, 2)]
    return doses


def project_scenarios(
    prediction: DosePrediction,
    doses: Iterable[float] | None = None,
    policy: EnginePolicy | None = None,
) -> list[Projection]:
    grid = default_scenario_doses(prediction) if doses is None else sorted(set(doses))
    return [project(prediction, dose, policy) for dose in grid]
