"""Personal dose-response regression per marker.

Fits ``value = intercept + slope * dose`` over one person's observations after
unit, sampling-timing and outlier screening. Pure: the same observation set
always yields the same ``RegressionFit``, independent of input order.
"""

from __future__ import annotations

import logging
import math
from collections import Counter, defaultdict
from collections.abc import Iterable, Sequence
from statistics import median

from .config import EnginePolicy
from .markers import canonicalize_marker
from .models import ExcludedPoint, Observation, RegressionFit

logger = logging.getLogger(__name__)

_EPS = 1e-6
# Scales MAD to a normal-distribution sigma estimate.
_MAD_TO_SIGMA = 1.4826
# Markers that should rise with dose; a falling personal slope is not trusted.
DOSE_EXPECTED_POSITIVE_MARKERS = frozenset({"Testosterone", "Free Testosterone", "Free Androgen Index"})


def unique_dose_count(samples: Iterable[Observation]) -> int:
    return len({round(sample.dose_mg_per_week, 2) for sample in samples})


def _ordered(samples: Iterable[Observation]) -> list[Observation]:
    return sorted(
        samples,
        key=lambda s: (s.date, s.dose_mg_per_week, s.value, s.unit, s.sampling_timing),
    )


def _preferred_unit(samples: Sequence[Observation]) -> str:
    counts = Counter(sample.unit for sample in samples)
    latest_unit = samples[-1].unit
    return sorted(
        counts.items(),
        key=lambda item: (-item[1], 0 if item[0] == latest_unit else 1, item[0]),
    )[0][0]


def _sampling_warning(unit_filtered: Sequence[Observation], trough_count: int) -> str:
    if trough_count > 0:
        return "There were too few trough-only points, so this estimate uses all sampling timings."
    if any(sample.sampling_timing != "unknown" for sample in unit_filtered):
        return "Sampling times are mixed, so interpret this estimate with extra caution."
    return "Sampling timing is mostly unknown, so this estimate may be less reliable."


def _filter_outliers_by_mad(
    samples: list[Observation],
    multiplier: float,
) -> tuple[list[Observation], list[Observation], float | None]:
    if len(samples) < 4:
        return samples, [], None
    values = [sample.value for sample in samples]
    center = median(values)
    mad = median(abs(value - center) for value in values)
    if mad <= _EPS:
        return samples, [], None

    threshold = multiplier * _MAD_TO_SIGMA * mad
    kept = [sample for sample in samples if abs(sample.value - center) <= threshold]
    excluded = [sample for sample in samples if abs(sample.value - center) > threshold]
    if not excluded or len(kept) < 3 or unique_dose_count(kept) < 2:
        return samples, [], threshold
    return kept, excluded, threshold


def _ols(xs: Sequence[float], ys: Sequence[float]) -> tuple[float, float] | None:
    n = len(xs)
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    sxx = sum((x - mean_x) ** 2 for x in xs)
    if sxx <= _EPS:
        return None
    sxy = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys))
    slope = sxy / sxx
    return slope, mean_y - slope * mean_x


def _theil_sen(xs: Sequence[float], ys: Sequence[float]) -> tuple[float, float] | None:
    slopes = []
    for left in range(len(xs) - 1):
        for right in range(left + 1, len(xs)):
            delta = xs[right] - xs[left]
            if abs(delta) <= _EPS:
                continue
            slopes.append((ys[right] - ys[left]) / delta)
    if not slopes:
        return None
    slope = median(slopes)
    return slope, median(y - slope * x for x, y in zip(xs, ys))


def _pearson(xs: Sequence[float], ys: Sequence[float]) -> float | None:
    n = len(xs)
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    sxx = sum((x - mean_x) ** 2 for x in xs)
    syy = sum((y - mean_y) ** 2 for y in ys)
    denominator = math.sqrt(sxx * syy)
    if denominator <= _EPS:
        return None
    sxy = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys))
    return max(-1.0, min(1.0, sxy / denominator))


def _r_squared(ys: Sequence[float], predicted: Sequence[float]) -> float:
    mean_y = sum(ys) / len(ys)
    ss_total = sum((y - mean_y) ** 2 for y in ys)
    if ss_total <= _EPS:
        return 1.0
    ss_residual = sum((y - p) ** 2 for y, p in zip(ys, predicted))
    return max(0.0, min(1.0, 1.0 - ss_residual / ss_total))


def _value_sd(ys: Sequence[float]) -> float | None:
    if len(ys) < 2:
        return None
    mean_y = sum(ys) / len(ys)
    return math.sqrt(sum((y - mean_y) ** 2 for y in ys) / (len(ys) - 1))


def _slope_t_statistic(
    xs: Sequence[float],
    slope: float,
    residual_sd: float | None,
) -> float | None:
    if len(xs) <= 2 or residual_sd is None:
        return None
    mean_x = sum(xs) / len(xs)
    sxx = sum((x - mean_x) ** 2 for x in xs)
    if sxx <= _EPS:
        return None
    standard_error = residual_sd / math.sqrt(sxx)
    if standard_error <= _EPS:
        return math.inf
    return abs(slope) / standard_error


def _insufficient_fit(
    marker: str,
    unit: str,
    samples: list[Observation],
    excluded: list[ExcludedPoint],
    reason: str,
    *,
    sampling_mode: str = "all",
    sampling_warning: str | None = "Estimate hidden until we have enough dose-linked results.",
    trough_count: int = 0,
    all_count: int = 0,
) -> RegressionFit:
    latest = samples[-1]
    values = [sample.value for sample in samples]
    doses = [sample.dose_mg_per_week for sample in samples]
    return RegressionFit(
        marker=marker,
        unit=unit,
        slope_per_mg=0.0,
        intercept=latest.value,
        sample_count=len(samples),
        unique_dose_levels=unique_dose_count(samples),
        correlation_r=None,
        r_squared=0.0,
        model_type="none",
        status="insufficient",
        status_reason=reason,
        sampling_mode=sampling_mode,
        sampling_warning=sampling_warning,
        excluded_points=tuple(excluded),
        used_observation_dates=tuple(sample.date.isoformat() for sample in samples),
        current_dose=latest.dose_mg_per_week,
        latest_value=latest.value,
        residual_sd=_value_sd(values),
        mean_value=sum(values) / len(values),
        observed_dose_min=min(doses),
        observed_dose_max=max(doses),
        trough_sample_count=trough_count,
        all_sample_count=all_count or len(samples),
    )


def _classify(
    marker: str,
    samples: Sequence[Observation],
    slope: float,
    correlation_r: float | None,
    residual_sd: float | None,
    policy: EnginePolicy,
) -> tuple[str, str]:
    n = len(samples)
    levels = unique_dose_count(samples)
    if n < policy.min_samples:
        return (
            "insufficient",
            f"We need at least {policy.min_samples} results with a recorded weekly dose. "
            f"Right now there are {n}.",
        )
    if levels < policy.min_dose_levels:
        return (
            "insufficient",
            f"We need results at {policy.min_dose_levels} or more dose levels; "
            f"there are {levels} so far.",
        )
    if correlation_r is None:
        return "flat", "Values do not vary with dose, so no dose-response relationship is visible."

    xs = [sample.dose_mg_per_week for sample in samples]
    ys = [sample.value for sample in samples]
    dose_span = max(xs) - min(xs)
    mean_abs_value = max(abs(sum(ys) / n), _EPS)
    relative_effect = abs(slope) * max(dose_span, 1.0) / mean_abs_value
    t_statistic = _slope_t_statistic(xs, slope, residual_sd)

    if canonicalize_marker(marker) in DOSE_EXPECTED_POSITIVE_MARKERS and slope < -_EPS:
        return (
            "flat",
            "The current pattern moves in the opposite direction than expected for this marker "
            f"({round(slope, 3)} per mg/week), so the estimate is marked as unclear.",
        )
    if abs(correlation_r) < policy.flat_min_abs_r or relative_effect < policy.flat_min_relative_effect:
        return (
            "flat",
            f"The link between dose and this marker is weak right now (r={round(abs(correlation_r), 3)}), "
            "so this estimate is uncertain.",
        )
    if t_statistic is not None and t_statistic < policy.flat_t_threshold:
        return (
            "flat",
            f"The fitted slope is within noise of zero (t={round(t_statistic, 2)}), "
            "so this estimate is uncertain.",
        )
    return (
        "clear",
        f"A usable dose-response pattern was found from {n} data points (r={round(correlation_r, 3)}).",
    )


def fit_marker(
    marker: str,
    observations: Iterable[Observation],
    policy: EnginePolicy | None = None,
) -> RegressionFit:
    """Fit one marker's dose→value relationship from its observations."""
    policy = policy or EnginePolicy()
    ordered = _ordered(observations)
    if not ordered:
        raise ValueError(f"Cannot fit {marker!r} without observations")

    excluded: list[ExcludedPoint] = []
    unit = _preferred_unit(ordered)
    unit_filtered = [sample for sample in ordered if sample.unit == unit]
    for sample in ordered:
        if sample.unit != unit:
            excluded.append(
                ExcludedPoint(
                    date=sample.date.isoformat(),
                    reason=f"Excluded due to unit mismatch ({sample.unit} vs {unit}).",
                )
            )

    trough = [sample for sample in unit_filtered if sample.sampling_timing == "trough"]
    trough_count = len(trough)
    all_count = len(unit_filtered)

    if len(unit_filtered) < 2:
        return _insufficient_fit(
            marker,
            unit,
            unit_filtered,
            excluded,
            f"Not enough usable results yet ({len(unit_filtered)}). "
            "Add more reports with recorded weekly dose.",
            trough_count=trough_count,
            all_count=all_count,
        )
    if unique_dose_count(unit_filtered) < 2:
        return _insufficient_fit(
            marker,
            unit,
            unit_filtered,
            excluded,
            "We only have one dose level so far, so dose-response cannot be estimated yet.",
            trough_count=trough_count,
            all_count=all_count,
        )

    use_trough = trough_count >= policy.trough_min_samples and unique_dose_count(trough) >= 2
    if use_trough:
        sampling_mode = "trough"
        sampling_warning = None
        sampling_filtered = trough
        for sample in unit_filtered:
            if sample.sampling_timing != "trough":
                excluded.append(
                    ExcludedPoint(
                        date=sample.date.isoformat(),
                        reason=f"Excluded: different sampling timing ({sample.sampling_timing} vs trough).",
                    )
                )
    else:
        sampling_mode = "all"
        sampling_warning = _sampling_warning(unit_filtered, trough_count)
        sampling_filtered = unit_filtered

    kept, outliers, threshold = _filter_outliers_by_mad(sampling_filtered, policy.outlier_mad_multiplier)
    for sample in outliers:
        excluded.append(
            ExcludedPoint(
                date=sample.date.isoformat(),
                reason=f"Excluded as outlier (>{policy.outlier_mad_multiplier:g} MAD; threshold={round(threshold or 0.0, 3)} {unit}).",
            )
        )

    # current dose follows the latest sample even when that sample is an outlier
    latest = sampling_filtered[-1]
    xs = [sample.dose_mg_per_week for sample in kept]
    ys = [sample.value for sample in kept]

    linear = _ols(xs, ys)
    if linear is None:
        return _insufficient_fit(
            marker,
            unit,
            kept,
            excluded,
            "The current data does not fit a stable model yet. Add a few more measurements.",
            sampling_mode=sampling_mode,
            sampling_warning=sampling_warning,
            trough_count=trough_count,
            all_count=all_count,
        )

    slope, intercept = linear
    model_type = "linear-ols"
    model_note = ""
    robust = _theil_sen(xs, ys)
    if robust is not None:
        linear_sign = math.copysign(1.0, slope) if abs(slope) > _EPS else 0.0
        robust_sign = math.copysign(1.0, robust[0]) if abs(robust[0]) > _EPS else 0.0
        if linear_sign and robust_sign and linear_sign != robust_sign:
            slope, intercept = robust
            model_type = "theil-sen"
            model_note = " Used robust Theil-Sen fallback because linear slope direction conflicted."

    predicted = [intercept + slope * x for x in xs]
    ssr = sum((y - p) ** 2 for y, p in zip(ys, predicted))
    residual_sd = math.sqrt(ssr / (len(kept) - 2)) if len(kept) > 2 else _value_sd(ys)
    correlation_r = _pearson(xs, ys)
    status, reason = _classify(marker, kept, slope, correlation_r, residual_sd, policy)

    return RegressionFit(
        marker=marker,
        unit=unit,
        slope_per_mg=slope,
        intercept=intercept,
        sample_count=len(kept),
        unique_dose_levels=unique_dose_count(kept),
        correlation_r=correlation_r,
        r_squared=_r_squared(ys, predicted),
        model_type=model_type,
        status=status,
        status_reason=f"{reason}{model_note}",
        sampling_mode=sampling_mode,
        sampling_warning=sampling_warning,
        excluded_points=tuple(excluded),
        used_observation_dates=tuple(sample.date.isoformat() for sample in kept),
        current_dose=latest.dose_mg_per_week,
        latest_value=latest.value,
        residual_sd=residual_sd,
        mean_value=sum(ys) / len(ys),
        observed_dose_min=min(xs),
        observed_dose_max=max(xs),
        trough_sample_count=trough_count,
        all_sample_count=all_count,
    )


def fit_all(
    observations: Iterable[Observation],
    policy: EnginePolicy | None = None,
) -> list[RegressionFit]:
    """Group observations by canonical marker and fit each group."""
    grouped: dict[str, list[Observation]] = defaultdict(list)
    for observation in observations:
        grouped[canonicalize_marker(observation.marker)].append(observation)

    fits = [fit_marker(marker, grouped[marker], policy) for marker in sorted(grouped)]
    logger.debug("Fitted %d markers", len(fits))
    return fits


def is_personal_eligible(fit: RegressionFit, policy: EnginePolicy | None = None) -> bool:
    """True when the personal fit can stand on its own without any prior."""
    policy = policy or EnginePolicy()
    return (
        fit.status == "clear"
        and fit.sample_count >= policy.min_samples
        and fit.unique_dose_levels >= policy.min_dose_levels
    )


def has_personal_slope(fit: RegressionFit) -> bool:
    """True when a regression line was estimated from the person's own data."""
    return fit.model_type != "none" and fit.sample_count >= 2 and fit.unique_dose_levels >= 2
