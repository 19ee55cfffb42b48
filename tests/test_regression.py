"""Tests for the personal dose-response fitter."""

from __future__ import annotations

import random
from datetime import date, timedelta

import pytest

from labtracker_dose.config import EnginePolicy
from labtracker_dose.models import Observation
from labtracker_dose.regression import (
    fit_all,
    fit_marker,
    has_personal_slope,
    is_personal_eligible,
    unique_dose_count,
)


def _series(
    points: list[tuple[float, float]],
    *,
    marker: str = "Estradiol",
    unit: str = "pmol/L",
    timing: str = "unknown",
    start: date = date(2025, 1, 6),
) -> list[Observation]:
    return [
        Observation(
            marker=marker,
            date=start + timedelta(days=28 * i),
            dose_mg_per_week=dose,
            value=value,
            unit=unit,
            sampling_timing=timing,
        )
        for i, (dose, value) in enumerate(points)
    ]


CLEAN = [(100.0, 20.0), (120.0, 22.1), (140.0, 23.9), (160.0, 26.0)]


def test_clean_linear_fit_is_clear():
    fit = fit_marker("Testosterone", _series(CLEAN, unit="nmol/L"))

    assert fit.status == "clear"
    assert fit.model_type == "linear-ols"
    assert fit.slope_per_mg == pytest.approx(0.099)
    assert fit.intercept == pytest.approx(10.13)
    assert fit.correlation_r == pytest.approx(0.9995, abs=1e-3)
    assert 0.99 <= fit.r_squared <= 1.0
    assert fit.sample_count == 4
    assert fit.unique_dose_levels == 4
    assert fit.current_dose == 160.0
    assert fit.latest_value == 26.0
    assert fit.observed_dose_min == 100.0
    assert fit.observed_dose_max == 160.0
    assert fit.excluded_points == ()


def test_fit_is_independent_of_input_order():
    observations = _series(CLEAN + [(130.0, 23.2), (110.0, 21.0)])
    shuffled = list(observations)
    random.Random(7).shuffle(shuffled)

    assert fit_marker("Estradiol", observations) == fit_marker("Estradiol", shuffled)


def test_unknown_timing_sets_sampling_warning():
    fit = fit_marker("Estradiol", _series(CLEAN))
    assert fit.sampling_mode == "all"
    assert fit.sampling_warning is not None
    assert "mostly unknown" in fit.sampling_warning


def test_minority_unit_is_excluded():
    observations = _series(CLEAN, unit="nmol/L") + _series(
        [(150.0, 700.0)], unit="ng/dL", start=date(2026, 1, 1)
    )

    fit = fit_marker("Testosterone", observations)

    assert fit.unit == "nmol/L"
    assert fit.sample_count == 4
    assert len(fit.excluded_points) == 1
    assert "unit mismatch (ng/dL vs nmol/L)" in fit.excluded_points[0].reason


def test_trough_mode_excludes_other_timings():
    trough = _series([(100.0, 20.0), (120.0, 22.0), (140.0, 24.5)], timing="trough")
    peak = _series([(120.0, 35.0), (140.0, 38.0)], timing="peak", start=date(2025, 9, 1))

    fit = fit_marker("Testosterone", trough + peak)

    assert fit.sampling_mode == "trough"
    assert fit.sampling_warning is None
    assert fit.trough_sample_count == 3
    assert fit.all_sample_count == 5
    assert fit.sample_count == 3
    reasons = [point.reason for point in fit.excluded_points]
    assert len(reasons) == 2
    assert all("different sampling timing (peak vs trough)" in reason for reason in reasons)


def test_too_few_trough_points_falls_back_to_all():
    observations = _series([(100.0, 20.0), (120.0, 22.0)], timing="trough") + _series(
        [(140.0, 24.0), (160.0, 26.0)], timing="peak", start=date(2025, 6, 1)
    )
    fit = fit_marker("Testosterone", observations)

    assert fit.sampling_mode == "all"
    assert "too few trough-only points" in fit.sampling_warning


def test_single_dose_level_is_insufficient_without_slope():
    fit = fit_marker("Hematocrit", _series([(125.0, 47.0), (125.0, 48.0), (125.0, 49.5)], unit="%"))

    assert fit.status == "insufficient"
    assert fit.model_type == "none"
    assert fit.slope_per_mg == 0.0
    assert fit.intercept == 49.5
    assert fit.correlation_r is None
    assert not has_personal_slope(fit)
    assert not is_personal_eligible(fit)


def test_single_observation_is_insufficient():
    fit = fit_marker("Estradiol", _series([(120.0, 130.0)]))

    assert fit.status == "insufficient"
    assert fit.sample_count == 1
    assert fit.residual_sd is None
    assert fit.current_dose == 120.0


def test_three_points_have_a_slope_but_are_not_eligible():
    fit = fit_marker("Estradiol", _series([(100.0, 110.0), (120.0, 128.0), (120.0, 131.0)]))

    assert fit.status == "insufficient"
    assert fit.model_type == "linear-ols"
    assert has_personal_slope(fit)
    assert not is_personal_eligible(fit)
    assert "at least 4 results" in fit.status_reason


def test_value_independent_of_dose_is_flat():
    points = [
        (100.0, 20.0), (120.0, 21.0), (140.0, 20.0), (160.0, 21.0),
        (100.0, 21.0), (120.0, 20.0), (140.0, 21.0), (160.0, 20.0),
    ]
    fit = fit_marker("Apolipoprotein B", _series(points, unit="mg/dL"))

    assert fit.status == "flat"
    assert fit.slope_per_mg == pytest.approx(0.0, abs=1e-9)
    assert fit.correlation_r == pytest.approx(0.0, abs=1e-9)
    assert not is_personal_eligible(fit)


def test_falling_testosterone_slope_is_not_trusted():
    falling = [(100.0, 26.0), (120.0, 23.9), (140.0, 22.1), (160.0, 20.0)]
    fit = fit_marker("Testosterone", _series(falling, unit="nmol/L"))

    assert fit.slope_per_mg < 0
    assert fit.status == "flat"
    assert "opposite direction than expected" in fit.status_reason
    assert not is_personal_eligible(fit)


def test_falling_slope_is_fine_for_markers_without_expected_direction():
    falling = [(100.0, 26.0), (120.0, 23.9), (140.0, 22.1), (160.0, 20.0)]
    fit = fit_marker("SHBG", _series(falling, unit="nmol/L"))

    assert fit.status == "clear"


def test_mad_outlier_is_excluded():
    points = [(100.0, 20.0), (110.0, 21.0), (120.0, 22.0), (130.0, 60.0), (140.0, 24.0), (150.0, 25.0)]
    fit = fit_marker("Testosterone", _series(points, unit="nmol/L"))

    assert fit.sample_count == 5
    assert len(fit.excluded_points) == 1
    assert "outlier" in fit.excluded_points[0].reason
    assert fit.excluded_points[0].date not in fit.used_observation_dates
    assert fit.slope_per_mg == pytest.approx(0.1, abs=0.01)


def test_outlier_screen_keeps_points_when_too_few_remain():
    # dropping the odd value would leave a single dose level
    points = [(100.0, 20.0), (100.0, 20.5), (100.0, 21.0), (140.0, 80.0)]
    fit = fit_marker("Testosterone", _series(points, unit="nmol/L"))

    assert fit.sample_count == 4
    assert fit.excluded_points == ()


def test_conflicting_slope_sign_uses_theil_sen():
    points = [(100.0, 0.0), (110.0, 10.0), (120.0, 20.0), (200.0, -5.0)]
    fit = fit_marker("Estradiol", _series(points))

    assert fit.model_type == "theil-sen"
    assert fit.slope_per_mg == pytest.approx(0.475)
    assert fit.intercept == pytest.approx(-44.875)
    assert "Theil-Sen" in fit.status_reason


def test_fit_all_groups_aliases_under_canonical_marker():
    observations = _series(CLEAN[:2], marker="E2") + _series(
        CLEAN[2:], marker="Oestradiol", start=date(2025, 6, 1)
    )

    fits = fit_all(observations)

    assert [fit.marker for fit in fits] == ["Estradiol"]
    assert fits[0].sample_count == 4


def test_fit_all_orders_markers():
    observations = _series(CLEAN, marker="Testosterone", unit="nmol/L") + _series(CLEAN, marker="Estradiol")
    assert [fit.marker for fit in fit_all(observations)] == ["Estradiol", "Testosterone"]


def test_fit_marker_requires_observations():
    with pytest.raises(ValueError, match="without observations"):
        fit_marker("Estradiol", [])


def test_policy_min_samples_is_respected():
    policy = EnginePolicy(min_samples=6)
    fit = fit_marker("Testosterone", _series(CLEAN, unit="nmol/L"), policy)
    assert fit.status == "insufficient"
    assert not is_personal_eligible(fit, policy)


def test_unique_dose_count_rounds_to_hundredths():
    observations = _series([(100.0, 1.0), (100.001, 1.0), (120.0, 1.0)])
    assert unique_dose_count(observations) == 2
