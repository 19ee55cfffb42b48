"""Property tests for fitting, blending and projection invariants."""

from __future__ import annotations

import dataclasses
from datetime import date, timedelta

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from labtracker_dose.blending import apply_priors, personal_sigma, personal_weight
from labtracker_dose.config import EnginePolicy
from labtracker_dose.local_priors import LocalPriorStore
from labtracker_dose.models import Observation
from labtracker_dose.projection import project
from labtracker_dose.regression import fit_marker

PROPERTY_SETTINGS = settings(
    max_examples=60,
    suppress_health_check=[HealthCheck.too_slow],
    deadline=10_000,
)

doses = st.sampled_from([60.0, 80.0, 100.0, 120.0, 125.0, 140.0, 160.0, 200.0])
values = st.floats(min_value=0.5, max_value=500, allow_nan=False, allow_infinity=False)
timings = st.sampled_from(["unknown", "trough", "mid", "peak"])
points = st.lists(st.tuples(doses, values, timings), min_size=1, max_size=12)


def _observations(rows, marker: str = "Estradiol", unit: str = "pmol/L") -> list[Observation]:
    start = date(2024, 1, 1)
    return [
        Observation(
            marker=marker,
            date=start + timedelta(days=14 * i),
            dose_mg_per_week=dose,
            value=value,
            unit=unit,
            sampling_timing=timing,
        )
        for i, (dose, value, timing) in enumerate(rows)
    ]


@given(rows=points, data=st.data())
@PROPERTY_SETTINGS
def test_fit_is_independent_of_input_order(rows, data):
    observations = _observations(rows)
    shuffled = data.draw(st.permutations(observations))

    assert fit_marker("Estradiol", shuffled) == fit_marker("Estradiol", observations)


@given(rows=points, unit_system=st.sampled_from(["eu", "us"]), target=st.floats(min_value=0, max_value=400))
@PROPERTY_SETTINGS
def test_estimates_and_band_floors_are_never_negative(rows, unit_system, target):
    unit = "pmol/L" if unit_system == "eu" else "pg/mL"
    fit = fit_marker("Estradiol", _observations(rows, unit=unit))
    priors = LocalPriorStore().all(unit_system)

    for prediction in apply_priors([fit], priors, unit_system):
        assert prediction.current_estimate >= 0.0
        if prediction.band is not None:
            assert 0.0 <= prediction.band.low <= prediction.current_estimate <= prediction.band.high
        projection = project(prediction, target)
        assert projection.estimate >= 0.0
        if projection.low is not None:
            assert projection.low >= 0.0


@given(rows=points)
@PROPERTY_SETTINGS
def test_blend_weights_stay_in_unit_interval(rows):
    fit = fit_marker("Estradiol", _observations(rows))
    [prediction] = apply_priors([fit], LocalPriorStore().all("eu"), "eu")

    diagnostics = prediction.blend_diagnostics
    if diagnostics is not None:
        assert 0.0 <= diagnostics.w_personal <= 1.0
        assert abs(diagnostics.w_personal + diagnostics.w_prior - 1.0) < 1e-9


@given(
    residual_sd=st.floats(min_value=0, max_value=100),
    sigma_prior=st.floats(min_value=5, max_value=200),
    counts=st.lists(st.integers(min_value=1, max_value=10_000), min_size=2, max_size=6),
)
@PROPERTY_SETTINGS
def test_personal_weight_grows_with_replication(residual_sd, sigma_prior, counts):
    policy = EnginePolicy()
    base = fit_marker(
        "Estradiol",
        _observations([(100.0, 120.0, "trough"), (140.0, 150.0, "trough")]),
    )

    weights = [
        personal_weight(
            personal_sigma(dataclasses.replace(base, sample_count=n, residual_sd=residual_sd), policy),
            sigma_prior,
        )
        for n in sorted(counts)
    ]

    assert all(later >= earlier - 1e-12 for earlier, later in zip(weights, weights[1:]))
    large = dataclasses.replace(base, sample_count=1_000_000, residual_sd=residual_sd)
    assert personal_weight(personal_sigma(large, policy), sigma_prior) > 0.99


@given(
    rows=st.lists(st.tuples(doses, values, st.just("trough")), min_size=4, max_size=10),
    near=st.floats(min_value=0, max_value=150),
    extra=st.floats(min_value=0, max_value=150),
)
@PROPERTY_SETTINGS
def test_band_widens_with_extrapolation_distance(rows, near, extra):
    fit = fit_marker("Estradiol", _observations(rows))
    [prediction] = apply_priors([fit], LocalPriorStore().all("eu"), "eu")
    if prediction.sigma_residual is None:
        return

    closer = project(prediction, prediction.observed_dose_max + near)
    farther = project(prediction, prediction.observed_dose_max + near + extra)

    assert closer.extrapolation_distance <= farther.extrapolation_distance
    assert (closer.high - closer.estimate) <= (farther.high - farther.estimate) + 1e-9
