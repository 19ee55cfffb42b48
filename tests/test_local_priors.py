from __future__ import annotations

from labtracker_dose.local_priors import (
    LOCAL_PRIOR_DATASET_VERSION,
    PRIORITY_PRIOR_MARKERS,
    LocalPriorStore,
    prior_key,
    should_request_remote_prior,
)
from labtracker_dose.models import Observation
from labtracker_dose.regression import fit_marker


def _fit(marker: str, unit: str, points: list[tuple[float, float]]):
    observations = [
        Observation(marker=marker, date=f"2025-{i + 1:02d}-01", dose_mg_per_week=dose, value=value, unit=unit)
        for i, (dose, value) in enumerate(points)
    ]
    return fit_marker(marker, observations)


def test_bundled_table_covers_priority_markers_in_both_unit_systems():
    store = LocalPriorStore()

    assert store.version == LOCAL_PRIOR_DATASET_VERSION == "dose_priors.v1"
    assert len(store) == 12
    for unit_system in ("eu", "us"):
        assert {prior.marker for prior in store.all(unit_system)} == set(PRIORITY_PRIOR_MARKERS)


def test_get_resolves_aliases_and_checks_unit():
    store = LocalPriorStore()

    prior = store.get("E2", "eu")
    assert prior is not None
    assert prior.marker == "Estradiol"
    assert prior.unit == "pmol/L"
    assert prior.slope_per_mg == 0.95
    assert prior.sigma_prior == 35.0
    assert prior.provenance == "local"
    assert prior.dose_range.min == 60.0
    assert prior.evidence[0].quality == "medium"

    assert store.get("Estradiol", "eu", "PMOL/L") is prior
    assert store.get("Estradiol", "eu", "pg/mL") is None
    assert store.get("SHBG", "eu") is None


def test_us_testosterone_prior_cites_dose_response_trial():
    prior = LocalPriorStore().get("Testosterone", "us", "ng/dL")
    assert prior.slope_per_mg == 2.9
    assert prior.sigma_prior == 120.0
    assert prior.evidence[0].citation == "Bhasin et al., 2001"
    assert prior.evidence[0].quality == "high"


def test_for_fits_deduplicates_by_key():
    store = LocalPriorStore()
    fit = _fit("Estradiol", "pmol/L", [(100.0, 120.0), (120.0, 140.0)])
    other = _fit("Hematocrit", "%", [(100.0, 45.0), (140.0, 47.0)])

    priors = store.for_fits([fit, fit, other], "eu")

    assert [prior.marker for prior in priors] == ["Estradiol", "Hematocrit"]


def test_prior_key_normalizes_marker_and_unit():
    assert prior_key("oestradiol", "eu", "pmol/L") == "Estradiol|eu|pmol/l"
    assert prior_key("Hematocrit", "us", " % ") == "Hematocrit|us|%"


def test_remote_candidates_are_ineligible_allow_listed_markers():
    weak_estradiol = _fit("Estradiol", "pmol/L", [(100.0, 120.0), (120.0, 140.0)])
    weak_shbg = _fit("SHBG", "nmol/L", [(100.0, 30.0), (120.0, 28.0)])
    strong_estradiol = _fit(
        "Estradiol",
        "pmol/L",
        [(100.0, 100.0), (120.0, 119.0), (140.0, 141.0), (160.0, 160.0)],
    )

    assert should_request_remote_prior(weak_estradiol) is True
    assert should_request_remote_prior(weak_shbg) is False
    assert should_request_remote_prior(strong_estradiol) is False
