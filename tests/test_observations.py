from __future__ import annotations

import math
from datetime import date

import pytest
from pydantic import ValidationError

from labtracker_dose.errors import InvalidObservationError
from labtracker_dose.models import Observation
from labtracker_dose.observations import require_valid_observations, validate_observations

VALID = {
    "marker": "Hematocrit",
    "date": "2025-02-10",
    "dose_mg_per_week": 125,
    "value": 47.5,
    "unit": "%",
}


def test_accepts_snake_and_camel_case_rows():
    camel = {
        "marker": "Hematocrit",
        "date": "2025-03-10",
        "doseMgPerWeek": 150,
        "value": 48.1,
        "unit": "%",
        "samplingTiming": "trough",
    }

    batch = validate_observations([VALID, camel])

    assert batch.rejected == ()
    first, second = batch.accepted
    assert first.date == date(2025, 2, 10)
    assert first.sampling_timing == "unknown"
    assert second.dose_mg_per_week == 150.0
    assert second.sampling_timing == "trough"


@pytest.mark.parametrize(
    "override,field",
    [
        ({"dose_mg_per_week": -1}, "dose_mg_per_week"),
        ({"dose_mg_per_week": math.inf}, "dose_mg_per_week"),
        ({"value": math.nan}, "value"),
        ({"marker": "  "}, "marker"),
        ({"unit": ""}, "unit"),
        ({"date": "not-a-date"}, "date"),
        ({"sampling_timing": "evening"}, "sampling_timing"),
    ],
)
def test_invalid_rows_are_rejected_with_reason(override, field):
    batch = validate_observations([VALID, {**VALID, **override}])

    assert len(batch.accepted) == 1
    [rejected] = batch.rejected
    assert rejected.index == 1
    assert field in rejected.reason


def test_rejected_row_keeps_marker_hint():
    batch = validate_observations([{**VALID, "value": "high"}, "garbage"])

    assert batch.rejected[0].marker == "Hematocrit"
    assert batch.rejected[1].marker is None
    assert batch.rejected[1].reason == "row must be a mapping"


def test_observation_models_pass_through():
    observation = Observation.model_validate(VALID)
    assert validate_observations([observation]).accepted == (observation,)


def test_observation_is_frozen():
    observation = Observation.model_validate(VALID)
    with pytest.raises(ValidationError):
        observation.value = 50.0


def test_strict_variant_raises_on_any_invalid_row():
    assert len(require_valid_observations([VALID])) == 1
    with pytest.raises(InvalidObservationError, match="index 1"):
        require_valid_observations([VALID, {**VALID, "value": None}])
