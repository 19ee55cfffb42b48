"""Inbound observation boundary.

Rows arrive from the observation store as dicts (snake_case or the store's
camelCase keys) or as ready ``Observation`` models. Invalid rows are rejected
here with a reason and never reach the fitter.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .errors import InvalidObservationError
from .models import Observation, RejectedObservation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObservationBatch:
    accepted: tuple[Observation, ...]
    rejected: tuple[RejectedObservation, ...]


def _validation_reason(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "row"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)


def _marker_hint(row: Any) -> str | None:
    if isinstance(row, Mapping):
        marker = row.get("marker")
        if isinstance(marker, str) and marker.strip():
            return marker.strip()
    return None


def validate_observations(rows: Iterable[Observation | Mapping[str, Any]]) -> ObservationBatch:
    """Split rows into accepted observations and rejected rows with reasons."""
    accepted: list[Observation] = []
    rejected: list[RejectedObservation] = []

    for index, row in enumerate(rows):
        if isinstance(row, Observation):
            accepted.append(row)
            continue
        if not isinstance(row, Mapping):
            rejected.append(
                RejectedObservation(index=index, marker=None, reason="row must be a mapping")
            )
            continue
        try:
            accepted.append(Observation.model_validate(dict(row)))
        except ValidationError as exc:
            rejected.append(
                RejectedObservation(
                    index=index,
                    marker=_marker_hint(row),
                    reason=_validation_reason(exc),
                )
            )

    if rejected:
        logger.warning(
            "Rejected %d of %d observation rows",
            len(rejected),
            len(accepted) + len(rejected),
            extra={"dose_rejected_rows": [item.index for item in rejected]},
        )
    return ObservationBatch(accepted=tuple(accepted), rejected=tuple(rejected))


def require_valid_observations(rows: Iterable[Observation | Mapping[str, Any]]) -> list[Observation]:
    """Strict variant: raise on the first batch containing any invalid row."""
    batch = validate_observations(rows)
    if batch.rejected:
        first = batch.rejected[0]
        raise InvalidObservationError(
            f"{len(batch.rejected)} invalid observation row(s); first at index {first.index}: {first.reason}"
        )
    return list(batch.accepted)
