"""Stable error taxonomy for the dose-response engine.

Only invalid input is raised to callers. Remote failures are caught by the
enrichment orchestrator and surfaced as an offline prior fallback. Quota
denials carry a code on the published result. Data insufficiency is a fit
status, never an exception, so it has a class but no error code.
"""

from __future__ import annotations

from typing import Literal

ErrorClass = Literal[
    "data_insufficiency",
    "remote_unavailable",
    "quota_exhausted",
    "invalid_input",
    "other",
]

ERROR_CLASS_BY_CODE: dict[str, ErrorClass] = {
    "remote_unreachable": "remote_unavailable",
    "remote_timeout": "remote_unavailable",
    "remote_status": "remote_unavailable",
    "remote_malformed": "remote_unavailable",
    "fetch_abandoned": "remote_unavailable",
    "quota_daily_exhausted": "quota_exhausted",
    "quota_monthly_exhausted": "quota_exhausted",
    "quota_store_unavailable": "quota_exhausted",
    "invalid_observation": "invalid_input",
    "invalid_dose": "invalid_input",
}


class DoseEngineError(Exception):
    code = "other"


class InvalidObservationError(DoseEngineError, ValueError):
    code = "invalid_observation"


class InvalidDoseError(DoseEngineError, ValueError):
    code = "invalid_dose"


class RemotePriorError(DoseEngineError):
    """Base class for expected remote enrichment failures."""

    code = "remote_unreachable"


class RemotePriorUnavailable(RemotePriorError):
    code = "remote_unreachable"


class RemotePriorTimeout(RemotePriorError):
    code = "remote_timeout"


class RemotePriorStatusError(RemotePriorError):
    code = "remote_status"

    def __init__(self, status_code: int) -> None:
        super().__init__(f"Dose prior request failed with HTTP {status_code}")
        self.status_code = status_code


class RemotePriorMalformed(RemotePriorError):
    code = "remote_malformed"


class FetchAbandoned(RemotePriorError):
    """The recomputation that owned the fetch was superseded."""

    code = "fetch_abandoned"


class QuotaStoreUnavailable(DoseEngineError):
    """The assisted-usage store could not be read or written."""

    code = "quota_store_unavailable"


def classify_error_code(error_code: str | None) -> ErrorClass:
    normalized = str(error_code or "").strip().lower()
    if not normalized:
        return "other"
    return ERROR_CLASS_BY_CODE.get(normalized, "other")


def dose_engine_error_taxonomy_v1() -> dict[str, object]:
    return {
        "schema_version": "dose_engine_error_taxonomy.v1",
        "classes": [
            "data_insufficiency",
            "remote_unavailable",
            "quota_exhausted",
            "invalid_input",
            "other",
        ],
        "code_to_class": dict(ERROR_CLASS_BY_CODE),
    }
