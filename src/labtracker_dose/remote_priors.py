"""Remote population-prior enrichment client.

One POST per call against the curated prior service. The request carries an
anonymized per-marker summary (counts, dose levels, correlation) and never
dates or raw lab values. Every failure surfaces as a ``RemotePriorError``
subclass so the orchestrator can fall back to the local table.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Iterable, Sequence
from typing import Any, Literal

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from . import metrics
from .cancellation import CancellationToken
from .errors import (
    FetchAbandoned,
    RemotePriorError,
    RemotePriorMalformed,
    RemotePriorStatusError,
    RemotePriorTimeout,
    RemotePriorUnavailable,
)
from .local_priors import prior_key
from .markers import canonicalize_marker
from .models import DosePrior, DoseRange, PriorEvidence, RegressionFit, UnitSystem

logger = logging.getLogger(__name__)


def _round(value: float | None, digits: int) -> float | None:
    if value is None:
        return None
    return round(value, digits)


def build_request_payload(
    fits: Iterable[RegressionFit],
    unit_system: str,
    markers: Iterable[str],
) -> dict[str, Any]:
    """Build the anonymized enrichment request for the given candidate markers."""
    wanted = sorted({canonicalize_marker(marker) for marker in markers})
    by_marker = {fit.marker: fit for fit in fits}
    context = []
    for marker in wanted:
        fit = by_marker.get(marker)
        if fit is None:
            continue
        context.append(
            {
                "marker": marker,
                "currentDose": _round(fit.current_dose, 3),
                "sampleCount": fit.sample_count,
                "uniqueDoseLevels": fit.unique_dose_levels,
                "correlationR": _round(fit.correlation_r, 3),
                "samplingModeDistribution": {
                    "trough": fit.trough_sample_count,
                    "mixed": max(0, fit.all_sample_count - fit.trough_sample_count),
                },
            }
        )
    return {"unitSystem": unit_system, "markers": wanted, "context": context}


class RemoteDoseRange(BaseModel):
    model_config = ConfigDict(extra="ignore")

    min: float
    max: float

    @model_validator(mode="after")
    def ordered(self) -> "RemoteDoseRange":
        if not (math.isfinite(self.min) and math.isfinite(self.max)):
            raise ValueError("doseRange bounds must be finite")
        if self.min > self.max:
            raise ValueError("doseRange min must not exceed max")
        return self


class RemoteEvidence(BaseModel):
    model_config = ConfigDict(extra="ignore")

    citation: str
    study_type: str = Field(default="", validation_alias=AliasChoices("studyType", "study_type"))
    relevance: str = ""
    quality: Literal["high", "medium", "low"] = "medium"


class RemotePriorEntry(BaseModel):
    """One prior as served by the remote endpoint."""

    model_config = ConfigDict(extra="ignore")

    marker: str
    unit_system: UnitSystem = Field(validation_alias=AliasChoices("unitSystem", "unit_system"))
    unit: str
    slope_per_mg: float = Field(validation_alias=AliasChoices("slopePerMg", "slope_per_mg"))
    intercept: float
    sigma: float = Field(validation_alias=AliasChoices("sigma", "sigmaPrior", "sigma_prior"))
    dose_range: RemoteDoseRange | None = Field(
        default=None, validation_alias=AliasChoices("doseRange", "dose_range")
    )
    evidence: list[RemoteEvidence] = Field(default_factory=list)

    @field_validator("marker", "unit")
    @classmethod
    def non_empty(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("must not be empty")
        return cleaned

    @field_validator("slope_per_mg", "intercept")
    @classmethod
    def finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("must be finite")
        return value

    @field_validator("sigma")
    @classmethod
    def positive_sigma(cls, value: float) -> float:
        if not math.isfinite(value) or value <= 0:
            raise ValueError("sigma must be a positive finite number")
        return value

    def to_prior(self) -> DosePrior:
        return DosePrior(
            marker=canonicalize_marker(self.marker),
            unit=self.unit,
            unit_system=self.unit_system,
            slope_per_mg=self.slope_per_mg,
            intercept=self.intercept,
            sigma_prior=self.sigma,
            provenance="remote",
            dose_range=(
                DoseRange(min=self.dose_range.min, max=self.dose_range.max)
                if self.dose_range is not None
                else None
            ),
            evidence=tuple(
                PriorEvidence(
                    citation=item.citation,
                    study_type=item.study_type,
                    relevance=item.relevance,
                    quality=item.quality,
                )
                for item in self.evidence
            ),
        )


def parse_priors_response(body: Any, unit_system: str) -> list[DosePrior]:
    """Parse a ``{"priors": [...]}`` body, skipping malformed or foreign entries."""
    if not isinstance(body, dict) or not isinstance(body.get("priors"), list):
        raise RemotePriorMalformed("Dose prior response must be an object with a 'priors' list")

    priors: list[DosePrior] = []
    for index, raw in enumerate(body["priors"]):
        try:
            entry = RemotePriorEntry.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed remote prior entry %d: %s",
                index,
                exc.errors()[0].get("msg", "invalid") if exc.errors() else "invalid",
                extra={"dose_prior_index": index},
            )
            continue
        if entry.unit_system != unit_system:
            logger.debug("Dropping remote prior for %s in %s", entry.marker, entry.unit_system)
            continue
        priors.append(entry.to_prior())
    return priors


def merge_priors(local: Sequence[DosePrior], remote: Sequence[DosePrior]) -> list[DosePrior]:
    """Keyed merge where remote entries replace local ones on the same key."""
    merged: dict[str, DosePrior] = {}
    for prior in local:
        merged[prior_key(prior.marker, prior.unit_system, prior.unit)] = prior
    for prior in remote:
        merged[prior_key(prior.marker, prior.unit_system, prior.unit)] = prior
    return list(merged.values())


class RemotePriorClient:
    """Async client for the dose prior endpoint.

    The underlying ``httpx.AsyncClient`` is created lazily unless one is
    injected (tests pass one wired to ``httpx.MockTransport``).
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 8.0,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "RemotePriorClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def _post(self, payload: dict[str, Any]) -> list[DosePrior]:
        try:
            async with asyncio.timeout(self.timeout_seconds):
                response = await self._http().post(self.url, json=payload)
        except TimeoutError as exc:
            raise RemotePriorTimeout(
                f"Dose prior request exceeded {self.timeout_seconds}s"
            ) from exc
        except httpx.TimeoutException as exc:
            raise RemotePriorTimeout(f"Dose prior request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise RemotePriorUnavailable(f"Dose prior request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise RemotePriorStatusError(response.status_code)
        try:
            body = response.json()
        except ValueError as exc:
            raise RemotePriorMalformed("Dose prior response is not valid JSON") from exc
        return parse_priors_response(body, payload.get("unitSystem", ""))

    async def fetch_priors(
        self,
        payload: dict[str, Any],
        cancel_token: CancellationToken | None = None,
    ) -> list[DosePrior]:
        """POST the payload once and return the parsed remote priors.

        Cancelling ``cancel_token`` abandons the request and raises
        ``FetchAbandoned``.
        """
        if cancel_token is not None and cancel_token.cancelled:
            raise FetchAbandoned("Dose prior fetch abandoned before start")

        started = time.monotonic()
        request = asyncio.ensure_future(self._post(payload))
        waiters: set[asyncio.Future[Any]] = {request}
        if cancel_token is not None:
            waiters.add(asyncio.ensure_future(cancel_token.wait()))

        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        duration_ms = (time.monotonic() - started) * 1000
        try:
            if request not in done:
                raise FetchAbandoned("Dose prior fetch abandoned by a newer recomputation")
            priors = request.result()
        except RemotePriorError as exc:
            metrics.record_remote_fetch(duration_ms, success=False, error_code=exc.code)
            raise

        metrics.record_remote_fetch(duration_ms, success=True)
        logger.info(
            "Fetched %d remote dose priors in %.0fms",
            len(priors),
            duration_ms,
            extra={"dose_remote_prior_count": len(priors)},
        )
        return priors
