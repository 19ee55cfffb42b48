"""Enrichment orchestration: when to spend a remote prior call, and how to degrade.

Each ``compute_predictions`` call fits every marker, decides which fits are
candidates for remote priors, and then resolves the active prior set from
(in order) the enabled flag, the fingerprint cache, the usage quota and the
remote service. A newer call supersedes an older one: the older call's token
is cancelled and it returns without touching the cache, the quota or the
published snapshot.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any

from . import metrics
from .blending import apply_priors
from .cancellation import CancellationToken
from .config import EnginePolicy
from .enrichment_cache import EnrichmentCache, EnrichmentCacheEntry
from .errors import FetchAbandoned, QuotaStoreUnavailable, RemotePriorError, RemotePriorUnavailable
from .local_priors import LocalPriorStore, should_request_remote_prior
from .models import (
    UNIT_SYSTEMS,
    DosePrior,
    Observation,
    PredictionSet,
    RegressionFit,
)
from .observations import validate_observations
from .quota import QuotaDecision, QuotaLedger
from .regression import fit_all
from .remote_priors import RemotePriorClient, build_request_payload, merge_priors

logger = logging.getLogger(__name__)

QUOTA_UNVERIFIED_REASON = "Assisted model usage could not be verified. Using local priors for now."


def _stable_hash(value: str, size: int = 16) -> str:
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return digest[:size]


@dataclass(frozen=True)
class RequestFingerprint:
    """Identity of an enrichment request.

    Statistically indistinguishable situations (same counts, dose levels,
    rounded correlation and current dose) share a fingerprint.
    """

    key: str
    digest: str


def build_fingerprint(
    unit_system: str,
    fits: Iterable[RegressionFit],
    candidate_markers: Iterable[str],
) -> RequestFingerprint:
    candidates = sorted(set(candidate_markers))
    candidate_set = set(candidates)
    marker_context = sorted(
        (
            {
                "marker": fit.marker,
                "n": fit.sample_count,
                "d": fit.unique_dose_levels,
                "r": None if fit.correlation_r is None else round(fit.correlation_r, 3),
                "cd": round(fit.current_dose, 2),
                "tm": fit.trough_sample_count,
                "am": fit.all_sample_count,
            }
            for fit in fits
            if fit.marker in candidate_set
        ),
        key=lambda item: item["marker"],
    )
    key = json.dumps(
        {"unitSystem": unit_system, "markers": candidates, "markerContext": marker_context},
        separators=(",", ":"),
    )
    return RequestFingerprint(key=key, digest=_stable_hash(key))


@dataclass
class _InflightFetch:
    task: asyncio.Task[list[DosePrior]]
    token: CancellationToken


class EnrichmentOrchestrator:
    def __init__(
        self,
        local_store: LocalPriorStore | None = None,
        remote_client: RemotePriorClient | None = None,
        quota: QuotaLedger | None = None,
        cache: EnrichmentCache | None = None,
        policy: EnginePolicy | None = None,
    ) -> None:
        self.local_store = local_store if local_store is not None else LocalPriorStore()
        self.remote_client = remote_client
        self.quota = quota if quota is not None else QuotaLedger()
        self.cache = cache if cache is not None else EnrichmentCache()
        self.policy = policy or EnginePolicy()
        self._current_token: CancellationToken | None = None
        self._inflight: dict[str, _InflightFetch] = {}
        self._published = PredictionSet(predictions=(), unit_system="eu")

    def snapshot(self) -> PredictionSet:
        """Last published state, including the transient loading state."""
        return self._published

    def cancel(self) -> None:
        """Abandon the current recomputation and any fetch it started."""
        if self._current_token is not None:
            self._current_token.cancel("cancelled")
        for inflight in self._inflight.values():
            inflight.token.cancel("cancelled")
        if self._published.loading:
            self._published = replace(self._published, loading=False)

    def _publish(self, token: CancellationToken, result: PredictionSet) -> bool:
        if token.cancelled:
            return False
        self._published = result
        return True

    def _forget_fetch(self, key: str, inflight: _InflightFetch, task: asyncio.Task[Any]) -> None:
        if self._inflight.get(key) is inflight:
            del self._inflight[key]
        if not task.cancelled():
            # marks the exception retrieved when every waiter has already left
            task.exception()

    async def _join_fetch(
        self,
        fingerprint: RequestFingerprint,
        payload: dict[str, Any],
        token: CancellationToken,
    ) -> list[DosePrior]:
        inflight = self._inflight.get(fingerprint.key)
        if inflight is None or inflight.token.cancelled:
            fetch_token = CancellationToken()
            task = asyncio.ensure_future(self.remote_client.fetch_priors(payload, fetch_token))
            inflight = _InflightFetch(task=task, token=fetch_token)
            self._inflight[fingerprint.key] = inflight
            task.add_done_callback(
                lambda done, key=fingerprint.key, entry=inflight: self._forget_fetch(key, entry, done)
            )
        else:
            logger.debug(
                "Joining in-flight dose prior fetch",
                extra={"dose_fingerprint": fingerprint.digest},
            )

        waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({inflight.task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if inflight.task not in done:
            raise FetchAbandoned("Recomputation superseded while waiting for dose priors")
        return inflight.task.result()

    async def compute_predictions(
        self,
        observations: Iterable[Observation | Mapping[str, Any]],
        unit_system: str,
        enabled: bool = True,
    ) -> PredictionSet:
        if unit_system not in UNIT_SYSTEMS:
            raise ValueError(f"unit_system must be one of {', '.join(UNIT_SYSTEMS)}, got {unit_system!r}")

        token = CancellationToken()
        if self._current_token is not None:
            self._current_token.cancel("superseded")
        self._current_token = token
        metrics.record_recomputation()

        batch = validate_observations(observations)
        fits = fit_all(batch.accepted, self.policy)
        candidates = [fit.marker for fit in fits if should_request_remote_prior(fit, self.policy)]
        candidate_set = set(candidates)
        local = self.local_store.for_fits([fit for fit in fits if fit.marker in candidate_set], unit_system)
        fingerprint = build_fingerprint(unit_system, fits, candidates)
        log_extra = {"dose_fingerprint": fingerprint.digest, "dose_unit_system": unit_system}

        for key, inflight in self._inflight.items():
            if key != fingerprint.key:
                inflight.token.cancel("superseded")

        def assemble(
            priors: Sequence[DosePrior],
            *,
            assisted: Sequence[str] = (),
            fallback: bool = False,
            limit_reason: str = "",
            limit_code: str | None = None,
            loading: bool = False,
            superseded: bool = False,
        ) -> PredictionSet:
            predictions = apply_priors(
                fits,
                priors,
                unit_system,
                offline_prior_fallback=fallback,
                assisted_markers=frozenset(assisted),
                policy=self.policy,
            )
            return PredictionSet(
                predictions=tuple(predictions),
                unit_system=unit_system,
                loading=loading,
                offline_prior_fallback=fallback,
                limit_reason=limit_reason,
                limit_code=limit_code,
                assisted_markers=tuple(assisted),
                rejected_observations=batch.rejected,
                fingerprint=fingerprint.digest,
                superseded=superseded,
            )

        def superseded_result() -> PredictionSet:
            metrics.record_superseded()
            logger.info("Dose recomputation superseded", extra=log_extra)
            return assemble(local, superseded=True)

        async def commit(result: PredictionSet) -> PredictionSet:
            if token.cancelled:
                return superseded_result()
            try:
                remaining = await self.quota.remaining()
            except QuotaStoreUnavailable as exc:
                logger.warning(
                    "Could not read remaining assisted runs: %s",
                    exc,
                    extra={**log_extra, "dose_error_code": exc.code},
                )
                remaining = None
            result = replace(result, remaining_assisted=remaining)
            if not self._publish(token, result):
                return superseded_result()
            return result

        if not enabled:
            return await commit(assemble(local))
        if not candidates:
            return await commit(assemble(()))

        cached = self.cache.get(fingerprint.key)
        if cached is not None:
            metrics.record_cache_hit()
            logger.debug("Using cached dose priors", extra=log_extra)
            return await commit(
                assemble(
                    cached.merged_priors,
                    assisted=cached.assisted_markers,
                    fallback=cached.offline_fallback,
                )
            )

        self._publish(token, assemble(local, loading=True))

        try:
            decision = await self.quota.evaluate()
        except QuotaStoreUnavailable as exc:
            logger.warning(
                "Could not verify assisted usage, using local priors: %s",
                exc,
                extra={**log_extra, "dose_error_code": exc.code},
            )
            decision = QuotaDecision(allowed=False, reason=QUOTA_UNVERIFIED_REASON, code=exc.code)
        else:
            if not decision.allowed:
                metrics.record_quota_denial()
                logger.info("Assisted dose model limit reached: %s", decision.reason, extra=log_extra)
        if token.cancelled:
            return superseded_result()
        if not decision.allowed:
            return await commit(
                assemble(local, fallback=True, limit_reason=decision.reason, limit_code=decision.code)
            )

        payload = build_request_payload(fits, unit_system, candidates)
        try:
            if self.remote_client is None:
                raise RemotePriorUnavailable("No remote prior client configured")
            remote = await self._join_fetch(fingerprint, payload, token)
        except FetchAbandoned:
            return superseded_result()
        except RemotePriorError as exc:
            if token.cancelled:
                return superseded_result()
            logger.warning(
                "Remote dose priors unavailable, using local priors: %s",
                exc,
                extra={**log_extra, "dose_error_code": exc.code},
            )
            return await commit(assemble(local, fallback=True))

        if token.cancelled:
            return superseded_result()

        merged = merge_priors(local, remote)
        remote_markers = {prior.marker for prior in remote}
        assisted = tuple(marker for marker in candidates if marker in remote_markers)
        # cache write and charge claim happen with no await in between
        self.cache.put(
            fingerprint.key,
            EnrichmentCacheEntry(
                merged_priors=tuple(merged),
                assisted_markers=assisted,
                offline_fallback=False,
            ),
        )
        if self.cache.mark_charged(fingerprint.key):
            try:
                await self.quota.record()
            except QuotaStoreUnavailable as exc:
                # uncharged results are not reused; the next run fetches and charges again
                self.cache.release_charge(fingerprint.key)
                self.cache.discard(fingerprint.key)
                logger.warning(
                    "Could not charge assisted run, result not cached: %s",
                    exc,
                    extra={**log_extra, "dose_error_code": exc.code},
                )

        logger.info(
            "Applied remote dose priors for %d of %d candidate markers",
            len(assisted),
            len(candidates),
            extra=log_extra,
        )
        return await commit(assemble(merged, assisted=assisted))
