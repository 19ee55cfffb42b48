"""Personal dose-response modelling for lab markers."""

from .blending import apply_priors, blend
from .config import Config, EnginePolicy
from .enrichment import EnrichmentOrchestrator, RequestFingerprint, build_fingerprint
from .enrichment_cache import EnrichmentCache, EnrichmentCacheEntry
from .local_priors import LOCAL_PRIOR_DATASET_VERSION, PRIORITY_PRIOR_MARKERS, LocalPriorStore
from .models import DosePrediction, DosePrior, Observation, PredictionSet, Projection, RegressionFit
from .projection import project, project_scenarios
from .quota import InMemoryQuotaStore, PostgresQuotaStore, QuotaLedger
from .regression import fit_all, fit_marker
from .remote_priors import RemotePriorClient

__all__ = [
    "LOCAL_PRIOR_DATASET_VERSION",
    "PRIORITY_PRIOR_MARKERS",
    "Config",
    "DosePrediction",
    "DosePrior",
    "EnginePolicy",
    "EnrichmentCache",
    "EnrichmentCacheEntry",
    "EnrichmentOrchestrator",
    "InMemoryQuotaStore",
    "LocalPriorStore",
    "Observation",
    "PostgresQuotaStore",
    "PredictionSet",
    "Projection",
    "QuotaLedger",
    "RegressionFit",
    "RemotePriorClient",
    "RequestFingerprint",
    "apply_priors",
    "blend",
    "build_fingerprint",
    "fit_all",
    "fit_marker",
    "project",
    "project_scenarios",
]
