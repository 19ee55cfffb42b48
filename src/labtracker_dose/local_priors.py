"""Bundled population dose-response priors.

The local table is the zero-latency fallback for every remote enrichment path.
Only markers on ``PRIORITY_PRIOR_MARKERS`` are ever sent to the remote prior
service; everything else relies on personal data plus this table.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from .config import EnginePolicy
from .markers import canonicalize_marker, normalize_unit
from .models import DosePrior, DoseRange, PriorEvidence, RegressionFit
from .regression import is_personal_eligible

LOCAL_PRIOR_DATASET_VERSION = "dose_priors.v1"

PRIORITY_PRIOR_MARKERS: frozenset[str] = frozenset(
    {
        "Testosterone",
        "Free Testosterone",
        "Estradiol",
        "Hematocrit",
        "Apolipoprotein B",
        "LDL Cholesterol",
    }
)

_DEFAULT_DOSE_RANGE = {"min": 60.0, "max": 220.0}

_EVIDENCE: dict[str, dict[str, str]] = {
    "Testosterone": {
        "citation": "Bhasin et al., 2001",
        "study_type": "Randomized dose-response trial",
        "relevance": "Higher testosterone dose showed stepwise increase in serum testosterone.",
        "quality": "high",
    },
    "Free Testosterone": {
        "citation": "Meta-analysis TRT free testosterone kinetics",
        "study_type": "Meta-analysis",
        "relevance": "Free testosterone typically increases with androgen exposure.",
        "quality": "medium",
    },
    "Estradiol": {
        "citation": "Aromatization pathway studies in TRT populations",
        "study_type": "Observational + mechanistic",
        "relevance": "Estradiol often trends with testosterone exposure via aromatization.",
        "quality": "medium",
    },
    "Hematocrit": {
        "citation": "TRT erythrocytosis cohort studies",
        "study_type": "Observational cohorts",
        "relevance": "Higher androgen exposure can increase hematocrit in susceptible users.",
        "quality": "medium",
    },
    "Apolipoprotein B": {
        "citation": "Androgen and lipoprotein metabolism reviews",
        "study_type": "Systematic review",
        "relevance": "ApoB may increase on some androgen protocols.",
        "quality": "medium",
    },
    "LDL Cholesterol": {
        "citation": "Androgen effect on lipid profile cohorts",
        "study_type": "Observational cohorts",
        "relevance": "LDL response is heterogeneous but can be dose-related.",
        "quality": "medium",
    },
}

# (marker, unit_system) -> coefficients. Intercepts anchor a typical value at 0 mg/week.
_PRIOR_TABLE_V1: dict[tuple[str, str], dict[str, Any]] = {
    ("Testosterone", "eu"): {"unit": "nmol/L", "slope_per_mg": 0.1, "intercept": 7.5, "sigma": 4.2},
    ("Testosterone", "us"): {"unit": "ng/dL", "slope_per_mg": 2.9, "intercept": 200.0, "sigma": 120.0},
    ("Free Testosterone", "eu"): {"unit": "nmol/L", "slope_per_mg": 0.0012, "intercept": 0.25, "sigma": 0.08},
    ("Free Testosterone", "us"): {"unit": "pg/mL", "slope_per_mg": 0.36, "intercept": 60.0, "sigma": 18.0},
    ("Estradiol", "eu"): {"unit": "pmol/L", "slope_per_mg": 0.95, "intercept": 40.0, "sigma": 35.0},
    ("Estradiol", "us"): {"unit": "pg/mL", "slope_per_mg": 0.26, "intercept": 11.0, "sigma": 10.0},
    ("Hematocrit", "eu"): {"unit": "%", "slope_per_mg": 0.015, "intercept": 44.0, "sigma": 1.3},
    ("Hematocrit", "us"): {"unit": "%", "slope_per_mg": 0.015, "intercept": 44.0, "sigma": 1.3},
    ("Apolipoprotein B", "eu"): {"unit": "mg/dL", "slope_per_mg": 0.014, "intercept": 90.0, "sigma": 11.0},
    ("Apolipoprotein B", "us"): {"unit": "mg/dL", "slope_per_mg": 0.014, "intercept": 90.0, "sigma": 11.0},
    ("LDL Cholesterol", "eu"): {"unit": "mmol/L", "slope_per_mg": 0.0005, "intercept": 2.9, "sigma": 0.2},
    ("LDL Cholesterol", "us"): {"unit": "mg/dL", "slope_per_mg": 0.02, "intercept": 112.0, "sigma": 8.0},
}


def prior_key(marker: str, unit_system: str, unit: str) -> str:
    """Merge/lookup key: canonical marker, unit system and lower-cased unit."""
    return f"{canonicalize_marker(marker)}|{unit_system}|{normalize_unit(unit)}"


def _build_prior(marker: str, unit_system: str, row: dict[str, Any]) -> DosePrior:
    evidence = _EVIDENCE.get(marker)
    return DosePrior(
        marker=marker,
        unit=row["unit"],
        unit_system=unit_system,
        slope_per_mg=row["slope_per_mg"],
        intercept=row["intercept"],
        sigma_prior=row["sigma"],
        provenance="local",
        dose_range=DoseRange(min=_DEFAULT_DOSE_RANGE["min"], max=_DEFAULT_DOSE_RANGE["max"]),
        evidence=(PriorEvidence(**evidence),) if evidence else (),
    )


class LocalPriorStore:
    """Read-only view over the bundled prior table."""

    def __init__(self, table: dict[tuple[str, str], dict[str, Any]] | None = None) -> None:
        source = _PRIOR_TABLE_V1 if table is None else table
        self.version = LOCAL_PRIOR_DATASET_VERSION
        self._priors: dict[tuple[str, str], DosePrior] = {
            (marker, unit_system): _build_prior(marker, unit_system, row)
            for (marker, unit_system), row in source.items()
        }

    def __len__(self) -> int:
        return len(self._priors)

    def all(self, unit_system: str | None = None) -> list[DosePrior]:
        priors = [
            prior
            for prior in self._priors.values()
            if unit_system is None or prior.unit_system == unit_system
        ]
        return sorted(priors, key=lambda prior: (prior.marker, prior.unit_system))

    def get(self, marker: str, unit_system: str, unit: str | None = None) -> DosePrior | None:
        prior = self._priors.get((canonicalize_marker(marker), unit_system))
        if prior is None:
            return None
        if unit is not None and normalize_unit(unit) != normalize_unit(prior.unit):
            return None
        return prior

    def for_fits(self, fits: Iterable[RegressionFit], unit_system: str) -> list[DosePrior]:
        """Priors matching the fits' markers and units, one per key."""
        selected: dict[str, DosePrior] = {}
        for fit in fits:
            prior = self.get(fit.marker, unit_system, fit.unit)
            if prior is None:
                continue
            selected.setdefault(prior_key(prior.marker, prior.unit_system, prior.unit), prior)
        return list(selected.values())


def should_request_remote_prior(fit: RegressionFit, policy: EnginePolicy | None = None) -> bool:
    """A fit is a remote candidate when it cannot stand alone and the marker is curated."""
    if is_personal_eligible(fit, policy):
        return False
    return canonicalize_marker(fit.marker) in PRIORITY_PRIOR_MARKERS
