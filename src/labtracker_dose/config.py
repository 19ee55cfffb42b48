import os
from dataclasses import dataclass

_ENV_PREFIX = "LABTRACKER_DOSE_"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(_ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{_ENV_PREFIX}{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(_ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(_ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class EnginePolicy:
    """Fit, blend and projection thresholds."""

    min_samples: int = 4
    min_dose_levels: int = 2
    trough_min_samples: int = 3
    flat_min_abs_r: float = 0.2
    flat_min_relative_effect: float = 0.03
    flat_t_threshold: float = 1.0
    outlier_mad_multiplier: float = 3.0
    high_confidence_min_samples: int = 6
    high_confidence_min_dose_levels: int = 3
    high_confidence_min_r_squared: float = 0.5
    negligible_prior_weight: float = 0.9
    heavy_prior_weight: float = 0.5
    sigma_floor_fraction: float = 0.02
    band_z: float = 1.96
    extrapolation_penalty: float = 0.5
    extrapolation_min_scale_mg: float = 20.0

    @classmethod
    def from_env(cls) -> "EnginePolicy":
        return cls(
            min_samples=max(2, _env_int("MIN_SAMPLES", cls.min_samples)),
            min_dose_levels=max(2, _env_int("MIN_DOSE_LEVELS", cls.min_dose_levels)),
            trough_min_samples=max(2, _env_int("TROUGH_MIN_SAMPLES", cls.trough_min_samples)),
            flat_min_abs_r=_env_float("FLAT_MIN_ABS_R", cls.flat_min_abs_r),
            flat_min_relative_effect=_env_float(
                "FLAT_MIN_RELATIVE_EFFECT", cls.flat_min_relative_effect
            ),
            flat_t_threshold=_env_float("FLAT_T_THRESHOLD", cls.flat_t_threshold),
            outlier_mad_multiplier=_env_float("OUTLIER_MAD_MULTIPLIER", cls.outlier_mad_multiplier),
            high_confidence_min_samples=_env_int(
                "HIGH_CONFIDENCE_MIN_SAMPLES", cls.high_confidence_min_samples
            ),
            high_confidence_min_dose_levels=_env_int(
                "HIGH_CONFIDENCE_MIN_DOSE_LEVELS", cls.high_confidence_min_dose_levels
            ),
            high_confidence_min_r_squared=_env_float(
                "HIGH_CONFIDENCE_MIN_R_SQUARED", cls.high_confidence_min_r_squared
            ),
            negligible_prior_weight=min(1.0, max(0.0, _env_float(
                "NEGLIGIBLE_PRIOR_WEIGHT", cls.negligible_prior_weight
            ))),
            heavy_prior_weight=min(1.0, max(0.0, _env_float(
                "HEAVY_PRIOR_WEIGHT", cls.heavy_prior_weight
            ))),
            sigma_floor_fraction=max(0.0, _env_float("SIGMA_FLOOR_FRACTION", cls.sigma_floor_fraction)),
            band_z=max(0.0, _env_float("BAND_Z", cls.band_z)),
            extrapolation_penalty=max(0.0, _env_float(
                "EXTRAPOLATION_PENALTY", cls.extrapolation_penalty
            )),
            extrapolation_min_scale_mg=max(1e-6, _env_float(
                "EXTRAPOLATION_MIN_SCALE_MG", cls.extrapolation_min_scale_mg
            )),
        )


@dataclass(frozen=True)
class Config:
    remote_priors_url: str = "http://localhost:8090/api/dose/priors"
    remote_timeout_seconds: float = 8.0
    remote_enabled: bool = True
    max_runs_per_day: int = 10
    max_runs_per_month: int = 60
    cache_max_entries: int = 256
    cache_ttl_seconds: float = 6 * 60 * 60
    database_url: str | None = None
    service_host: str = "0.0.0.0"
    service_port: int = 8090
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL", "").strip() or None

        return cls(
            remote_priors_url=os.environ.get(
                _ENV_PREFIX + "REMOTE_PRIORS_URL", cls.remote_priors_url
            ).strip(),
            remote_timeout_seconds=max(0.1, _env_float(
                "REMOTE_TIMEOUT_SECONDS", cls.remote_timeout_seconds
            )),
            remote_enabled=_env_bool("REMOTE_ENABLED", cls.remote_enabled),
            max_runs_per_day=max(0, _env_int("MAX_RUNS_PER_DAY", cls.max_runs_per_day)),
            max_runs_per_month=max(0, _env_int("MAX_RUNS_PER_MONTH", cls.max_runs_per_month)),
            cache_max_entries=max(1, _env_int("CACHE_MAX_ENTRIES", cls.cache_max_entries)),
            cache_ttl_seconds=max(1.0, _env_float("CACHE_TTL_SECONDS", cls.cache_ttl_seconds)),
            database_url=database_url,
            service_host=os.environ.get(_ENV_PREFIX + "SERVICE_HOST", cls.service_host),
            service_port=_env_int("SERVICE_PORT", cls.service_port),
            log_format=os.environ.get(_ENV_PREFIX + "LOG_FORMAT", cls.log_format),
        )
