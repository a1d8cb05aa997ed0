"""
Pipeline configuration.

Values come from environment variables (optionally a .env file) with
defaults matching the documented heuristics. Every threshold is tunable.
"""

import os
import logging
from dataclasses import dataclass, field, asdict, replace
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for CLI and script use."""
    level_name = (level or os.getenv("JOBMARKET_LOG_LEVEL", "INFO")).upper()
    numeric = getattr(logging, level_name, None)
    if not isinstance(numeric, int):
        raise ConfigError(f"Unknown log level: {level_name}")
    logging.basicConfig(level=numeric, format=LOG_FORMAT)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class PipelineConfig:
    """All tunable pipeline parameters."""

    # Normalizer
    default_currency: str = "EUR"
    drop_invalid: bool = False

    # Deduplicator
    duplicate_threshold: float = 0.85
    ngram_range: Tuple[int, int] = (3, 5)
    max_block_size: int = 2000
    workers: int = 4

    # Embedder
    max_features: int = 725
    min_df: int = 2
    max_df: float = 0.95

    # Clusterer
    k_min: int = 3
    k_max: int = 15
    job_clusters: Optional[int] = None
    n_init: int = 10
    random_seed: int = 42
    term_clusters: int = 250

    # Keyword tagger
    cert_min_len: int = 3
    cert_max_len: int = 8

    # Run machinery
    stage_timeout_seconds: Optional[float] = None
    checkpoint_dir: Optional[str] = None
    seniority_rules_path: Optional[str] = None
    lexicon_path: Optional[str] = None
    db_url: Optional[str] = None

    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if not 0.0 < self.duplicate_threshold <= 1.0:
            raise ConfigError(f"duplicate_threshold must be in (0, 1], got {self.duplicate_threshold}")
        if self.ngram_range[0] < 1 or self.ngram_range[0] > self.ngram_range[1]:
            raise ConfigError(f"Invalid ngram_range {self.ngram_range}")
        if self.k_min < 2 or self.k_min > self.k_max:
            raise ConfigError(f"Invalid k range ({self.k_min}, {self.k_max})")
        if self.n_init < 1:
            raise ConfigError("n_init must be >= 1")
        if not 0.0 < self.max_df <= 1.0:
            raise ConfigError(f"max_df must be in (0, 1], got {self.max_df}")
        if self.min_df < 1:
            raise ConfigError("min_df must be >= 1")
        if self.cert_min_len < 1 or self.cert_min_len > self.cert_max_len:
            raise ConfigError(f"Invalid certification length bounds ({self.cert_min_len}, {self.cert_max_len})")
        if self.stage_timeout_seconds is not None and self.stage_timeout_seconds <= 0:
            raise ConfigError("stage_timeout_seconds must be positive")
        if self.workers < 1:
            raise ConfigError("workers must be >= 1")

    @classmethod
    def from_env(cls, **overrides) -> "PipelineConfig":
        """
        Build configuration from JOBMARKET_* environment variables.

        Args:
            **overrides: Explicit values that win over the environment

        Returns:
            Validated PipelineConfig
        """
        load_dotenv()

        timeout = os.getenv("JOBMARKET_STAGE_TIMEOUT_SECONDS")
        job_clusters = os.getenv("JOBMARKET_JOB_CLUSTERS")

        values = dict(
            default_currency=os.getenv("JOBMARKET_DEFAULT_CURRENCY", "EUR").upper(),
            drop_invalid=_env_bool("JOBMARKET_DROP_INVALID", False),
            duplicate_threshold=_env_float("JOBMARKET_DUPLICATE_THRESHOLD", 0.85),
            ngram_range=(
                _env_int("JOBMARKET_NGRAM_MIN", 3),
                _env_int("JOBMARKET_NGRAM_MAX", 5),
            ),
            max_block_size=_env_int("JOBMARKET_MAX_BLOCK_SIZE", 2000),
            workers=_env_int("JOBMARKET_WORKERS", 4),
            max_features=_env_int("JOBMARKET_MAX_FEATURES", 725),
            min_df=_env_int("JOBMARKET_MIN_DF", 2),
            max_df=_env_float("JOBMARKET_MAX_DF", 0.95),
            k_min=_env_int("JOBMARKET_K_MIN", 3),
            k_max=_env_int("JOBMARKET_K_MAX", 15),
            job_clusters=_env_int("JOBMARKET_JOB_CLUSTERS", 0) if job_clusters else None,
            n_init=_env_int("JOBMARKET_N_INIT", 10),
            random_seed=_env_int("JOBMARKET_RANDOM_SEED", 42),
            term_clusters=_env_int("JOBMARKET_TERM_CLUSTERS", 250),
            cert_min_len=_env_int("JOBMARKET_CERT_MIN_LEN", 3),
            cert_max_len=_env_int("JOBMARKET_CERT_MAX_LEN", 8),
            stage_timeout_seconds=_env_float("JOBMARKET_STAGE_TIMEOUT_SECONDS", 0.0) if timeout else None,
            checkpoint_dir=os.getenv("JOBMARKET_CHECKPOINT_DIR") or None,
            seniority_rules_path=os.getenv("JOBMARKET_SENIORITY_RULES") or None,
            lexicon_path=os.getenv("JOBMARKET_LEXICON") or None,
            db_url=os.getenv("JOBMARKET_DB_URL") or None,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def with_overrides(self, **overrides) -> "PipelineConfig":
        """Return a copy with the given non-None values replaced."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def snapshot(self) -> Dict[str, Any]:
        """Serializable view used in checkpoint manifests (no DB URL)."""
        data = asdict(self)
        data.pop("db_url", None)
        data["ngram_range"] = list(self.ngram_range)
        return data
