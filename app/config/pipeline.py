"""Job tuning configuration.

Defines the page sizes, batch limits, time budgets and model constants
used by the scheduled jobs. Values come from defaults.yaml; any key that
is missing falls back to the dataclass default.
"""

from dataclasses import dataclass, field, fields
from functools import lru_cache
from typing import Any

from app.config.settings import get_settings


def _from_section(cls, section: dict[str, Any] | None):
    """Build a config dataclass from a yaml section, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    values = {k: v for k, v in (section or {}).items() if k in known}
    return cls(**values)


@dataclass
class IngestionConfig:
    """Market, resolution and trade backfill sync."""
    time_budget_seconds: float = 25.0
    active_page_size: int = 500
    active_pages: int = 4
    markets_page_size: int = 500
    resolutions_batch: int = 25
    resolution_recheck_hours: int = 6
    backfill_prepare_limit: int = 500
    backfill_batch: int = 25
    trades_page_size: int = 500
    retry_cooldown_minutes: int = 30


@dataclass
class LiveConfig:
    """Per-wallet live trade refresh."""
    time_budget_seconds: float = 25.0
    max_target_wallets: int = 100
    max_wallets_per_run: int = 10
    trades_page_size: int = 200
    max_price_tokens: int = 50
    min_sample_any_threshold: int = 10


@dataclass
class ScoringConfig:
    """Wallet statistics and profile synthesis."""
    time_budget_seconds: float = 55.0
    thresholds: tuple[float, ...] = (0.05, 0.02, 0.01)
    profile_threshold: float = 0.02
    min_sample_for_follow: int = 20
    sample_saturation: int = 50
    late_window_hours: float = 6.0
    recency_half_life_days: float = 30.0
    hedge_rate_max: float = 0.25
    late_rate_max: float = 0.60

    def __post_init__(self):
        self.thresholds = tuple(sorted((float(t) for t in self.thresholds), reverse=True))
        if self.profile_threshold not in self.thresholds:
            raise ValueError(
                f"profile_threshold {self.profile_threshold} not in thresholds {self.thresholds}"
            )

    @property
    def widest_threshold(self) -> float:
        return self.thresholds[0]

    @property
    def tightest_threshold(self) -> float:
        return self.thresholds[-1]


@dataclass
class AdviceConfig:
    """Log-odds advice model. No ML, pure statistics."""
    time_budget_seconds: float = 55.0
    batch_size: int = 50
    k_pos: float = 0.8
    k_flow: float = 1.2
    half_life_hours: float = 48.0
    window_hours: float = 72.0
    eps: float = 1e-9
    default_confidence_no_data: int = 10
    cache_ttl_minutes: int = 10
    candidate_recent_days: int = 3
    candidate_min_follow_score: float = 5.0


@dataclass
class PipelineConfig:
    """Complete job configuration."""
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    live: LiveConfig = field(default_factory=LiveConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    advice: AdviceConfig = field(default_factory=AdviceConfig)

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "PipelineConfig":
        return cls(
            ingestion=_from_section(IngestionConfig, config.get("ingestion")),
            live=_from_section(LiveConfig, config.get("live")),
            scoring=_from_section(ScoringConfig, config.get("scoring")),
            advice=_from_section(AdviceConfig, config.get("advice")),
        )


@lru_cache
def get_pipeline_config() -> PipelineConfig:
    """Get the job configuration loaded from defaults.yaml."""
    return PipelineConfig.from_dict(get_settings().load_defaults_config())
