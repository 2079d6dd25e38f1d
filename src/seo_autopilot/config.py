"""
Autopilot Configuration

Loads SEO_ prefixed environment variables using pydantic-settings.
Execution modes are conservative by default: guarded proposals require
explicit SEO_GUARDED_MODE_ENABLED=true.
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .config_env import ENV_FILE, PROJECT_ROOT, RunMode
from .thresholds import (
    CreateThresholds,
    DecisionThresholds,
    ExpandThresholds,
    FreezeThresholds,
    KillSwitchThresholds,
    LearningThresholds,
    RateLimit,
    RewriteThresholds,
    TuningThresholds,
)

__all__ = ["AutopilotSettings", "ENV_FILE", "PROJECT_ROOT", "RunMode"]


def _split_csv(value: str) -> Tuple[str, ...]:
    return tuple(part for part in (p.strip() for p in value.split(",")) if part)


class AutopilotSettings(BaseSettings):
    """All thresholds, caps and collaborator endpoints for the pipeline."""

    model_config = SettingsConfigDict(
        env_prefix="SEO_",
        env_file=ENV_FILE,
        extra="ignore",
    )

    # --- Storage ---
    data_dir: Path = Field(
        default=Path("data/seo_autopilot"),
        description="Root for locks, audit log, page store, proposals and rate-limit counters.",
    )

    # --- Locks ---
    lock_timeout_daily_min: float = Field(default=120.0, gt=0, description="Stale-lock age for daily runs")
    lock_timeout_weekly_min: float = Field(default=360.0, gt=0, description="Stale-lock age for weekly runs")
    lock_timeout_observer_min: float = Field(default=60.0, gt=0, description="Stale-lock age for observer runs")
    lock_timeout_guarded_min: float = Field(default=60.0, gt=0, description="Stale-lock age for guarded runs")
    lock_timeout_tuning_min: float = Field(default=60.0, gt=0, description="Stale-lock age for tuning runs")

    # --- Create page ---
    create_min_impressions: int = Field(default=100, ge=0, description="Minimum impressions before a page is created")
    create_min_position: float = Field(default=8.0, ge=1, description="Best (lowest) rank eligible for page creation")
    create_max_position: float = Field(default=30.0, ge=1, description="Worst (highest) rank eligible for page creation")
    create_allowed_services: str = Field(
        default="plumbing,electrical",
        description="Comma-separated service allow-list for safe rollout.",
    )
    create_allowed_locations: str = Field(
        default="",
        description="Comma-separated location allow-list (empty = all locations).",
    )
    max_creates_per_run: int = Field(default=5, ge=0, description="Batch cap for CREATE decisions")

    # --- Rewrite meta ---
    rewrite_min_impressions: int = Field(default=200, ge=0, description="Minimum impressions before a CTR test")
    max_rewrites_per_run: int = Field(default=10, ge=0, description="Batch cap for REWRITE decisions")
    min_days_between_optimizations: float = Field(
        default=7.0,
        ge=0,
        description="Do not rewrite or expand the same target more often than this.",
    )

    # --- Expand content ---
    expand_min_position: float = Field(default=4.0, ge=1, description="Best rank eligible for expansion")
    expand_max_position: float = Field(default=15.0, ge=1, description="Worst rank eligible for expansion")
    expand_min_clicks_trend: float = Field(default=0.10, description="Minimum fractional click growth")
    expand_max_bounce_rate: float = Field(default=0.60, ge=0, le=1, description="Skip expansion above this bounce rate")
    max_expands_per_run: int = Field(default=5, ge=0, description="Batch cap for EXPAND decisions")

    # --- Freeze ---
    freeze_min_impressions: int = Field(default=200, ge=0, description="Minimum impressions to call a page a winner")
    freeze_max_position: float = Field(default=10.0, ge=1, description="Worst rank considered for freeze")
    winning_pattern_threshold: float = Field(
        default=0.25,
        ge=0,
        description="Fraction by which CTR must beat the positional benchmark to freeze.",
    )
    max_freezes_per_run: int = Field(default=20, ge=0, description="Batch cap for FREEZE decisions")

    # --- Kill switch ---
    kill_switch_enabled: bool = Field(default=True, description="Pre-flight safety gate")
    kill_switch_max_click_drop: float = Field(
        default=0.20,
        ge=0,
        le=1,
        description="Abort when clicks dropped by at least this fraction window-over-window.",
    )
    kill_switch_max_submission_error_rate: float = Field(
        default=0.50,
        ge=0,
        le=1,
        description="Abort when failed/attempted external submissions reaches this rate.",
    )
    kill_switch_min_submission_attempts: int = Field(
        default=5,
        ge=1,
        description="Minimum attempts before the error-rate rule can trip.",
    )
    kill_switch_suspicious_impressions_rise: float = Field(default=0.10, ge=0, description="Impressions rise half of the suspicious pair")
    kill_switch_suspicious_click_drop: float = Field(default=0.10, ge=0, description="Clicks drop half of the suspicious pair")
    kill_switch_window_days: int = Field(default=7, ge=1, description="Length of each comparison window")

    # --- Learning loop ---
    learning_window_days: int = Field(default=7, ge=1, description="Length of each evaluation window")
    learning_ctr_delta: float = Field(default=0.01, ge=0, description="CTR change that counts as improved/regressed")
    high_ctr_threshold: float = Field(default=0.05, ge=0, le=1, description="CTR bar for top performers and patterns")
    min_pattern_samples: int = Field(default=2, ge=1, description="Winners needed before a pattern is trusted")
    max_top_performers: int = Field(default=10, ge=1, description="Top performers carried into pattern extraction")
    max_targets_per_pattern: int = Field(default=5, ge=1, description="Expansion locations per pattern")
    max_clones_per_week: int = Field(default=10, ge=0, description="Hard cap on CLONE decisions per weekly run")
    expansion_locations: str = Field(
        default=(
            "los-angeles,san-francisco,san-diego,sacramento,san-jose,fresno,long-beach,"
            "oakland,bakersfield,anaheim,santa-ana,riverside,stockton,irvine,chula-vista,"
            "fremont,santa-clarita,modesto,fontana,moreno-valley"
        ),
        description="Comma-separated scope of locations patterns may be cloned into.",
    )

    # --- Rate limits ---
    serp_api_max_per_hour: int = Field(default=10, ge=0, description="External SERP calls per hour")
    serp_api_max_per_day: int = Field(default=100, ge=0, description="External SERP calls per day")
    crawl_max_per_hour: int = Field(default=30, ge=0, description="Crawl requests per hour")
    crawl_max_per_day: int = Field(default=300, ge=0, description="Crawl requests per day")
    max_proposals_per_day: int = Field(default=10, ge=0, description="Guarded-mode proposals per day")
    max_creates_per_day: int = Field(default=5, ge=0, description="Pages created per day")
    max_rewrites_per_day: int = Field(default=10, ge=0, description="Meta rewrites per day")
    max_expands_per_day: int = Field(default=10, ge=0, description="Content expansions per day")
    max_clones_per_day: int = Field(default=10, ge=0, description="Clones per day")

    # --- Executor ---
    action_cooldown_s: float = Field(
        default=1.0,
        ge=0,
        description="Pause between successful outward actions (PROPOSE/CLONE).",
    )

    # --- Guarded mode ---
    guarded_mode_enabled: bool = Field(default=False, description="Opt-in for writing proposals")
    min_opportunity_score: int = Field(default=60, ge=0, le=100, description="Minimum score to propose")
    max_proposals_per_run: int = Field(default=5, ge=0, description="Proposals considered per guarded run")

    # --- Tuning ---
    tuning_min_sample_size: int = Field(default=20, ge=1, description="Records required before recommending")
    tuning_low_ctr_threshold: float = Field(default=0.02, ge=0, le=1, description="CTR below which meta is weak")
    tuning_lookback_days: int = Field(default=30, ge=1, description="Daily audit history analysed by tuning")

    # --- Ingestion ---
    signals_path: str = Field(default="", description="JSONL export of search performance rows")
    signals_url: str = Field(default="", description="HTTP endpoint returning search performance rows")
    ingestion_timeout_s: float = Field(default=10.0, gt=0, description="Per-request ingestion timeout")
    serp_api_enabled: bool = Field(default=False, description="Use the live SERP source instead of mock rankings")
    serp_api_key: str = Field(default="", description="SERP API key")
    serp_api_url: str = Field(default="https://serpapi.com/search", description="SERP API endpoint")
    competitor_services: str = Field(default="plumbing,electrical", description="Services to scan for competitors")
    max_competitor_position: int = Field(default=20, ge=1, description="Ignore competitor ranks beyond this")

    # --- Content generator ---
    content_api_base: str = Field(default="https://api.openai.com/v1", description="Chat-completions API base")
    content_api_key: str = Field(default="", description="Content generator API key")
    content_model: str = Field(default="gpt-4o-mini", description="Content generator model")
    content_timeout_s: float = Field(default=30.0, gt=0, description="Content generation timeout")

    # --- Site ---
    site_name: str = Field(default="Service Marketplace", description="Provider name in structured data")
    site_url: str = Field(default="https://www.example.com", description="Base URL for created pages")

    # --- Logging ---
    log_level: str = Field(default="INFO", description="Log level")

    # --- Helpers ---

    @property
    def content_configured(self) -> bool:
        return bool(self.content_api_key and self.content_api_base)

    @field_validator(
        "create_allowed_services",
        "create_allowed_locations",
        "expansion_locations",
        "competitor_services",
        mode="before",
    )
    @classmethod
    def _normalise_csv(cls, v):
        if isinstance(v, (list, tuple)):
            v = ",".join(str(item) for item in v)
        if isinstance(v, str):
            return ",".join(_split_csv(v))
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v

    def decision_thresholds(self) -> DecisionThresholds:
        return DecisionThresholds(
            create=CreateThresholds(
                min_impressions=self.create_min_impressions,
                min_position=self.create_min_position,
                max_position=self.create_max_position,
                allowed_services=_split_csv(self.create_allowed_services),
                allowed_locations=_split_csv(self.create_allowed_locations),
                max_per_run=self.max_creates_per_run,
            ),
            rewrite=RewriteThresholds(
                min_impressions=self.rewrite_min_impressions,
                min_days_between_optimizations=self.min_days_between_optimizations,
                max_per_run=self.max_rewrites_per_run,
            ),
            expand=ExpandThresholds(
                min_position=self.expand_min_position,
                max_position=self.expand_max_position,
                min_clicks_trend=self.expand_min_clicks_trend,
                max_bounce_rate=self.expand_max_bounce_rate,
                min_days_between_optimizations=self.min_days_between_optimizations,
                max_per_run=self.max_expands_per_run,
            ),
            freeze=FreezeThresholds(
                min_impressions=self.freeze_min_impressions,
                max_position=self.freeze_max_position,
                winning_margin=self.winning_pattern_threshold,
                max_per_run=self.max_freezes_per_run,
            ),
        )

    def kill_switch_thresholds(self) -> KillSwitchThresholds:
        return KillSwitchThresholds(
            enabled=self.kill_switch_enabled,
            max_click_drop=self.kill_switch_max_click_drop,
            max_submission_error_rate=self.kill_switch_max_submission_error_rate,
            min_submission_attempts=self.kill_switch_min_submission_attempts,
            suspicious_impressions_rise=self.kill_switch_suspicious_impressions_rise,
            suspicious_click_drop=self.kill_switch_suspicious_click_drop,
            window_days=self.kill_switch_window_days,
        )

    def learning_thresholds(self) -> LearningThresholds:
        return LearningThresholds(
            window_days=self.learning_window_days,
            ctr_delta=self.learning_ctr_delta,
            high_ctr=self.high_ctr_threshold,
            min_pattern_samples=self.min_pattern_samples,
            max_top_performers=self.max_top_performers,
            max_targets_per_pattern=self.max_targets_per_pattern,
            max_clones_per_run=self.max_clones_per_week,
            expansion_locations=_split_csv(self.expansion_locations),
        )

    def tuning_thresholds(self) -> TuningThresholds:
        return TuningThresholds(
            low_ctr=self.tuning_low_ctr_threshold,
            high_ctr=self.high_ctr_threshold,
            min_impressions_create=self.create_min_impressions,
            min_sample_size=self.tuning_min_sample_size,
        )

    def rate_limits(self) -> Dict[str, RateLimit]:
        return {
            "serp_api": RateLimit(per_hour=self.serp_api_max_per_hour, per_day=self.serp_api_max_per_day),
            "crawl": RateLimit(per_hour=self.crawl_max_per_hour, per_day=self.crawl_max_per_day),
            "proposals": RateLimit(per_day=self.max_proposals_per_day),
            "create": RateLimit(per_day=self.max_creates_per_day),
            "rewrite": RateLimit(per_day=self.max_rewrites_per_day),
            "expand": RateLimit(per_day=self.max_expands_per_day),
            "clone": RateLimit(per_day=self.max_clones_per_day),
        }

    def lock_timeouts(self) -> Dict[RunMode, float]:
        """Stale-lock timeouts in seconds, per mode."""
        return {
            RunMode.DAILY: self.lock_timeout_daily_min * 60.0,
            RunMode.WEEKLY: self.lock_timeout_weekly_min * 60.0,
            RunMode.OBSERVER: self.lock_timeout_observer_min * 60.0,
            RunMode.GUARDED: self.lock_timeout_guarded_min * 60.0,
            RunMode.TUNING: self.lock_timeout_tuning_min * 60.0,
        }

    def competitor_service_list(self) -> Tuple[str, ...]:
        return _split_csv(self.competitor_services)
