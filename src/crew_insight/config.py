"""Configuration models for the crew insight service."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field


class CompletionConfig(BaseModel):
    """Configures the completion client and its retry schedule."""

    model: str = "gpt-4o-mini"
    max_retries: int = Field(default=3, ge=0)
    initial_retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    default_max_tokens: int = Field(default=4000, ge=1)
    default_temperature: float = Field(default=0.7, ge=0.0, le=1.0)
    structured_temperature: float = Field(default=0.3, ge=0.0, le=1.0)


class RiskHeuristicConfig(BaseModel):
    """Thresholds for the low-score counting fallback used to rank subjects."""

    sample_size: int = Field(default=30, ge=1)
    low_score_threshold: float = 50.0
    min_flagged_metrics: int = Field(default=5, ge=1)
    high_threshold: int = Field(default=10, ge=1)
    medium_threshold: int = Field(default=7, ge=1)
    max_results: int = Field(default=20, ge=1)
    max_risk_factors: int = Field(default=5, ge=0)


class ResponseLimits(BaseModel):
    """Hard limits enforced on structured answers."""

    summary_chars: int = Field(default=150, ge=10)
    max_findings: int = Field(default=5, ge=1)
    max_actions: int = Field(default=3, ge=1)
    detailed_analysis_words: int = Field(default=500, ge=1)
    detailed_analysis_min_chars: int = Field(default=500, ge=0)


class ReadinessRequirements(BaseModel):
    """Baseline promotion requirements handed to the readiness prompt."""

    min_sea_time_months: int = Field(default=24, ge=0)
    required_certifications: list[str] = Field(
        default_factory=lambda: ["STCW Basic Safety", "STCW Advanced Fire Fighting"]
    )
    min_metric_score: float = Field(default=70.0, ge=0.0, le=100.0)


class PipelineConfig(BaseModel):
    """Configures context gathering, limits and batch pacing."""

    history_turns: int = Field(default=10, ge=0)
    benchmark_metric_limit: int = Field(default=10, ge=0)
    summary_valid_days: int = Field(default=15, ge=1)
    event_lookback_days: int = Field(default=365, ge=1)
    recent_experience_months: int = Field(default=12, ge=1)
    fuzzy_search_limit: int = Field(default=5, ge=1)
    batch_spacing_seconds: float = Field(default=1.0, ge=0.0)
    risk: RiskHeuristicConfig = Field(default_factory=RiskHeuristicConfig)
    limits: ResponseLimits = Field(default_factory=ResponseLimits)
    readiness: ReadinessRequirements = Field(default_factory=ReadinessRequirements)


class ServiceSettings(BaseModel):
    """Process-level settings for the HTTP service."""

    openai_api_key: str | None = None
    model: str = "gpt-4o-mini"
    environment: str = "production"
    seed_path: str | None = None

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @classmethod
    def from_env(cls) -> "ServiceSettings":
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            environment=os.getenv("CREW_INSIGHT_ENV", "production"),
            seed_path=os.getenv("CREW_INSIGHT_SEED_PATH") or None,
        )
