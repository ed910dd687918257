"""Runtime settings: trial quotas, matcher thresholds and per-tier pricing.

Every value can be overridden through an ``AGENTDESK_<NAME>`` environment
variable. Thresholds are tunables, not contracts.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Dict, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

Tier = Literal["fast", "quality"]
ResponseLength = Literal["concise", "normal", "detailed"]


class QuotaLimits(BaseModel):
    maxTokensPerWindow: int = 10_000
    maxRequestsPerHour: int = 20
    maxCostPerWindow: float = 1.0
    requireAuth: bool = True


class ModelRates(BaseModel):
    """USD per one million tokens."""
    input: float
    output: float
    cached: float


MODEL_RATES: Dict[Tier, ModelRates] = {
    "fast":    ModelRates(input=1.0, output=5.0, cached=0.1),
    "quality": ModelRates(input=3.0, output=15.0, cached=0.3),
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AGENTDESK_", env_ignore_empty=True, extra="ignore")

    trial_max_tokens_per_day: int = 10_000
    trial_max_requests_per_hour: int = 20
    trial_max_cost_per_day: float = 1.0
    trial_require_auth: bool = True

    burst_max_requests: int = 50
    burst_window_seconds: int = 60

    max_agents_per_user: int = 50

    answer_min_confidence: float = Field(0.2, ge=0.0, le=1.0)
    fallback_strong: float = Field(0.4, ge=0.0, le=1.0)
    fallback_weak: float = Field(0.2, ge=0.0, le=1.0)
    fallback_cap: float = Field(0.7, ge=0.0, le=1.0)

    history_limit: int = 20
    classifier_temperature: float = 0.3
    classifier_max_tokens: int = 2048
    answer_temperature: float = 0.7
    response_length: ResponseLength = "normal"

    def trial_limits(self) -> QuotaLimits:
        return QuotaLimits(
            maxTokensPerWindow=self.trial_max_tokens_per_day,
            maxRequestsPerHour=self.trial_max_requests_per_hour,
            maxCostPerWindow=self.trial_max_cost_per_day,
            requireAuth=self.trial_require_auth,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def compute_cost(input_tokens: int, output_tokens: int, cached_tokens: int, tier: Tier) -> float:
    rates = MODEL_RATES[tier]
    return (input_tokens * rates.input + output_tokens * rates.output + cached_tokens * rates.cached) / 1_000_000
