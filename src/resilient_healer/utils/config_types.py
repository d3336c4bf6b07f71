# This file defines the structure of configuration objects using Pydantic.
# It helps avoid circular dependencies by separating the type definition from its usage.

from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# --- Retry Settings Model ---
class RetrySettings(BaseModel):
    """Backoff and ceiling settings for the retry handler."""

    max_retries: int = Field(default=3, ge=0)  # Handler-level retry ceiling
    initial_delay_ms: float = Field(default=1000, gt=0)
    max_delay_ms: float = Field(default=30000, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    enable_jitter: bool = True
    jitter_factor: float = Field(default=0.3, ge=0, le=1)

    @model_validator(mode="after")
    def validate_delay_bounds(self) -> "RetrySettings":
        """Validate that the delay cap is not below the initial delay."""
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"initial_delay_ms ({self.initial_delay_ms})"
            )
        return self


# --- Cache Settings Model ---
class CacheSettings(BaseModel):
    """Settings for the repair cache store."""

    default_ttl: float = Field(default=86400, gt=0)  # Seconds (24h)
    max_size: int = Field(default=1000, gt=0)  # Maximum number of entries
    eviction_policy: str = "lru"
    persist_to_disk: bool = False  # Write-through to disk_path on every mutation
    disk_path: Optional[Path] = None

    @field_validator("eviction_policy")
    @classmethod
    def validate_eviction_policy(cls, v: str) -> str:
        """Validate eviction policy."""
        if v.lower() != "lru":
            raise ValueError(f"Invalid eviction_policy: '{v}'. Must be 'lru'")
        return v.lower()

    @model_validator(mode="after")
    def validate_persistence(self) -> "CacheSettings":
        if self.persist_to_disk and self.disk_path is None:
            raise ValueError("persist_to_disk requires disk_path")
        return self


# --- Cost Settings Models ---
class PricingSettings(BaseModel):
    """Model pricing in currency units per 1K tokens."""

    model: str = "gpt-4"
    prompt_price: float = Field(default=0.03, ge=0)
    completion_price: float = Field(default=0.06, ge=0)
    currency: str = "USD"


class CostSettings(BaseModel):
    """Budget and estimation settings for the cost optimizer."""

    pricing: PricingSettings = Field(default_factory=PricingSettings)
    monthly_budget: float = Field(default=100.0, gt=0)
    warning_threshold: float = Field(default=0.8, gt=0, le=1)  # Fraction of budget
    block_threshold: float = Field(default=1.0, gt=0)  # Fraction of budget
    fallback_cost_threshold: float = Field(default=0.10, ge=0)  # Per-request cost
    cache_enabled: bool = True
    chars_per_token: int = Field(default=4, gt=0)
    completion_ratio: float = Field(default=0.8, ge=0)  # Completion/prompt tokens

    @model_validator(mode="after")
    def validate_thresholds(self) -> "CostSettings":
        if self.block_threshold < self.warning_threshold:
            raise ValueError("block_threshold must be >= warning_threshold")
        return self


# --- Metrics Settings Model ---
class MetricsSettings(BaseModel):
    """Settings for the healing metrics ledger and its reports."""

    history_path: Path = Path(".healing-history.json")
    max_history_entries: int = Field(default=1000, gt=0)
    success_rate_warning_threshold: float = Field(default=0.5, ge=0, le=1)
    enable_visualizations: bool = True  # ASCII charts in the Markdown report
    # Approximate share of AI tokens attributed to prompts
    prompt_token_ratio: float = Field(default=0.4, ge=0, le=1)


# --- Orchestrator Settings Model ---
DEFAULT_HEALABLE_FAILURE_TYPES = ["assertion", "validation", "syntax", "runtime", "setup"]


class OrchestratorSettings(BaseModel):
    """Settings for the self-healing orchestrator."""

    max_attempts_per_test: int = Field(default=2, ge=1)
    max_total_time_ms: float = Field(default=300000, gt=0)  # Whole-batch deadline
    min_confidence: float = Field(default=0.6, ge=0, le=1)
    auto_retry: bool = True
    max_concurrency: int = Field(default=4, ge=1)
    regenerator: str = "ai"  # "ai" or "rule-based"
    analyzer: str = "rule-based"  # "rule-based" or "ai"
    fallback_to_rule_based: bool = True  # Rule-based repair when over budget
    healable_failure_types: List[str] = Field(
        default_factory=lambda: list(DEFAULT_HEALABLE_FAILURE_TYPES)
    )

    @field_validator("regenerator", "analyzer")
    @classmethod
    def validate_strategy_name(cls, v: str) -> str:
        normalized = v.lower().replace("_", "-")
        if normalized not in ("ai", "rule-based"):
            raise ValueError(f"Invalid value: '{v}'. Must be 'ai' or 'rule-based'")
        return normalized

    @field_validator("healable_failure_types")
    @classmethod
    def normalize_failure_types(cls, v: List[str]) -> List[str]:
        return [t.lower() for t in v]


# --- LLM Settings Model ---
class LLMSettings(BaseModel):
    """Configuration settings for LLM-backed analysis and regeneration."""

    provider: str = "openai"  # openai, anthropic or mock
    model: str = "gpt-4"
    api_key: Optional[str] = None  # Falls back to the provider's environment variable
    timeout_seconds: float = Field(default=30, gt=0)
    max_tokens: int = Field(default=2000, gt=0)
    temperature: float = Field(default=0.3, ge=0, le=2)

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Validate provider name."""
        if v.lower() not in ("openai", "anthropic", "mock"):
            raise ValueError(
                f"Invalid provider: '{v}'. Must be 'openai', 'anthropic' or 'mock'"
            )
        return v.lower()


# --- Main Settings Model ---
class Settings(BaseModel):
    """Configuration settings for the self-healing engine."""

    retry: RetrySettings = Field(default_factory=RetrySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    cost: CostSettings = Field(default_factory=CostSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)

    # Path settings
    project_root: Path = Field(default_factory=Path.cwd)

    # Logging settings
    log_level: str = "INFO"  # Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    @field_validator("project_root", mode="before")
    @classmethod
    def ensure_project_root_is_path(cls, v: Any) -> Path:
        """Ensure project_root is a Path object, defaulting to CWD if None."""
        if v is None:
            return Path.cwd()
        return Path(v)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        normalized = v.upper()
        if normalized not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log_level: '{v}'")
        return normalized
