import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .failed_test import FailedTest, FailureType, HealingStrategy, utc_now


class CostRecommendation(Enum):
    """What the optimizer suggests doing with a prospective AI call."""

    USE_AI = "use-ai"
    CHECK_CACHE = "check-cache"
    REDUCE_PROMPT = "reduce-prompt-size"
    USE_FALLBACK = "use-fallback"

    @property
    def description(self) -> str:
        return {
            CostRecommendation.USE_AI: "Proceed with the AI call",
            CostRecommendation.CHECK_CACHE: "Check the repair cache before calling the AI",
            CostRecommendation.REDUCE_PROMPT: "Reduce prompt size before calling the AI",
            CostRecommendation.USE_FALLBACK: "Use the rule-based fallback instead of the AI",
        }[self]


@dataclass(frozen=True)
class CostEstimate:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost: float
    prompt_cost: float
    completion_cost: float
    within_budget: bool
    recommendation: CostRecommendation


@dataclass(frozen=True)
class BudgetStatus:
    limit: float
    spent: float
    reserved: float
    remaining: float
    percent_used: float
    exceeded: bool
    at_warning_threshold: bool
    days_remaining: int
    projected_spend: float


@dataclass(frozen=True)
class APIRequest:
    """An AI call as issued by a regenerator or analyzer."""

    model: str
    id: str = field(default_factory=lambda: f"req-{uuid.uuid4().hex[:12]}")
    failure_type: Optional[FailureType] = None
    strategy: HealingStrategy = HealingStrategy.AI_POWERED
    reservation_id: Optional[str] = None


@dataclass(frozen=True)
class APIResponse:
    """Actual token usage reported by the provider."""

    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class TokenUsageRecord:
    request_id: str
    timestamp: datetime
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float
    model: str
    strategy: HealingStrategy
    failure_type: Optional[FailureType] = None


@dataclass(frozen=True)
class CostBreakdown:
    total: float
    by_failure_type: Dict[str, float]
    by_date: Dict[str, float]
    by_strategy: Dict[str, float]
    prompt_cost: float
    completion_cost: float


@dataclass(frozen=True)
class CostTrends:
    daily_average: float
    projected_monthly: float
    cost_per_healing: float


@dataclass(frozen=True)
class CostDriver:
    category: str
    cost: float
    percentage: float


@dataclass(frozen=True)
class CostReport:
    period_start: datetime
    period_end: datetime
    total_cost: float
    monthly_spend: float
    breakdown: CostBreakdown
    budget: BudgetStatus
    trends: CostTrends
    suggestions: List[str]
    top_cost_drivers: List[CostDriver]


class Complexity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {Complexity.LOW: 1, Complexity.MEDIUM: 2, Complexity.HIGH: 3}[self]


@dataclass(frozen=True)
class HealingRequest:
    failed_test: FailedTest
    priority: int = 0
    complexity: Complexity = Complexity.MEDIUM

    @property
    def id(self) -> str:
        return self.failed_test.id


class BatchStrategy(Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class OptimizedBatch:
    id: str
    requests: List[HealingRequest]
    estimated_cost: float
    estimated_tokens: int
    strategy: BatchStrategy
    created_at: datetime = field(default_factory=utc_now)

    @property
    def order(self) -> List[str]:
        return [request.id for request in self.requests]
