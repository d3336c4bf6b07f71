from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .failed_test import FailedTest, FailureType, HealingStrategy, utc_now


@dataclass
class HealingAttempt:
    """
    One unit of repair work.

    Created open by ``HealingMetrics.record_attempt`` and sealed exactly once by
    ``record_success`` or ``record_failure``.
    """

    id: str
    failed_test: FailedTest
    failure_type: FailureType
    start_time: datetime = field(default_factory=utc_now)
    strategy: HealingStrategy = HealingStrategy.AI_POWERED
    end_time: Optional[datetime] = None
    duration: Optional[float] = None  # milliseconds
    success: bool = False
    failure_reason: Optional[str] = None
    tokens_used: int = 0
    estimated_cost: float = 0.0
    generated_fix: Optional[str] = None
    cache_hit: bool = False

    @property
    def sealed(self) -> bool:
        return self.end_time is not None


@dataclass(frozen=True)
class TypeMetrics:
    attempts: int
    successful: int
    failed: int
    success_rate: float
    average_time: float
    total_cost: float


@dataclass(frozen=True)
class AIUsageStats:
    times_used: int
    total_tokens: int
    prompt_tokens: int
    completion_tokens: int
    total_cost: float
    average_tokens: float
    success_rate: float
    cache_hit_rate: float


@dataclass(frozen=True)
class FallbackUsageStats:
    times_used: int
    success_rate: float
    average_time: float
    fallback_reasons: Dict[str, int]


@dataclass(frozen=True)
class HealingSummary:
    total_attempts: int
    successful: int
    failed: int
    success_rate: float
    average_time: float
    total_cost: float
    by_failure_type: Dict[FailureType, TypeMetrics]
    ai_stats: AIUsageStats
    fallback_stats: FallbackUsageStats
    period_start: datetime
    period_end: datetime
    warnings: List[str]
    recommendations: List[str]


@dataclass(frozen=True)
class FailureAnalysis:
    """Diagnosis produced by a FailureAnalyzer."""

    failure_type: FailureType
    root_cause: str
    healable: bool
    confidence: float
    suggested_fix: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RegenerationResult:
    """What a TestRegenerator returns for one repair invocation."""

    success: bool
    fixed_code: Optional[str] = None
    confidence: float = 0.0
    tokens_used: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated_cost: float = 0.0
    model: Optional[str] = None
    strategy: HealingStrategy = HealingStrategy.AI_POWERED
    error: Optional[str] = None
    rules_applied: List[str] = field(default_factory=list)


class HealingStatus(Enum):
    """Terminal state of one failed test inside a healing batch."""

    APPLIED_FROM_CACHE = "applied-from-cache"
    HEALED = "healed"
    FAILED = "failed"
    BUDGET_EXCEEDED = "budget-exceeded"
    NON_HEALABLE = "non-healable"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class HealingResult:
    test_id: str
    status: HealingStatus
    attempted: bool
    success: bool
    duration: float = 0.0  # milliseconds
    fixed_code: Optional[str] = None
    confidence: float = 0.0
    strategy: Optional[HealingStrategy] = None
    cache_hit: bool = False
    attempts: int = 0
    reason: Optional[str] = None


@dataclass(frozen=True)
class HealingReport:
    total_tests: int
    successfully_healed: int
    failed_healing: int
    non_healable: int
    skipped: int
    healing_attempts: int
    total_time: float  # milliseconds
    results: List[HealingResult]
    timestamp: datetime = field(default_factory=utc_now)

    def result_for(self, test_id: str) -> Optional[HealingResult]:
        for result in self.results:
            if result.test_id == test_id:
                return result
        return None
