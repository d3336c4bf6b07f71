from .cache import CacheEntry, CacheKeyContext, CacheStatistics, HealingContext
from .cost import (
    APIRequest,
    APIResponse,
    BatchStrategy,
    BudgetStatus,
    Complexity,
    CostBreakdown,
    CostDriver,
    CostEstimate,
    CostRecommendation,
    CostReport,
    CostTrends,
    HealingRequest,
    OptimizedBatch,
    TokenUsageRecord,
)
from .failed_test import FailedTest, FailureType, HealingStrategy
from .healing import (
    AIUsageStats,
    FailureAnalysis,
    FallbackUsageStats,
    HealingAttempt,
    HealingReport,
    HealingResult,
    HealingStatus,
    HealingSummary,
    RegenerationResult,
    TypeMetrics,
)
from .llm import LLMResponse
from .retry import (
    FlakyTestRecord,
    FlakyTestReport,
    FlakyTestStatistics,
    RetryAttempt,
    RetryStatistics,
    TestExecutionResult,
    TestTask,
)
from .serialization import to_jsonable

__all__ = [
    "AIUsageStats",
    "APIRequest",
    "APIResponse",
    "BatchStrategy",
    "BudgetStatus",
    "CacheEntry",
    "CacheKeyContext",
    "CacheStatistics",
    "Complexity",
    "CostBreakdown",
    "CostDriver",
    "CostEstimate",
    "CostRecommendation",
    "CostReport",
    "CostTrends",
    "FailedTest",
    "FailureAnalysis",
    "FailureType",
    "FallbackUsageStats",
    "FlakyTestRecord",
    "FlakyTestReport",
    "FlakyTestStatistics",
    "HealingAttempt",
    "HealingContext",
    "HealingReport",
    "HealingRequest",
    "HealingResult",
    "HealingStatus",
    "HealingStrategy",
    "HealingSummary",
    "LLMResponse",
    "OptimizedBatch",
    "RegenerationResult",
    "RetryAttempt",
    "RetryStatistics",
    "TestExecutionResult",
    "TestTask",
    "TokenUsageRecord",
    "TypeMetrics",
    "to_jsonable",
]
