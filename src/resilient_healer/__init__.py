"""resilient-healer - Self-healing repair engine for API test suites.

This package repairs automated tests that broke after an API changed. It
retries flaky executions with exponential backoff, caches repairs, keeps AI
spend inside a monthly budget and records every healing attempt.

Example:
    >>> from resilient_healer import create_orchestrator, load_settings
    >>> orchestrator = create_orchestrator(load_settings())
    >>> report = asyncio.run(orchestrator.heal_failed_tests(failed_tests))

Attributes:
    __version__ (str): The version of the resilient-healer package.
    SelfHealingOrchestrator (type): End-to-end repair workflow.
    RetryHandler (type): Retry with backoff and flaky-test detection.
    CacheStore (type): TTL/LRU repair cache.
    CostOptimizer (type): Token cost estimation and budget ledger.
    HealingMetrics (type): Ledger of healing attempts and reports.
    FailedTest (type): Data model for a failed test.
    Settings (type): Configuration settings.
    load_settings (Callable): Function to load settings.
"""

from .__version__ import __version__
from .core.models import FailedTest, FailureType, HealingReport, HealingStrategy
from .executor.retry_handler import RetryHandler
from .healing.cache_store import CacheStore
from .healing.cost_optimizer import CostOptimizer
from .healing.healing_metrics import HealingMetrics
from .healing.orchestrator import SelfHealingOrchestrator, create_orchestrator
from .utils.config_types import Settings
from .utils.settings import load_settings

__all__ = [
    "CacheStore",
    "CostOptimizer",
    "FailedTest",
    "FailureType",
    "HealingMetrics",
    "HealingReport",
    "HealingStrategy",
    "RetryHandler",
    "SelfHealingOrchestrator",
    "Settings",
    "load_settings",
    "create_orchestrator",
    "__version__",
]
