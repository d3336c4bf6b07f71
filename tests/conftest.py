"""Pytest configuration for the resilient_healer tests."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest

from resilient_healer.core.cross_cutting.monitoring.metrics import ApplicationMetrics
from resilient_healer.core.models import FailedTest, FailureType, HealingContext
from resilient_healer.core.models.failed_test import HealingStrategy
from resilient_healer.core.models.healing import FailureAnalysis, RegenerationResult


class FakeClock:
    """Deterministic replacement for ``utc_now``."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeTimer:
    """Monotonic timer in seconds that only moves when told to."""

    def __init__(self):
        self.value = 100.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class StaticAnalyzer:
    """FailureAnalyzer returning one fixed analysis."""

    def __init__(self, analysis: Optional[FailureAnalysis] = None):
        self.analysis = analysis or FailureAnalysis(
            failure_type=FailureType.ASSERTION,
            root_cause="Field renamed",
            healable=True,
            confidence=0.9,
        )
        self.calls: List[FailedTest] = []

    async def analyze(self, failed_test: FailedTest) -> FailureAnalysis:
        self.calls.append(failed_test)
        return self.analysis


class ScriptedRegenerator:
    """TestRegenerator replaying a list of results (the last one repeats)."""

    def __init__(self, results: List[RegenerationResult]):
        self.results = results
        self.contexts: List[HealingContext] = []

    async def regenerate(self, context: HealingContext) -> RegenerationResult:
        self.contexts.append(context)
        index = min(len(self.contexts) - 1, len(self.results) - 1)
        return self.results[index]


def fixed_result(code: str = "fixed()", confidence: float = 0.9, cost: float = 0.0):
    return RegenerationResult(
        success=True,
        fixed_code=code,
        confidence=confidence,
        estimated_cost=cost,
        strategy=HealingStrategy.AI_POWERED,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
def metrics_client():
    """Metrics collected in a private registry so tests do not share counters."""
    return ApplicationMetrics()


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture
def make_failed_test():
    """Factory for FailedTest records."""

    def _make(
        name: str = "test_get_user",
        test_code: str = "assert response.json()['userName'] == 'ada'",
        error_message: str = "AssertionError: expected 'userName' in response",
        failure_type: FailureType = FailureType.ASSERTION,
        **kwargs,
    ) -> FailedTest:
        return FailedTest(
            name=name,
            file_path=kwargs.pop("file_path", "tests/api/test_users.py"),
            failure_type=failure_type,
            error_message=error_message,
            test_code=test_code,
            **kwargs,
        )

    return _make


@pytest.fixture
def failed_test(make_failed_test):
    return make_failed_test()


@pytest.fixture
def make_analyzer():
    """Factory for analyzers returning a fixed analysis."""
    return StaticAnalyzer


@pytest.fixture
def make_regenerator():
    """Factory for regenerators replaying scripted results."""
    return ScriptedRegenerator


@pytest.fixture
def make_fix():
    """Factory for successful AI regeneration results."""
    return fixed_result
