"""Tests for the SelfHealingOrchestrator."""

import asyncio
from unittest.mock import MagicMock, call

import pytest

from resilient_healer.core.errors import ConfigurationError
from resilient_healer.core.models import (
    FailureAnalysis,
    FailureType,
    HealingStatus,
    HealingStrategy,
    RegenerationResult,
)
from resilient_healer.executor.retry_handler import RetryHandler
from resilient_healer.healing.cache_store import CacheStore
from resilient_healer.healing.cost_optimizer import CostOptimizer
from resilient_healer.healing.healing_metrics import HealingMetrics
from resilient_healer.healing.analyzers import RuleBasedFailureAnalyzer
from resilient_healer.healing.orchestrator import SelfHealingOrchestrator, create_orchestrator
from resilient_healer.healing.regenerators import AITestRegenerator, RuleBasedRegenerator
from resilient_healer.llm.clients import MockLLMClient
from resilient_healer.utils.config_types import Settings

FIELD_RENAME_DIFF = {
    "changes": [
        {"type": "field_renamed", "old_value": "userName", "new_value": "user_name"}
    ]
}


def failed_result(error="boom"):
    return RegenerationResult(success=False, error=error)


@pytest.fixture
def make_orchestrator(metrics_client, no_sleep, timer, make_analyzer, make_regenerator, make_fix):
    def _make(analyzer=None, regenerator=None, **kwargs):
        kwargs.setdefault("cache_store", CacheStore(metrics_client=metrics_client))
        kwargs.setdefault("cost_optimizer", CostOptimizer(metrics_client=metrics_client))
        kwargs.setdefault("healing_metrics", HealingMetrics(metrics_client=metrics_client))
        kwargs.setdefault(
            "retry_handler",
            RetryHandler(metrics_client=metrics_client, sleep_func=no_sleep),
        )
        kwargs.setdefault("timer", timer)
        return SelfHealingOrchestrator(
            analyzer or make_analyzer(),
            regenerator or make_regenerator([make_fix()]),
            metrics_client=metrics_client,
            **kwargs,
        )

    return _make


class TimedRegenerator:
    """Regenerator that takes ``seconds`` of (fake) time per call."""

    def __init__(self, timer, seconds):
        self.timer = timer
        self.seconds = seconds
        self.calls = 0

    async def regenerate(self, context):
        self.calls += 1
        self.timer.advance(self.seconds)
        return RegenerationResult(success=True, fixed_code="fixed()", confidence=0.9)


class RaisingRegenerator:
    async def regenerate(self, context):
        raise RuntimeError("model crashed")


class RaisingAnalyzer:
    async def analyze(self, failed_test):
        raise ValueError("cannot parse stack trace")


class TestHealFailedTests:
    @pytest.mark.asyncio
    async def test_cache_reuse_across_batch(
        self, make_orchestrator, make_regenerator, make_fix, make_failed_test
    ):
        regenerator = make_regenerator(
            [make_fix("fixed_x()", cost=0.02), make_fix("fixed_y()", cost=0.02)]
        )
        orchestrator = make_orchestrator(regenerator=regenerator, max_concurrency=1)
        test_a = make_failed_test(name="test_a", test_code="check_x()")
        test_b = make_failed_test(name="test_b", test_code="check_y()")
        test_c = make_failed_test(name="test_c", test_code="check_x()")

        report = await orchestrator.heal_failed_tests(
            [test_a, test_b, test_c], FIELD_RENAME_DIFF
        )

        assert report.total_tests == 3
        assert report.successfully_healed == 3
        assert report.failed_healing == 0
        assert report.healing_attempts == 3
        assert [r.test_id for r in report.results] == [test_a.id, test_b.id, test_c.id]

        reused = report.result_for(test_c.id)
        assert reused.status is HealingStatus.APPLIED_FROM_CACHE
        assert reused.cache_hit is True
        assert reused.fixed_code == "fixed_x()"
        assert report.result_for(test_b.id).status is HealingStatus.HEALED
        assert len(regenerator.contexts) == 2

        assert orchestrator.cache_store.calculate_hit_rate() == pytest.approx(1 / 3)
        summary = orchestrator.get_summary()
        assert summary.ai_stats.times_used == 3
        assert summary.ai_stats.cache_hit_rate == pytest.approx(33.33, abs=0.01)
        assert summary.total_cost == pytest.approx(0.04)

    @pytest.mark.asyncio
    async def test_empty_batch(self, make_orchestrator):
        report = await make_orchestrator().heal_failed_tests([])
        assert report.total_tests == 0
        assert report.results == []

    @pytest.mark.asyncio
    async def test_concurrent_workers_keep_input_order(
        self, make_orchestrator, make_failed_test
    ):
        orchestrator = make_orchestrator(max_concurrency=3)
        tests = [make_failed_test(name=f"test_{i}", test_code=f"check({i})") for i in range(5)]

        report = await orchestrator.heal_failed_tests(tests)

        assert report.successfully_healed == 5
        assert [r.test_id for r in report.results] == [t.id for t in tests]

    @pytest.mark.asyncio
    async def test_deadline_skips_remaining_tests(
        self, make_orchestrator, make_failed_test, timer
    ):
        regenerator = TimedRegenerator(timer, seconds=2)
        orchestrator = make_orchestrator(
            regenerator=regenerator, max_concurrency=1, max_total_time_ms=1000
        )
        tests = [make_failed_test(name=f"test_{i}", test_code=f"check({i})") for i in range(3)]

        report = await orchestrator.heal_failed_tests(tests)

        assert regenerator.calls == 1
        assert report.successfully_healed == 1
        assert report.skipped == 2
        skipped = report.results[1]
        assert skipped.status is HealingStatus.SKIPPED
        assert skipped.attempted is False
        assert skipped.reason == "deadline-exceeded"
        assert report.total_time == pytest.approx(2000)

    @pytest.mark.asyncio
    async def test_report_counts_each_outcome(
        self, make_orchestrator, make_failed_test
    ):
        class ByTypeAnalyzer:
            async def analyze(self, failed_test):
                return FailureAnalysis(
                    failure_type=failed_test.failure_type,
                    root_cause="network flake",
                    healable=failed_test.failure_type is not FailureType.NETWORK,
                    confidence=0.9,
                )

        orchestrator = make_orchestrator(analyzer=ByTypeAnalyzer())
        healable = make_failed_test(name="test_ok")
        flaky_network = make_failed_test(name="test_net", failure_type=FailureType.NETWORK)

        report = await orchestrator.heal_failed_tests([healable, flaky_network])

        assert report.successfully_healed == 1
        assert report.non_healable == 1
        assert report.result_for(flaky_network.id).reason == "network flake"
        assert report.result_for(flaky_network.id).attempted is False

    @pytest.mark.asyncio
    async def test_one_test_error_does_not_abort_the_batch(
        self, make_orchestrator, make_failed_test, metrics_client, tmp_path
    ):
        unwritable = CacheStore(
            persist_to_disk=True,
            disk_path=tmp_path / "missing-dir" / "cache.json",
            metrics_client=metrics_client,
        )
        orchestrator = make_orchestrator(cache_store=unwritable, max_concurrency=2)
        tests = [make_failed_test(name=f"test_{i}", test_code=f"check({i})") for i in range(3)]

        report = await orchestrator.heal_failed_tests(tests)

        assert report.total_tests == 3
        assert [r.test_id for r in report.results] == [t.id for t in tests]
        assert report.failed_healing == 3
        assert report.healing_attempts == 3
        for result in report.results:
            assert result.status is HealingStatus.FAILED
            assert result.attempted is True
            assert "Failed to export cache" in result.reason

    @pytest.mark.asyncio
    async def test_progress_is_reported(self, make_orchestrator, make_failed_test):
        progress = MagicMock()
        orchestrator = make_orchestrator(progress_manager=progress)

        await orchestrator.heal_failed_tests(
            [make_failed_test(test_code="a()"), make_failed_test(test_code="b()")]
        )

        progress.create_task.assert_called_once_with("healing", "Healing 2 tests", total=2)
        assert progress.update_task.call_args_list == [
            call("healing", advance=1),
            call("healing", advance=1),
            call("healing", completed=True),
        ]


class TestHealTest:
    @pytest.mark.asyncio
    async def test_successful_regeneration_is_cached(
        self, make_orchestrator, failed_test
    ):
        orchestrator = make_orchestrator()

        result = await orchestrator.heal_test(failed_test)

        assert result.status is HealingStatus.HEALED
        assert result.success is True
        assert result.attempts == 1
        assert result.strategy is HealingStrategy.AI_POWERED
        assert orchestrator.cache_store.size() == 1
        (attempt,) = orchestrator.get_healing_attempts(failed_test.id)
        assert attempt.success is True
        assert attempt.generated_fix == "fixed()"

    @pytest.mark.asyncio
    async def test_flaky_regeneration_is_retried(
        self, make_orchestrator, make_regenerator, make_fix, failed_test
    ):
        regenerator = make_regenerator([failed_result(), make_fix()])
        orchestrator = make_orchestrator(regenerator=regenerator)

        result = await orchestrator.heal_test(failed_test)

        assert result.status is HealingStatus.HEALED
        assert result.attempts == 2
        assert orchestrator.retry_handler.is_flaky(f"heal:{failed_test.id}")
        outcomes = [a.success for a in orchestrator.get_healing_attempts(failed_test.id)]
        assert outcomes == [False, True]

    @pytest.mark.asyncio
    async def test_no_retry_when_auto_retry_is_off(
        self, make_orchestrator, make_regenerator, failed_test
    ):
        orchestrator = make_orchestrator(
            regenerator=make_regenerator([failed_result("syntax error in output")]),
            auto_retry=False,
        )

        result = await orchestrator.heal_test(failed_test)

        assert result.status is HealingStatus.FAILED
        assert result.attempts == 1
        assert result.reason == "syntax error in output"

    @pytest.mark.asyncio
    async def test_low_confidence_fix_is_rejected(
        self, make_orchestrator, make_regenerator, make_fix, failed_test
    ):
        orchestrator = make_orchestrator(
            regenerator=make_regenerator([make_fix(confidence=0.5)])
        )

        result = await orchestrator.heal_test(failed_test)

        assert result.status is HealingStatus.FAILED
        assert result.attempts == 2
        assert result.reason == "low-confidence (0.50 < 0.60)"
        assert orchestrator.cache_store.size() == 0

    @pytest.mark.asyncio
    async def test_low_confidence_analysis_is_not_healable(
        self, make_orchestrator, make_analyzer, make_regenerator, make_fix, failed_test
    ):
        regenerator = make_regenerator([make_fix()])
        analyzer = make_analyzer(
            FailureAnalysis(
                failure_type=FailureType.ASSERTION,
                root_cause="unclear",
                healable=True,
                confidence=0.3,
            )
        )
        orchestrator = make_orchestrator(analyzer=analyzer, regenerator=regenerator)

        result = await orchestrator.heal_test(failed_test)

        assert result.status is HealingStatus.NON_HEALABLE
        assert regenerator.contexts == []

    @pytest.mark.asyncio
    async def test_failure_type_outside_healable_list(
        self, make_orchestrator, failed_test
    ):
        orchestrator = make_orchestrator(healable_failure_types=["validation"])

        result = await orchestrator.heal_test(failed_test)

        assert result.status is HealingStatus.NON_HEALABLE

    @pytest.mark.asyncio
    async def test_analyzer_error(self, make_orchestrator, failed_test):
        orchestrator = make_orchestrator(analyzer=RaisingAnalyzer())

        result = await orchestrator.heal_test(failed_test)

        assert result.status is HealingStatus.FAILED
        assert result.reason == "analysis-failed: cannot parse stack trace"
        assert result.attempted is False

    @pytest.mark.asyncio
    async def test_regenerator_error_is_recorded(self, make_orchestrator, failed_test):
        orchestrator = make_orchestrator(regenerator=RaisingRegenerator())

        result = await orchestrator.heal_test(failed_test)

        assert result.status is HealingStatus.FAILED
        assert result.reason == "model crashed"
        attempts = orchestrator.get_healing_attempts(failed_test.id)
        assert [a.failure_reason for a in attempts] == ["regenerator-error: model crashed"] * 2
        assert orchestrator.cost_optimizer.check_budget_limit().reserved == 0

    @pytest.mark.asyncio
    async def test_attempt_limit_is_per_test(
        self, make_orchestrator, make_regenerator, failed_test
    ):
        orchestrator = make_orchestrator(regenerator=make_regenerator([failed_result()]))

        first = await orchestrator.heal_test(failed_test)
        second = await orchestrator.heal_test(failed_test)

        assert first.attempts == 2
        assert second.status is HealingStatus.SKIPPED
        assert second.reason == "max-attempts-reached"
        assert second.attempted is False

        orchestrator.clear_history(failed_test.id)
        third = await orchestrator.heal_test(failed_test)
        assert third.attempts == 2

    @pytest.mark.asyncio
    async def test_concurrent_calls_for_one_test_are_serialized(
        self, make_orchestrator, make_regenerator, failed_test
    ):
        orchestrator = make_orchestrator(regenerator=make_regenerator([failed_result()]))

        results = await asyncio.gather(
            orchestrator.heal_test(failed_test), orchestrator.heal_test(failed_test)
        )

        assert sorted(r.status.value for r in results) == ["failed", "skipped"]
        assert len(orchestrator.get_healing_attempts(failed_test.id)) == 2
        assert orchestrator._test_locks == {}

    @pytest.mark.asyncio
    async def test_per_test_locks_are_released(self, make_orchestrator, make_failed_test):
        orchestrator = make_orchestrator()

        for i in range(3):
            await orchestrator.heal_test(make_failed_test(name=f"test_{i}"))

        assert orchestrator._test_locks == {}

    @pytest.mark.asyncio
    async def test_token_usage_is_charged_to_the_budget(
        self, make_orchestrator, make_regenerator, failed_test
    ):
        regenerator = make_regenerator(
            [
                RegenerationResult(
                    success=True,
                    fixed_code="fixed()",
                    confidence=0.9,
                    tokens_used=1500,
                    prompt_tokens=1000,
                    completion_tokens=500,
                    model="gpt-4",
                )
            ]
        )
        orchestrator = make_orchestrator(regenerator=regenerator)

        await orchestrator.heal_test(failed_test)

        budget = orchestrator.cost_optimizer.check_budget_limit()
        assert budget.spent == pytest.approx(0.06)
        assert budget.reserved == 0
        (attempt,) = orchestrator.get_healing_attempts(failed_test.id)
        assert attempt.estimated_cost == pytest.approx(0.06)
        assert attempt.tokens_used == 1500


class TestBudget:
    @pytest.fixture
    def broke(self, metrics_client):
        return CostOptimizer(monthly_budget=0.0001, metrics_client=metrics_client)

    @pytest.mark.asyncio
    async def test_over_budget_falls_back_to_rules(
        self, make_orchestrator, make_regenerator, make_fix, failed_test, broke
    ):
        regenerator = make_regenerator([make_fix()])
        orchestrator = make_orchestrator(regenerator=regenerator, cost_optimizer=broke)

        result = await orchestrator.heal_test(failed_test, FIELD_RENAME_DIFF)

        assert regenerator.contexts == []
        assert result.status is HealingStatus.HEALED
        assert result.strategy is HealingStrategy.RULE_BASED
        assert result.reason == "budget-exceeded"
        assert result.confidence == pytest.approx(0.95)
        assert "['user_name']" in result.fixed_code
        assert result.attempts == 2

        fallback = orchestrator.get_summary().fallback_stats
        assert fallback.times_used == 2
        assert fallback.fallback_reasons == {"budget-exceeded": 1, "cost-optimization": 1}

    @pytest.mark.asyncio
    async def test_over_budget_without_applicable_rule(
        self, make_orchestrator, failed_test, broke
    ):
        orchestrator = make_orchestrator(cost_optimizer=broke)

        result = await orchestrator.heal_test(failed_test)

        assert result.status is HealingStatus.BUDGET_EXCEEDED
        assert result.reason == "budget-exceeded"
        assert result.success is False

    @pytest.mark.asyncio
    async def test_over_budget_without_fallback(
        self, make_orchestrator, failed_test, broke
    ):
        orchestrator = make_orchestrator(cost_optimizer=broke, fallback_to_rule_based=False)

        report = await orchestrator.heal_failed_tests([failed_test], FIELD_RENAME_DIFF)

        assert orchestrator.fallback_regenerator is None
        assert report.failed_healing == 1
        assert report.results[0].status is HealingStatus.BUDGET_EXCEEDED
        assert report.healing_attempts == 1


class TestConfiguration:
    def test_get_config_returns_a_copy(self, make_orchestrator):
        orchestrator = make_orchestrator(min_confidence=0.8)
        config = orchestrator.get_config()
        config.min_confidence = 0.1
        assert orchestrator.get_config().min_confidence == 0.8

    def test_update_config(self, make_orchestrator):
        orchestrator = make_orchestrator()
        orchestrator.update_config(max_attempts_per_test=5, regenerator="rule_based")
        config = orchestrator.get_config()
        assert config.max_attempts_per_test == 5
        assert config.regenerator == "rule-based"
        assert config.min_confidence == 0.6

    def test_invalid_config(self, make_orchestrator):
        orchestrator = make_orchestrator()
        with pytest.raises(ConfigurationError):
            orchestrator.update_config(max_attempts_per_test=0)
        assert orchestrator.get_config().max_attempts_per_test == 2


class TestCreateOrchestrator:
    def test_components_follow_settings(self, metrics_client):
        settings = Settings.model_validate(
            {
                "retry": {"max_retries": 1},
                "cache": {"max_size": 5},
                "cost": {"monthly_budget": 20},
                "orchestrator": {"regenerator": "rule-based", "max_concurrency": 2},
            }
        )

        orchestrator = create_orchestrator(settings, metrics_client=metrics_client)

        assert isinstance(orchestrator.analyzer, RuleBasedFailureAnalyzer)
        assert isinstance(orchestrator.regenerator, RuleBasedRegenerator)
        assert orchestrator.retry_handler.get_config().max_retries == 1
        assert orchestrator.cache_store.config.max_size == 5
        assert orchestrator.cost_optimizer.check_budget_limit().limit == 20
        assert orchestrator.get_config().max_concurrency == 2

    @pytest.mark.asyncio
    async def test_ai_components_share_the_client(self, metrics_client, failed_test):
        client = MockLLMClient(["```python\nassert body['user_name'] == 'ada'\n```"])
        settings = Settings.model_validate({"orchestrator": {"analyzer": "ai"}})

        orchestrator = create_orchestrator(
            settings, llm_client=client, metrics_client=metrics_client
        )
        result = await orchestrator.heal_test(failed_test)

        assert isinstance(orchestrator.regenerator, AITestRegenerator)
        assert orchestrator.regenerator.llm_client is client
        assert orchestrator.analyzer.llm_client is client
        assert result.status is HealingStatus.HEALED
        assert orchestrator.cost_optimizer.calculate_total_cost() > 0
