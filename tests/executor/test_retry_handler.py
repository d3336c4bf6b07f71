"""Tests for the RetryHandler."""

import asyncio
import json
from typing import List

import pytest

from resilient_healer.core.errors import ConcurrentTaskError, ConfigurationError
from resilient_healer.core.models.retry import TestExecutionResult, TestTask
from resilient_healer.executor.retry_handler import RetryHandler
from resilient_healer.utils.config_types import RetrySettings


def scripted_executor(outcomes: List[bool]):
    """Executor returning the scripted outcomes in order; the last one repeats."""
    calls: List[TestTask] = []

    async def executor(task: TestTask) -> TestExecutionResult:
        calls.append(task)
        success = outcomes[min(len(calls) - 1, len(outcomes) - 1)]
        return TestExecutionResult(
            task_id=task.id,
            success=success,
            error=None if success else f"failure #{len(calls)}",
        )

    executor.calls = calls
    return executor


@pytest.fixture
def handler(metrics_client, no_sleep):
    return RetryHandler(
        RetrySettings(enable_jitter=False),
        metrics_client=metrics_client,
        sleep_func=no_sleep,
    )


@pytest.fixture
def task():
    return TestTask(id="task-1", file_path="tests/api/test_users.py", test_name="test_get_user")


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_immediate_success_is_not_flaky(self, handler, task):
        executor = scripted_executor([True])

        result = await handler.execute_with_retry(task, executor)

        assert result.success is True
        assert result.retry_attempt == 0
        assert result.is_flaky is False
        assert len(executor.calls) == 1
        assert handler.is_flaky(task.id) is False
        assert handler.is_permanent_failure(task.id) is False
        assert handler.get_retry_attempts(task.id) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failures", [1, 2, 3])
    async def test_success_after_failures_is_flaky(self, handler, task, failures):
        executor = scripted_executor([False] * failures + [True])

        result = await handler.execute_with_retry(task, executor)

        assert result.success is True
        assert result.is_flaky is True
        assert result.retry_attempt == failures
        assert len(executor.calls) == failures + 1
        record = handler.get_flaky_test(task.id)
        assert record is not None
        assert record.failure_count == failures
        assert len(record.attempts) == failures
        assert record.test_name == "test_get_user"
        assert handler.is_permanent_failure(task.id) is False

    @pytest.mark.asyncio
    async def test_negative_task_budget_still_runs_once(self, handler):
        executor = scripted_executor([False])
        task = TestTask(id="task-neg", max_retries=-1)

        result = await handler.execute_with_retry(task, executor)

        assert result.success is False
        assert result.error == "failure #1"
        assert len(executor.calls) == 1
        assert handler.is_permanent_failure("task-neg") is True

    @pytest.mark.asyncio
    async def test_all_failures_is_permanent(self, handler, task):
        executor = scripted_executor([False])

        result = await handler.execute_with_retry(task, executor)

        assert result.success is False
        assert result.error == "failure #4"
        assert len(executor.calls) == 4  # ceiling 3 + the first run
        assert handler.is_permanent_failure(task.id) is True
        assert handler.is_flaky(task.id) is False
        assert handler.get_all_permanent_failures() == [task.id]
        assert len(handler.get_retry_attempts(task.id)) == 3

    @pytest.mark.asyncio
    async def test_task_ceiling_overrides_higher_handler_ceiling(self, handler):
        executor = scripted_executor([False])
        task = TestTask(id="capped", max_retries=1)

        await handler.execute_with_retry(task, executor)

        assert len(executor.calls) == 2

    @pytest.mark.asyncio
    async def test_handler_ceiling_overrides_higher_task_ceiling(
        self, metrics_client, no_sleep
    ):
        handler = RetryHandler(
            max_retries=1, metrics_client=metrics_client, sleep_func=no_sleep
        )
        executor = scripted_executor([False])

        await handler.execute_with_retry(TestTask(id="t", max_retries=5), executor)

        assert len(executor.calls) == 2

    @pytest.mark.asyncio
    async def test_zero_retries_runs_once(self, handler):
        executor = scripted_executor([False])

        result = await handler.execute_with_retry(TestTask(id="t", max_retries=0), executor)

        assert len(executor.calls) == 1
        assert result.success is False
        assert handler.is_permanent_failure("t")

    @pytest.mark.asyncio
    async def test_executor_exception_becomes_failed_result(self, handler, task):
        calls = []

        async def executor(task: TestTask) -> TestExecutionResult:
            calls.append(task)
            if len(calls) == 1:
                raise ConnectionError("ECONNREFUSED 127.0.0.1:8080")
            return TestExecutionResult(task_id=task.id, success=True)

        result = await handler.execute_with_retry(task, executor)

        assert result.success is True
        attempts = handler.get_retry_attempts(task.id)
        assert attempts[0].error == "ECONNREFUSED 127.0.0.1:8080"
        assert handler.get_flaky_test(task.id).failure_count == 1

    @pytest.mark.asyncio
    async def test_sleeps_with_exponential_delays(self, handler, task, no_sleep):
        await handler.execute_with_retry(task, scripted_executor([False]))

        assert [c.args[0] for c in no_sleep.await_args_list] == [1000, 2000, 4000]
        assert [a.delay_ms for a in handler.get_retry_attempts(task.id)] == [
            1000,
            2000,
            4000,
        ]
        assert [a.attempt_number for a in handler.get_retry_attempts(task.id)] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_should_retry_false_stops_early(self, handler, task):
        executor = scripted_executor([False])

        result = await handler.execute_with_retry(
            task, executor, should_retry=lambda r: False
        )

        assert result.success is False
        assert len(executor.calls) == 1
        assert handler.is_permanent_failure(task.id)

    @pytest.mark.asyncio
    async def test_concurrent_runs_of_same_task_are_rejected(self, handler, task):
        release = asyncio.Event()

        async def slow_executor(task: TestTask) -> TestExecutionResult:
            await release.wait()
            return TestExecutionResult(task_id=task.id, success=True)

        first = asyncio.ensure_future(handler.execute_with_retry(task, slow_executor))
        await asyncio.sleep(0)
        with pytest.raises(ConcurrentTaskError):
            await handler.execute_with_retry(task, slow_executor)
        release.set()
        assert (await first).success is True

    @pytest.mark.asyncio
    async def test_fresh_run_replaces_previous_classification(self, handler, task):
        await handler.execute_with_retry(task, scripted_executor([False]))
        assert handler.is_permanent_failure(task.id)

        await handler.execute_with_retry(task, scripted_executor([False, True]))

        assert handler.is_permanent_failure(task.id) is False
        assert handler.is_flaky(task.id) is True

    @pytest.mark.asyncio
    async def test_retry_metrics_are_counted(self, handler, task, metrics_client):
        await handler.execute_with_retry(task, scripted_executor([False, True]))

        registry = metrics_client.registry
        assert registry.get_sample_value("resilient_healer_retry_attempts_total") == 1
        assert registry.get_sample_value("resilient_healer_flaky_tests_total") == 1

    @pytest.mark.asyncio
    async def test_retry_warning_is_logged(self, handler, task, caplog):
        await handler.execute_with_retry(task, scripted_executor([False, True]))
        assert "Retrying task task-1" in caplog.text


class TestReporting:
    @pytest.mark.asyncio
    async def test_flaky_report_sorted_by_failure_count(self, handler):
        await handler.execute_with_retry(
            TestTask(id="once"), scripted_executor([False, True])
        )
        await handler.execute_with_retry(
            TestTask(id="twice"), scripted_executor([False, False, True])
        )
        await handler.execute_with_retry(TestTask(id="stable"), scripted_executor([True]))
        await handler.execute_with_retry(TestTask(id="broken"), scripted_executor([False]))

        report = handler.generate_flaky_test_report()

        assert report.total_flaky_tests == 2
        assert [t.test_id for t in report.flaky_tests] == ["twice", "once"]
        assert report.statistics.total_tests == 4
        assert report.statistics.flaky_percentage == pytest.approx(50.0)
        assert report.statistics.average_retries == pytest.approx(1.5)
        assert report.statistics.most_flaky_test.test_id == "twice"

    def test_empty_report(self, handler):
        report = handler.generate_flaky_test_report()
        assert report.total_flaky_tests == 0
        assert report.statistics.flaky_percentage == 0.0
        assert report.statistics.most_flaky_test is None

    @pytest.mark.asyncio
    async def test_export_is_json(self, handler, task):
        await handler.execute_with_retry(task, scripted_executor([False, True]))

        data = json.loads(handler.export_flaky_test_report())

        assert data["total_flaky_tests"] == 1
        assert data["flaky_tests"][0]["test_id"] == task.id
        assert data["flaky_tests"][0]["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_statistics_and_reset(self, handler):
        await handler.execute_with_retry(TestTask(id="a"), scripted_executor([False, True]))
        await handler.execute_with_retry(TestTask(id="b"), scripted_executor([False]))

        stats = handler.get_statistics()
        assert stats.total_tasks == 2
        assert stats.flaky_tests == 1
        assert stats.permanent_failures == 1
        assert stats.total_retry_attempts == 4

        handler.reset()

        stats = handler.get_statistics()
        assert (stats.total_tasks, stats.flaky_tests, stats.permanent_failures) == (0, 0, 0)
        assert handler.get_all_flaky_tests() == []


class TestConfiguration:
    def test_negative_max_retries_fails_at_construction(self):
        with pytest.raises(ConfigurationError):
            RetryHandler(max_retries=-1)

    def test_invalid_update_leaves_config_untouched(self, handler):
        with pytest.raises(ConfigurationError):
            handler.update_config(initial_delay_ms=-10)
        assert handler.get_config().initial_delay_ms == 1000

    def test_update_config_patches_fields(self, handler):
        handler.update_config(max_retries=5)
        config = handler.get_config()
        assert config.max_retries == 5
        assert config.enable_jitter is False

    def test_get_config_returns_a_copy(self, handler):
        config = handler.get_config()
        config.max_retries = 99
        assert handler.get_config().max_retries == 3

    @pytest.mark.parametrize(
        "error, retryable",
        [
            ("connect ECONNREFUSED 127.0.0.1:3000", True),
            ("Request timed out after 30s", True),
            (TimeoutError("Timeout waiting for response"), True),
            ("Network unreachable", True),
            ("AssertionError: expected 200 but got 404", False),
            (None, False),
        ],
    )
    def test_is_retryable_error(self, error, retryable):
        assert RetryHandler.is_retryable_error(error) is retryable
