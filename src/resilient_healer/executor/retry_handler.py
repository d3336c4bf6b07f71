import json
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from ..core.cross_cutting.monitoring.metrics import ApplicationMetrics, metrics
from ..core.errors import ConcurrentTaskError
from ..core.models.failed_test import utc_now
from ..core.models.retry import (
    FlakyTestRecord,
    FlakyTestReport,
    FlakyTestStatistics,
    RetryAttempt,
    RetryStatistics,
    TestExecutionResult,
    TestTask,
)
from ..core.models.serialization import to_jsonable
from ..utils.config_types import RetrySettings
from ..utils.configuration import build_settings
from . import backoff

logger = logging.getLogger(__name__)

TaskExecutor = Callable[[TestTask], Awaitable[TestExecutionResult]]
ShouldRetry = Callable[[TestExecutionResult], bool]

RETRYABLE_ERROR_PATTERNS = [
    re.compile(r"ECONNREFUSED"),
    re.compile(r"ETIMEDOUT"),
    re.compile(r"ENOTFOUND"),
    re.compile(r"ECONNRESET"),
    re.compile(r"timeout|timed out", re.IGNORECASE),
    re.compile(r"network", re.IGNORECASE),
    re.compile(r"temporarily unavailable", re.IGNORECASE),
    re.compile(r"connection (refused|reset|aborted)", re.IGNORECASE),
]


class RetryHandler:
    """
    Re-executes failing tasks with exponential backoff.

    Every task run through :meth:`execute_with_retry` ends in exactly one of
    three states: passed on the first try, flaky (failed at least once and
    then passed) or permanent failure (never passed within its ceiling).
    The effective ceiling is ``min(task.max_retries, config.max_retries)``.

    The handler never raises for a failing task. Executor exceptions are
    turned into failed results and the last failed result is returned once
    the ceiling is exhausted. Running the same task id concurrently is a
    contract violation and raises :class:`ConcurrentTaskError`.
    """

    def __init__(
        self,
        config: Optional[RetrySettings] = None,
        metrics_client: Optional[ApplicationMetrics] = None,
        sleep_func: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[Callable[[float, float], float]] = None,
        **overrides: Any,
    ):
        self.config = build_settings(RetrySettings, config, overrides)
        self.metrics = metrics_client or metrics
        self._sleep = sleep_func or backoff.sleep
        self._rng = rng

        self._retry_attempts: Dict[str, List[RetryAttempt]] = {}
        self._flaky_tests: Dict[str, FlakyTestRecord] = {}
        self._permanent_failures: Dict[str, None] = {}  # insertion-ordered set
        self._in_flight: Set[str] = set()

    async def execute_with_retry(
        self,
        task: TestTask,
        executor: TaskExecutor,
        should_retry: Optional[ShouldRetry] = None,
    ) -> TestExecutionResult:
        """
        Run ``executor(task)`` until it succeeds or the retry ceiling is reached.

        Args:
            task: The task to execute; ``task.max_retries`` caps the ceiling.
            executor: Async callable producing a TestExecutionResult.
            should_retry: Optional predicate; returning False for a failed
                result stops retrying early and records a permanent failure.

        Returns:
            The successful result, or the last failed result.
        """
        if task.id in self._in_flight:
            raise ConcurrentTaskError(task.id)
        self._in_flight.add(task.id)
        try:
            return await self._run(task, executor, should_retry)
        finally:
            self._in_flight.discard(task.id)

    async def _run(
        self,
        task: TestTask,
        executor: TaskExecutor,
        should_retry: Optional[ShouldRetry],
    ) -> TestExecutionResult:
        ceiling = max(0, min(task.max_retries, self.config.max_retries))
        history = self._retry_attempts.setdefault(task.id, [])
        run_attempts: List[RetryAttempt] = []

        # A fresh run supersedes any earlier classification of this task
        self._flaky_tests.pop(task.id, None)
        self._permanent_failures.pop(task.id, None)

        failures = 0
        attempt = 0

        while True:
            started = time.perf_counter()
            try:
                result = await executor(task)
            except Exception as e:
                logger.debug(f"Executor raised for task {task.id}: {e}")
                result = TestExecutionResult(
                    task_id=task.id,
                    success=False,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            result.execution_time = (time.perf_counter() - started) * 1000
            result.retry_attempt = attempt

            if result.success:
                if failures:
                    result.is_flaky = True
                    self._record_flaky_test(task, failures, run_attempts, result)
                return result

            failures += 1

            if attempt >= ceiling:
                break
            if should_retry is not None and not should_retry(result):
                logger.info(f"Not retrying task {task.id}: failure is not retryable")
                break

            delay = backoff.calculate_backoff(attempt, self.config, self._rng)
            retry_attempt = RetryAttempt(
                attempt_number=attempt + 1,
                success=False,
                execution_time=result.execution_time,
                delay_ms=delay.delay_ms,
                error=result.error,
            )
            history.append(retry_attempt)
            run_attempts.append(retry_attempt)
            self.metrics.retry_attempts.inc()

            logger.warning(
                f"Retrying task {task.id} (attempt {attempt + 1}/{ceiling}) "
                f"after {delay.delay_ms}ms delay: {result.error}"
            )
            await self._sleep(delay.delay_ms)
            attempt += 1

        self._permanent_failures[task.id] = None
        self.metrics.permanent_failures.inc()
        logger.warning(
            f"Task {task.id} failed permanently after {failures} attempt(s)"
        )
        return result

    def _record_flaky_test(
        self,
        task: TestTask,
        failure_count: int,
        attempts: List[RetryAttempt],
        result: TestExecutionResult,
    ) -> None:
        total_time = (
            sum(a.execution_time + a.delay_ms for a in attempts)
            + result.execution_time
        )
        now = utc_now()
        self._flaky_tests[task.id] = FlakyTestRecord(
            test_id=task.id,
            file_path=task.file_path,
            test_name=task.test_name or task.file_path,
            failure_count=failure_count,
            attempts=tuple(attempts),
            first_failure=attempts[0].timestamp if attempts else now,
            final_success=now,
            total_execution_time=total_time,
        )
        self.metrics.flaky_tests.inc()
        logger.info(
            f"Task {task.id} is flaky: passed after {failure_count} failure(s)"
        )

    def is_permanent_failure(self, task_id: str) -> bool:
        return task_id in self._permanent_failures

    def is_flaky(self, task_id: str) -> bool:
        return task_id in self._flaky_tests

    def get_retry_attempts(self, task_id: str) -> List[RetryAttempt]:
        return list(self._retry_attempts.get(task_id, []))

    def get_flaky_test(self, task_id: str) -> Optional[FlakyTestRecord]:
        return self._flaky_tests.get(task_id)

    def get_all_flaky_tests(self) -> List[FlakyTestRecord]:
        return list(self._flaky_tests.values())

    def get_all_permanent_failures(self) -> List[str]:
        return list(self._permanent_failures)

    def generate_flaky_test_report(self) -> FlakyTestReport:
        """Flaky tests ordered by failure count, most unstable first."""
        flaky_tests = sorted(
            self._flaky_tests.values(), key=lambda t: t.failure_count, reverse=True
        )
        total_tests = len(self._retry_attempts)
        average_retries = (
            sum(t.failure_count for t in flaky_tests) / len(flaky_tests)
            if flaky_tests
            else 0.0
        )
        return FlakyTestReport(
            generated_at=utc_now(),
            total_flaky_tests=len(flaky_tests),
            flaky_tests=flaky_tests,
            statistics=FlakyTestStatistics(
                total_tests=total_tests,
                flaky_percentage=(
                    len(flaky_tests) / total_tests * 100 if total_tests else 0.0
                ),
                average_retries=average_retries,
                most_flaky_test=flaky_tests[0] if flaky_tests else None,
            ),
        )

    def export_flaky_test_report(self) -> str:
        return json.dumps(to_jsonable(self.generate_flaky_test_report()), indent=2)

    def get_statistics(self) -> RetryStatistics:
        return RetryStatistics(
            total_tasks=len(self._retry_attempts),
            flaky_tests=len(self._flaky_tests),
            permanent_failures=len(self._permanent_failures),
            total_retry_attempts=sum(len(a) for a in self._retry_attempts.values()),
        )

    def reset(self) -> None:
        self._retry_attempts.clear()
        self._flaky_tests.clear()
        self._permanent_failures.clear()

    @staticmethod
    def is_retryable_error(error: Union[str, BaseException, None]) -> bool:
        """Return True for network and timeout style errors."""
        if error is None:
            return False
        message = str(error)
        return any(pattern.search(message) for pattern in RETRYABLE_ERROR_PATTERNS)

    def get_config(self) -> RetrySettings:
        return self.config.model_copy()

    def update_config(
        self, config: Optional[RetrySettings] = None, **overrides: Any
    ) -> None:
        """
        Replace or patch the configuration.

        Raises:
            ConfigurationError: If the resulting settings are invalid; the
                current configuration is left untouched.
        """
        self.config = build_settings(RetrySettings, config or self.config, overrides)
        logger.debug(f"Retry configuration updated: {self.config.model_dump()}")
