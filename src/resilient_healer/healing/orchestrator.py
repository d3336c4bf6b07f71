import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..core.cross_cutting.monitoring.metrics import ApplicationMetrics, metrics
from ..core.interfaces.protocols import (
    FailureAnalyzer,
    LLMClient,
    ProgressManager,
    TestRegenerator,
)
from ..core.models.cache import HealingContext
from ..core.models.cost import APIRequest, APIResponse
from ..core.models.failed_test import FailedTest, FailureType, HealingStrategy
from ..core.models.healing import (
    FailureAnalysis,
    HealingAttempt,
    HealingReport,
    HealingResult,
    HealingStatus,
    HealingSummary,
    RegenerationResult,
)
from ..core.models.retry import TestExecutionResult, TestTask
from ..executor.retry_handler import RetryHandler
from ..llm.clients import create_llm_client
from ..utils.config_types import OrchestratorSettings, Settings
from ..utils.configuration import build_settings
from ..utils.logging_config import log_performance, set_correlation_id
from .analyzers import create_analyzer
from .cache_store import CacheStore
from .cost_optimizer import CostOptimizer
from .healing_metrics import HealingMetrics
from .prompt_builder import PromptBuilder
from .regenerators import RuleBasedRegenerator, create_regenerator

logger = logging.getLogger(__name__)

BUDGET_EXCEEDED = "budget-exceeded"
REGENERATION_FAILED = "regeneration-failed"
PROGRESS_KEY = "healing"


class SelfHealingOrchestrator:
    """
    Drives the repair of a batch of failed tests.

    For each test: analyze, try the cache, clear the cost with the budget,
    regenerate, and record every attempt in the healing metrics ledger. A
    failure to repair one test never aborts the batch; it shows up in the
    report as failed, skipped, non-healable or budget-exceeded.

    Attempts for the same test are serialized with a per-test lock, so the
    retry handler never sees the same task id twice at once.
    """

    def __init__(
        self,
        analyzer: FailureAnalyzer,
        regenerator: TestRegenerator,
        cache_store: Optional[CacheStore] = None,
        cost_optimizer: Optional[CostOptimizer] = None,
        healing_metrics: Optional[HealingMetrics] = None,
        retry_handler: Optional[RetryHandler] = None,
        config: Optional[OrchestratorSettings] = None,
        fallback_regenerator: Optional[TestRegenerator] = None,
        metrics_client: Optional[ApplicationMetrics] = None,
        progress_manager: Optional[ProgressManager] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        timer: Optional[Callable[[], float]] = None,
        **overrides: Any,
    ):
        self.config = build_settings(OrchestratorSettings, config, overrides)
        self.metrics = metrics_client or metrics
        self.analyzer = analyzer
        self.regenerator = regenerator
        self.cache_store = cache_store or CacheStore(metrics_client=self.metrics)
        self.cost_optimizer = cost_optimizer or CostOptimizer(metrics_client=self.metrics)
        self.healing_metrics = healing_metrics or HealingMetrics(metrics_client=self.metrics)
        self.retry_handler = retry_handler or RetryHandler(metrics_client=self.metrics)
        if fallback_regenerator is None and self.config.fallback_to_rule_based:
            fallback_regenerator = RuleBasedRegenerator()
        self.fallback_regenerator = fallback_regenerator
        self.progress_manager = progress_manager
        self.prompt_builder = prompt_builder or PromptBuilder()
        self._timer = timer or time.monotonic

        self._history: Dict[str, List[str]] = {}  # test id -> attempt ids
        self._test_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    def _elapsed_ms(self, started: float) -> float:
        return (self._timer() - started) * 1000

    # --- Batch ---

    @log_performance("heal_failed_tests")
    async def heal_failed_tests(
        self,
        failed_tests: List[FailedTest],
        spec_diff: Optional[Dict[str, Any]] = None,
    ) -> HealingReport:
        """
        Repair a batch of failed tests with a fixed pool of workers.

        The batch deadline (``max_total_time_ms``) is checked before each
        test is started; tests still queued after it passes are skipped.
        An in-flight repair is allowed to finish.
        """
        correlation_id = set_correlation_id()
        started = self._timer()
        deadline = started + self.config.max_total_time_ms / 1000
        logger.info(
            f"Healing {len(failed_tests)} failed tests (correlation_id={correlation_id})"
        )

        queue: "asyncio.Queue[tuple]" = asyncio.Queue()
        for index, failed_test in enumerate(failed_tests):
            queue.put_nowait((index, failed_test))
        results: Dict[int, HealingResult] = {}

        if self.progress_manager is not None:
            self.progress_manager.create_task(
                PROGRESS_KEY, f"Healing {len(failed_tests)} tests", total=len(failed_tests)
            )

        async def worker() -> None:
            while True:
                try:
                    index, failed_test = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if self._timer() >= deadline:
                    logger.warning(f"Deadline reached, skipping {failed_test.id}")
                    results[index] = HealingResult(
                        test_id=failed_test.id,
                        status=HealingStatus.SKIPPED,
                        attempted=False,
                        success=False,
                        reason="deadline-exceeded",
                    )
                else:
                    results[index] = await self._heal_guarded(failed_test, spec_diff)
                if self.progress_manager is not None:
                    self.progress_manager.update_task(PROGRESS_KEY, advance=1)

        worker_count = max(1, min(self.config.max_concurrency, len(failed_tests)))
        await asyncio.gather(*(worker() for _ in range(worker_count)))

        if self.progress_manager is not None:
            self.progress_manager.update_task(PROGRESS_KEY, completed=True)

        ordered = [results[i] for i in range(len(failed_tests))]
        report = HealingReport(
            total_tests=len(failed_tests),
            successfully_healed=sum(1 for r in ordered if r.success),
            failed_healing=sum(
                1
                for r in ordered
                if r.status in (HealingStatus.FAILED, HealingStatus.BUDGET_EXCEEDED)
            ),
            non_healable=sum(1 for r in ordered if r.status == HealingStatus.NON_HEALABLE),
            skipped=sum(1 for r in ordered if r.status == HealingStatus.SKIPPED),
            healing_attempts=sum(r.attempts for r in ordered),
            total_time=self._elapsed_ms(started),
            results=ordered,
        )
        logger.info(
            f"Healing finished: {report.successfully_healed}/{report.total_tests} healed, "
            f"{report.failed_healing} failed, {report.skipped} skipped "
            f"in {report.total_time:.0f}ms"
        )
        return report

    # --- Single test ---

    async def heal_test(
        self, failed_test: FailedTest, spec_diff: Optional[Dict[str, Any]] = None
    ) -> HealingResult:
        """Repair one failed test; concurrent calls for the same test run one at a time."""
        test_id = failed_test.id
        lock = self._test_locks.setdefault(test_id, asyncio.Lock())
        self._lock_users[test_id] = self._lock_users.get(test_id, 0) + 1
        try:
            async with lock:
                return await self._heal(failed_test, spec_diff)
        finally:
            self._lock_users[test_id] -= 1
            if not self._lock_users[test_id]:
                del self._lock_users[test_id]
                del self._test_locks[test_id]

    async def _heal_guarded(
        self, failed_test: FailedTest, spec_diff: Optional[Dict[str, Any]]
    ) -> HealingResult:
        """Run heal_test, turning an unexpected error into a FAILED result for that test."""
        started = self._timer()
        attempts_before = len(self._history.get(failed_test.id, []))
        try:
            return await self.heal_test(failed_test, spec_diff)
        except Exception as e:
            logger.error(f"Healing {failed_test.id} raised: {e}", exc_info=True)
            attempts = len(self._history.get(failed_test.id, [])) - attempts_before
            return HealingResult(
                test_id=failed_test.id,
                status=HealingStatus.FAILED,
                attempted=True,
                success=False,
                duration=self._elapsed_ms(started),
                attempts=attempts,
                reason=str(e),
            )

    async def _heal(
        self, failed_test: FailedTest, spec_diff: Optional[Dict[str, Any]]
    ) -> HealingResult:
        started = self._timer()
        history = self._history.setdefault(failed_test.id, [])
        attempts_before = len(history)

        def result(status: HealingStatus, **kwargs: Any) -> HealingResult:
            attempts = len(history) - attempts_before
            return HealingResult(
                test_id=failed_test.id,
                status=status,
                attempted=attempts > 0,
                success=status in (HealingStatus.HEALED, HealingStatus.APPLIED_FROM_CACHE),
                duration=self._elapsed_ms(started),
                attempts=attempts,
                **kwargs,
            )

        if attempts_before >= self.config.max_attempts_per_test:
            logger.info(f"Attempt limit reached for {failed_test.id}, skipping")
            return result(HealingStatus.SKIPPED, reason="max-attempts-reached")

        try:
            analysis = await self.analyzer.analyze(failed_test)
        except Exception as e:
            logger.error(f"Failure analysis raised for {failed_test.id}: {e}")
            return result(HealingStatus.FAILED, reason=f"analysis-failed: {e}")

        if not self._is_healable(analysis):
            logger.info(
                f"{failed_test.id} is not healable ({analysis.failure_type.value}, "
                f"confidence {analysis.confidence:.2f})"
            )
            return result(HealingStatus.NON_HEALABLE, reason=analysis.root_cause)

        context = HealingContext(
            failure_type=analysis.failure_type,
            test_code=failed_test.test_code,
            error_message=failed_test.error_message,
            spec_diff=spec_diff,
            test_id=failed_test.id,
            test_name=failed_test.name,
            file_path=failed_test.file_path,
            root_cause=analysis.root_cause,
            suggested_fix=analysis.suggested_fix,
        )

        cache_key = None
        if self.cost_optimizer.should_use_cache(context):
            cache_key = self.cache_store.generate_cache_key_from_context(context)
            entry = self.cache_store.get(cache_key)
            if entry is not None:
                fix = entry.value
                attempt_id = self._open_attempt(
                    failed_test, analysis.failure_type, HealingStrategy.AI_POWERED
                )
                self.healing_metrics.record_success(
                    attempt_id,
                    self._elapsed_ms(started),
                    strategy=HealingStrategy.AI_POWERED,
                    generated_fix=fix.get("fixed_code"),
                    cache_hit=True,
                )
                return result(
                    HealingStatus.APPLIED_FROM_CACHE,
                    fixed_code=fix.get("fixed_code"),
                    confidence=fix.get("confidence", 1.0),
                    strategy=HealingStrategy.AI_POWERED,
                    cache_hit=True,
                )

        last = await self._regenerate_with_retries(failed_test, analysis, context, history)
        output: Optional[RegenerationResult] = last.output
        if last.success and output is not None:
            self._cache_fix(cache_key, output, last.metadata.get("estimated_cost", 0.0))
            return result(
                HealingStatus.HEALED,
                fixed_code=output.fixed_code,
                confidence=output.confidence,
                strategy=output.strategy,
            )

        if last.error_type == BUDGET_EXCEEDED:
            if (
                self.fallback_regenerator is not None
                and len(history) < self.config.max_attempts_per_test
            ):
                fallback = await self._attempt(
                    self.fallback_regenerator, failed_test, analysis, context, history, None
                )
                output = fallback.output
                if fallback.success and output is not None:
                    self._cache_fix(cache_key, output, 0.0)
                    return result(
                        HealingStatus.HEALED,
                        fixed_code=output.fixed_code,
                        confidence=output.confidence,
                        strategy=output.strategy,
                        reason=BUDGET_EXCEEDED,
                    )
            return result(HealingStatus.BUDGET_EXCEEDED, reason=BUDGET_EXCEEDED)

        return result(HealingStatus.FAILED, reason=last.error)

    def _is_healable(self, analysis: FailureAnalysis) -> bool:
        return (
            analysis.healable
            and analysis.failure_type.value in self.config.healable_failure_types
            and analysis.confidence >= self.config.min_confidence
        )

    def _open_attempt(
        self, failed_test: FailedTest, failure_type: FailureType, strategy: HealingStrategy
    ) -> str:
        attempt_id = self.healing_metrics.record_attempt(failed_test, failure_type, strategy)
        self._history.setdefault(failed_test.id, []).append(attempt_id)
        return attempt_id

    async def _regenerate_with_retries(
        self,
        failed_test: FailedTest,
        analysis: FailureAnalysis,
        context: HealingContext,
        history: List[str],
    ) -> TestExecutionResult:
        prompt = self.prompt_builder.build_regeneration_prompt(context)
        attempts_left = self.config.max_attempts_per_test - len(history)
        task = TestTask(
            id=f"heal:{failed_test.id}",
            file_path=failed_test.file_path,
            test_name=failed_test.name,
            max_retries=attempts_left - 1,
        )

        async def execute(task: TestTask) -> TestExecutionResult:
            return await self._attempt(
                self.regenerator, failed_test, analysis, context, history, prompt
            )

        if not self.config.auto_retry:
            return await execute(task)
        return await self.retry_handler.execute_with_retry(
            task, execute, should_retry=lambda r: r.error_type != BUDGET_EXCEEDED
        )

    async def _attempt(
        self,
        regenerator: TestRegenerator,
        failed_test: FailedTest,
        analysis: FailureAnalysis,
        context: HealingContext,
        history: List[str],
        prompt: Optional[str],
    ) -> TestExecutionResult:
        """
        One recorded regeneration attempt.

        With a ``prompt`` the attempt is cleared against the budget first and
        its estimated cost is reserved until the actual usage is tracked.
        """
        task_id = f"heal:{failed_test.id}"
        reservation_id = None
        if prompt is not None:
            estimate = self.cost_optimizer.estimate_cost(prompt)
            if estimate.within_budget:
                reservation_id = self.cost_optimizer.reserve(estimate)
            if reservation_id is None:
                attempt_id = self._open_attempt(
                    failed_test, analysis.failure_type, HealingStrategy.FALLBACK
                )
                self.healing_metrics.record_failure(
                    attempt_id, BUDGET_EXCEEDED, strategy=HealingStrategy.FALLBACK
                )
                return TestExecutionResult(
                    task_id=task_id,
                    success=False,
                    error=BUDGET_EXCEEDED,
                    error_type=BUDGET_EXCEEDED,
                )

        default_strategy = (
            HealingStrategy.AI_POWERED if prompt is not None else HealingStrategy.RULE_BASED
        )
        attempt_id = self._open_attempt(failed_test, analysis.failure_type, default_strategy)
        started = self._timer()
        try:
            regenerated = await regenerator.regenerate(context)
        except Exception as e:
            self.cost_optimizer.release(reservation_id)
            logger.error(f"Regenerator raised for {failed_test.id}: {e}")
            self.healing_metrics.record_failure(
                attempt_id, f"regenerator-error: {e}", duration_ms=self._elapsed_ms(started)
            )
            return TestExecutionResult(
                task_id=task_id, success=False, error=str(e), error_type=type(e).__name__
            )

        cost = self._settle_cost(regenerated, analysis.failure_type, reservation_id)
        duration = self._elapsed_ms(started)
        confident = regenerated.confidence >= self.config.min_confidence
        if regenerated.success and regenerated.fixed_code and confident:
            self.healing_metrics.record_success(
                attempt_id,
                duration,
                strategy=regenerated.strategy,
                tokens_used=regenerated.tokens_used,
                estimated_cost=cost,
                generated_fix=regenerated.fixed_code,
            )
            return TestExecutionResult(
                task_id=task_id,
                success=True,
                execution_time=duration,
                output=regenerated,
                metadata={"estimated_cost": cost},
            )

        if regenerated.success and not confident:
            reason = (
                f"low-confidence ({regenerated.confidence:.2f} < "
                f"{self.config.min_confidence:.2f})"
            )
        else:
            reason = regenerated.error or REGENERATION_FAILED
        self.healing_metrics.record_failure(
            attempt_id,
            reason,
            strategy=regenerated.strategy,
            tokens_used=regenerated.tokens_used,
            estimated_cost=cost,
            duration_ms=duration,
        )
        return TestExecutionResult(
            task_id=task_id,
            success=False,
            execution_time=duration,
            error=reason,
            error_type=REGENERATION_FAILED,
            output=regenerated,
        )

    def _settle_cost(
        self,
        regenerated: RegenerationResult,
        failure_type: FailureType,
        reservation_id: Optional[str],
    ) -> float:
        """Move the reserved estimate to the spend ledger at the actual token usage."""
        prompt_tokens = regenerated.prompt_tokens
        completion_tokens = regenerated.completion_tokens
        if not prompt_tokens and not completion_tokens:
            prompt_tokens = regenerated.tokens_used
        if not prompt_tokens and not completion_tokens:
            self.cost_optimizer.release(reservation_id)
            return regenerated.estimated_cost

        record = self.cost_optimizer.track_token_usage(
            APIRequest(
                model=regenerated.model or self.cost_optimizer.config.pricing.model,
                failure_type=failure_type,
                strategy=regenerated.strategy,
                reservation_id=reservation_id,
            ),
            APIResponse(prompt_tokens, completion_tokens),
        )
        return record.cost

    def _cache_fix(
        self, cache_key: Optional[str], regenerated: RegenerationResult, cost: float
    ) -> None:
        if cache_key is None:
            return
        self.cache_store.set(
            cache_key,
            {
                "fixed_code": regenerated.fixed_code,
                "confidence": regenerated.confidence,
                "strategy": regenerated.strategy.value,
                "tokens_used": regenerated.tokens_used,
                "estimated_cost": cost,
            },
        )

    # --- History and configuration ---

    def get_healing_attempts(self, test_id: str) -> List[HealingAttempt]:
        attempt_ids = set(self._history.get(test_id, []))
        return [a for a in self.healing_metrics.get_attempts() if a.id in attempt_ids]

    def clear_history(self, test_id: Optional[str] = None) -> None:
        """Forget attempt history for one test, or for all tests."""
        if test_id is None:
            self._history.clear()
        else:
            self._history.pop(test_id, None)

    def get_summary(self) -> HealingSummary:
        return self.healing_metrics.generate_summary()

    def get_config(self) -> OrchestratorSettings:
        return self.config.model_copy()

    def update_config(
        self, config: Optional[OrchestratorSettings] = None, **overrides: Any
    ) -> None:
        self.config = build_settings(OrchestratorSettings, config or self.config, overrides)
        logger.debug(f"Orchestrator configuration updated: {self.config.model_dump()}")


def create_orchestrator(
    settings: Settings,
    llm_client: Optional[LLMClient] = None,
    metrics_client: Optional[ApplicationMetrics] = None,
    progress_manager: Optional[ProgressManager] = None,
) -> SelfHealingOrchestrator:
    """Wire an orchestrator and its components from one Settings tree."""
    metrics_client = metrics_client or metrics
    cost_optimizer = CostOptimizer(settings.cost, metrics_client=metrics_client)
    if llm_client is None and "ai" in (
        settings.orchestrator.analyzer,
        settings.orchestrator.regenerator,
    ):
        llm_client = create_llm_client(settings.llm)
    prompt_builder = PromptBuilder()
    return SelfHealingOrchestrator(
        create_analyzer(settings, llm_client=llm_client, cost_optimizer=cost_optimizer),
        create_regenerator(settings, llm_client=llm_client, prompt_builder=prompt_builder),
        cache_store=CacheStore(settings.cache, metrics_client=metrics_client),
        cost_optimizer=cost_optimizer,
        healing_metrics=HealingMetrics(settings.metrics, metrics_client=metrics_client),
        retry_handler=RetryHandler(settings.retry, metrics_client=metrics_client),
        config=settings.orchestrator,
        metrics_client=metrics_client,
        progress_manager=progress_manager,
        prompt_builder=prompt_builder,
    )
