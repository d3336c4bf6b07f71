import calendar
import logging
import math
import threading
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.cross_cutting.monitoring.metrics import ApplicationMetrics, metrics
from ..core.models.cache import HealingContext
from ..core.models.cost import (
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
from ..core.models.failed_test import utc_now
from ..utils.config_types import CostSettings
from ..utils.configuration import build_settings

logger = logging.getLogger(__name__)

HIGH_COST_PER_HEALING = 0.5
SEQUENTIAL_BUDGET_PERCENT = 90
PARALLEL_MAX_REQUESTS = 3


class CostOptimizer:
    """
    Estimates the cost of AI calls and keeps the monthly spend ledger.

    Estimation is pure: only :meth:`track_token_usage` changes the spend.
    Workers that must not overshoot the shared budget call :meth:`reserve`
    with an estimate before the call and pass the reservation id on the
    APIRequest, so the check and the spend happen under the same lock.
    """

    def __init__(
        self,
        config: Optional[CostSettings] = None,
        metrics_client: Optional[ApplicationMetrics] = None,
        clock: Optional[Callable[[], datetime]] = None,
        **overrides: Any,
    ):
        self.config = build_settings(CostSettings, config, overrides)
        self.metrics = metrics_client or metrics
        self._now = clock or utc_now
        self._lock = threading.Lock()
        self._token_usage: List[TokenUsageRecord] = []
        self._monthly_spend = 0.0
        self._reservations: Dict[str, float] = {}
        now = self._now()
        self._month = (now.year, now.month)

    # --- Estimation ---

    def _price(self, prompt_tokens: int, completion_tokens: int) -> Tuple[float, float]:
        pricing = self.config.pricing
        prompt_cost = prompt_tokens / 1000 * pricing.prompt_price
        completion_cost = completion_tokens / 1000 * pricing.completion_price
        return prompt_cost, completion_cost

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text or "") / self.config.chars_per_token)

    def estimate_cost(
        self, prompt: str, expected_completion_tokens: Optional[int] = None
    ) -> CostEstimate:
        """
        Estimate tokens and cost for a prospective call without touching the ledger.

        Args:
            prompt: The full prompt text.
            expected_completion_tokens: Completion size; defaults to
                ``completion_ratio`` times the prompt tokens.
        """
        prompt_tokens = self.estimate_tokens(prompt)
        if expected_completion_tokens is None:
            completion_tokens = math.ceil(prompt_tokens * self.config.completion_ratio)
        else:
            completion_tokens = max(0, int(expected_completion_tokens))

        prompt_cost, completion_cost = self._price(prompt_tokens, completion_tokens)
        estimated_cost = prompt_cost + completion_cost

        budget = self.check_budget_limit()
        headroom = self._limit() - budget.spent - budget.reserved
        within_budget = not budget.exceeded and headroom >= estimated_cost

        if not within_budget:
            recommendation = CostRecommendation.USE_FALLBACK
        elif estimated_cost > self.config.fallback_cost_threshold:
            recommendation = CostRecommendation.REDUCE_PROMPT
        elif self.config.cache_enabled:
            recommendation = CostRecommendation.CHECK_CACHE
        else:
            recommendation = CostRecommendation.USE_AI

        logger.debug(
            f"Estimated {prompt_tokens}+{completion_tokens} tokens at "
            f"${estimated_cost:.4f} (within_budget={within_budget})"
        )
        return CostEstimate(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            estimated_cost=estimated_cost,
            prompt_cost=prompt_cost,
            completion_cost=completion_cost,
            within_budget=within_budget,
            recommendation=recommendation,
        )

    def should_use_cache(self, context: Optional[HealingContext] = None) -> bool:
        return self.config.cache_enabled

    def should_use_fallback(self, estimate: CostEstimate) -> bool:
        if self.check_budget_limit().exceeded or not estimate.within_budget:
            return True
        return estimate.estimated_cost > self.config.fallback_cost_threshold

    # --- Ledger ---

    def _roll_over(self, now: datetime) -> None:
        if (now.year, now.month) != self._month:
            logger.info(
                f"New billing month {now.year}-{now.month:02d}: resetting monthly spend "
                f"(was ${self._monthly_spend:.2f})"
            )
            self._month = (now.year, now.month)
            self._monthly_spend = 0.0

    def _limit(self) -> float:
        return self.config.monthly_budget * self.config.block_threshold

    def reserve(self, estimate: CostEstimate) -> Optional[str]:
        """
        Atomically set aside ``estimate.estimated_cost`` from the budget.

        Returns a reservation id, or None when the reservation would push
        spend plus outstanding reservations past the block threshold.
        """
        with self._lock:
            self._roll_over(self._now())
            committed = self._monthly_spend + sum(self._reservations.values())
            if committed + estimate.estimated_cost > self._limit():
                logger.warning(
                    f"Budget reservation of ${estimate.estimated_cost:.4f} refused: "
                    f"${committed:.2f} of ${self._limit():.2f} already committed"
                )
                return None
            reservation_id = f"rsv-{uuid.uuid4().hex[:12]}"
            self._reservations[reservation_id] = estimate.estimated_cost
            return reservation_id

    def release(self, reservation_id: Optional[str]) -> bool:
        """Return a reservation to the budget; unknown ids are ignored."""
        if reservation_id is None:
            return False
        with self._lock:
            return self._reservations.pop(reservation_id, None) is not None

    def track_token_usage(
        self, request: APIRequest, response: APIResponse
    ) -> TokenUsageRecord:
        """Append the actual cost of a completed AI call to the spend ledger."""
        prompt_cost, completion_cost = self._price(
            response.prompt_tokens, response.completion_tokens
        )
        cost = prompt_cost + completion_cost
        with self._lock:
            now = self._now()
            self._roll_over(now)
            if request.reservation_id is not None:
                self._reservations.pop(request.reservation_id, None)
            record = TokenUsageRecord(
                request_id=request.id,
                timestamp=now,
                prompt_tokens=response.prompt_tokens,
                completion_tokens=response.completion_tokens,
                total_tokens=response.total_tokens,
                cost=cost,
                model=request.model,
                strategy=request.strategy,
                failure_type=request.failure_type,
            )
            self._token_usage.append(record)
            was_below_warning = not self._at_warning(self._monthly_spend)
            self._monthly_spend += cost
            crossed_warning = was_below_warning and self._at_warning(self._monthly_spend)

        self.metrics.llm_tokens.labels(kind="prompt").inc(response.prompt_tokens)
        self.metrics.llm_tokens.labels(kind="completion").inc(response.completion_tokens)
        self.metrics.llm_cost.inc(cost)
        logger.debug(
            f"Tracked {response.total_tokens} tokens (${cost:.4f}) for {request.id}"
        )
        if crossed_warning:
            logger.warning(
                f"Budget warning: {self.check_budget_limit().percent_used:.1f}% "
                f"of the monthly budget used"
            )
        return record

    def _at_warning(self, spent: float) -> bool:
        return spent / self.config.monthly_budget >= self.config.warning_threshold

    def check_budget_limit(self) -> BudgetStatus:
        with self._lock:
            now = self._now()
            self._roll_over(now)
            limit = self.config.monthly_budget
            spent = self._monthly_spend
            reserved = sum(self._reservations.values())

        days_in_month = calendar.monthrange(now.year, now.month)[1]
        percent_used = spent / limit * 100
        status = BudgetStatus(
            limit=limit,
            spent=spent,
            reserved=reserved,
            remaining=max(0.0, limit - spent - reserved),
            percent_used=percent_used,
            exceeded=spent >= limit * self.config.block_threshold,
            at_warning_threshold=percent_used >= self.config.warning_threshold * 100,
            days_remaining=days_in_month - now.day,
            projected_spend=spent / max(1, now.day) * days_in_month,
        )
        self.metrics.budget_percent_used.set(percent_used)
        return status

    def set_monthly_budget(self, amount: float) -> None:
        """
        Raises:
            ConfigurationError: If ``amount`` is not positive.
        """
        self.config = build_settings(
            CostSettings, self.config, {"monthly_budget": amount}
        )
        logger.info(f"Monthly budget set to ${amount:.2f}")

    def calculate_total_cost(self) -> float:
        with self._lock:
            return sum(r.cost for r in self._token_usage)

    def get_token_usage(self) -> List[TokenUsageRecord]:
        with self._lock:
            return list(self._token_usage)

    def clear(self) -> None:
        with self._lock:
            self._token_usage.clear()
            self._reservations.clear()
            self._monthly_spend = 0.0
            now = self._now()
            self._month = (now.year, now.month)

    # --- Reporting ---

    def get_cost_breakdown(self) -> CostBreakdown:
        records = self.get_token_usage()
        by_failure_type: Dict[str, float] = defaultdict(float)
        by_date: Dict[str, float] = defaultdict(float)
        by_strategy: Dict[str, float] = defaultdict(float)
        for record in records:
            if record.failure_type is not None:
                by_failure_type[record.failure_type.value] += record.cost
            by_date[record.timestamp.date().isoformat()] += record.cost
            by_strategy[record.strategy.value] += record.cost

        prompt_cost, completion_cost = self._price(
            sum(r.prompt_tokens for r in records),
            sum(r.completion_tokens for r in records),
        )
        return CostBreakdown(
            total=sum(r.cost for r in records),
            by_failure_type=dict(by_failure_type),
            by_date=dict(by_date),
            by_strategy=dict(by_strategy),
            prompt_cost=prompt_cost,
            completion_cost=completion_cost,
        )

    def generate_cost_report(self) -> CostReport:
        breakdown = self.get_cost_breakdown()
        budget = self.check_budget_limit()
        now = self._now()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        days_in_month = calendar.monthrange(now.year, now.month)[1]

        current_records = [r for r in self.get_token_usage() if r.timestamp >= month_start]
        monthly_spend = budget.spent
        daily_average = monthly_spend / max(1, now.day)
        projected_monthly = daily_average * days_in_month
        cost_per_healing = (
            monthly_spend / len(current_records) if current_records else 0.0
        )

        suggestions: List[str] = []
        if budget.at_warning_threshold:
            suggestions.append(
                f"Budget warning: {budget.percent_used:.1f}% of monthly budget used"
            )
        if projected_monthly > self.config.monthly_budget:
            suggestions.append(
                f"Projected spend (${projected_monthly:.2f}) exceeds monthly budget - "
                f"consider using more caching or fallback strategies"
            )
        if cost_per_healing > HIGH_COST_PER_HEALING:
            suggestions.append(
                f"High cost per healing (${cost_per_healing:.2f}) - consider "
                f"lowering the token budget per prompt or using a smaller model"
            )
        if breakdown.completion_cost > breakdown.prompt_cost * 2:
            suggestions.append(
                "Completion tokens are expensive - consider reducing max_tokens"
            )
        if not self.config.cache_enabled and current_records:
            suggestions.append("Enable caching to avoid paying for repeated repairs")

        drivers = [
            CostDriver(
                category=f"Failure: {failure_type}",
                cost=cost,
                percentage=cost / breakdown.total * 100 if breakdown.total else 0.0,
            )
            for failure_type, cost in breakdown.by_failure_type.items()
        ]
        drivers.sort(key=lambda d: d.cost, reverse=True)

        return CostReport(
            period_start=month_start,
            period_end=now,
            total_cost=breakdown.total,
            monthly_spend=monthly_spend,
            breakdown=breakdown,
            budget=budget,
            trends=CostTrends(
                daily_average=daily_average,
                projected_monthly=projected_monthly,
                cost_per_healing=cost_per_healing,
            ),
            suggestions=suggestions,
            top_cost_drivers=drivers[:3],
        )

    def optimize_batch_requests(self, requests: List[HealingRequest]) -> OptimizedBatch:
        """
        Order requests by priority (high first) then complexity (low first)
        and choose how aggressively to run them given the remaining budget.
        """
        ordered = sorted(requests, key=lambda r: (-r.priority, r.complexity.rank))
        estimates = [self.estimate_cost(r.failed_test.test_code) for r in ordered]
        estimated_cost = sum(e.estimated_cost for e in estimates)
        estimated_tokens = sum(e.total_tokens for e in estimates)

        budget = self.check_budget_limit()
        if budget.percent_used > SEQUENTIAL_BUDGET_PERCENT or any(
            r.complexity is Complexity.HIGH for r in ordered
        ):
            strategy = BatchStrategy.SEQUENTIAL
        elif (
            len(ordered) <= PARALLEL_MAX_REQUESTS
            and budget.remaining > estimated_cost * 2
        ):
            strategy = BatchStrategy.PARALLEL
        else:
            strategy = BatchStrategy.HYBRID

        return OptimizedBatch(
            id=f"batch-{uuid.uuid4().hex[:12]}",
            requests=ordered,
            estimated_cost=estimated_cost,
            estimated_tokens=estimated_tokens,
            strategy=strategy,
        )
