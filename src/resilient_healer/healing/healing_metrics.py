import copy
import json
import logging
import threading
import uuid
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from ..core.cross_cutting.error_handling import error_context
from ..core.cross_cutting.monitoring.metrics import ApplicationMetrics, metrics
from ..core.errors import AttemptAlreadySealedError, AttemptNotFoundError, HistoryError
from ..core.models.failed_test import FailedTest, FailureType, HealingStrategy, utc_now
from ..core.models.healing import (
    AIUsageStats,
    FallbackUsageStats,
    HealingAttempt,
    HealingSummary,
    TypeMetrics,
)
from ..core.models.serialization import to_jsonable
from ..utils.config_types import MetricsSettings
from ..utils.configuration import build_settings

logger = logging.getLogger(__name__)

AI_STRATEGIES = (HealingStrategy.AI_POWERED, HealingStrategy.HYBRID)
FALLBACK_STRATEGIES = (HealingStrategy.FALLBACK, HealingStrategy.RULE_BASED)
DEFAULT_FALLBACK_REASON = "cost-optimization"
LOW_CACHE_HIT_RATE = 30.0
LOW_CACHE_MIN_USES = 10
HIGH_TOTAL_COST = 10.0
HIGH_COST_PER_HEALING = 0.5
CHART_WIDTH = 50


def _rate(part: int, whole: int) -> float:
    return part / whole * 100 if whole else 0.0


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _bar(fraction: float, width: int = CHART_WIDTH) -> str:
    filled = round(max(0.0, min(1.0, fraction)) * width)
    return "#" * filled + "." * (width - filled)


class HealingMetrics:
    """
    Append-only ledger of healing attempts.

    An attempt is opened by :meth:`record_attempt` and sealed exactly once by
    :meth:`record_success` or :meth:`record_failure`. Every aggregate is
    computed on demand over sealed attempts only; open attempts are invisible
    to statistics until they are sealed.
    """

    def __init__(
        self,
        config: Optional[MetricsSettings] = None,
        metrics_client: Optional[ApplicationMetrics] = None,
        clock: Optional[Callable[[], datetime]] = None,
        **overrides: Any,
    ):
        self.config = build_settings(MetricsSettings, config, overrides)
        self.metrics = metrics_client or metrics
        self._now = clock or utc_now
        self._lock = threading.Lock()
        self._attempts: Dict[str, HealingAttempt] = {}
        self._start_time = self._now()

    # --- Recording ---

    def record_attempt(
        self,
        failed_test: FailedTest,
        failure_type: Optional[FailureType] = None,
        strategy: HealingStrategy = HealingStrategy.AI_POWERED,
    ) -> str:
        """Open a new attempt and return its id."""
        attempt_id = f"attempt-{uuid.uuid4().hex}"
        attempt = HealingAttempt(
            id=attempt_id,
            failed_test=failed_test,
            failure_type=failure_type or failed_test.failure_type,
            start_time=self._now(),
            strategy=strategy,
        )
        with self._lock:
            self._attempts[attempt_id] = attempt
        logger.debug(f"Opened healing attempt {attempt_id} for {failed_test.id}")
        return attempt_id

    def _seal(self, attempt_id: str) -> HealingAttempt:
        # Caller holds the lock
        attempt = self._attempts.get(attempt_id)
        if attempt is None:
            raise AttemptNotFoundError(attempt_id)
        if attempt.sealed:
            raise AttemptAlreadySealedError(attempt_id)
        attempt.end_time = self._now()
        return attempt

    def record_success(
        self,
        attempt_id: str,
        duration_ms: float,
        strategy: Optional[HealingStrategy] = None,
        tokens_used: int = 0,
        estimated_cost: float = 0.0,
        generated_fix: Optional[str] = None,
        cache_hit: bool = False,
    ) -> None:
        """
        Seal an attempt as successful.

        Raises:
            AttemptNotFoundError: ``attempt_id`` was never recorded.
            AttemptAlreadySealedError: the attempt was already sealed.
        """
        with self._lock:
            attempt = self._seal(attempt_id)
            attempt.duration = duration_ms
            attempt.success = True
            attempt.strategy = strategy or attempt.strategy
            attempt.tokens_used = tokens_used
            attempt.estimated_cost = estimated_cost
            attempt.generated_fix = generated_fix
            attempt.cache_hit = cache_hit
        self._observe(attempt)
        logger.info(
            f"Healing attempt {attempt_id} succeeded in {duration_ms:.0f}ms "
            f"({attempt.strategy.value}, cache_hit={cache_hit})"
        )

    def record_failure(
        self,
        attempt_id: str,
        reason: str,
        strategy: Optional[HealingStrategy] = None,
        tokens_used: int = 0,
        estimated_cost: float = 0.0,
        duration_ms: Optional[float] = None,
    ) -> None:
        """
        Seal an attempt as failed.

        The duration defaults to the wall-clock time since the attempt was opened.

        Raises:
            AttemptNotFoundError: ``attempt_id`` was never recorded.
            AttemptAlreadySealedError: the attempt was already sealed.
        """
        with self._lock:
            attempt = self._seal(attempt_id)
            if duration_ms is None:
                duration_ms = (
                    attempt.end_time - attempt.start_time
                ).total_seconds() * 1000
            attempt.duration = duration_ms
            attempt.success = False
            attempt.failure_reason = reason
            attempt.strategy = strategy or attempt.strategy
            attempt.tokens_used = tokens_used
            attempt.estimated_cost = estimated_cost
        self._observe(attempt)
        logger.info(
            f"Healing attempt {attempt_id} failed ({attempt.strategy.value}): {reason}"
        )

    def _observe(self, attempt: HealingAttempt) -> None:
        self.metrics.healing_attempts.labels(
            strategy=attempt.strategy.value,
            result="success" if attempt.success else "failure",
        ).inc()
        self.metrics.healing_duration.observe((attempt.duration or 0.0) / 1000)

    def _sealed(self) -> List[HealingAttempt]:
        with self._lock:
            return [a for a in self._attempts.values() if a.sealed]

    # --- Statistics ---

    def calculate_success_rate(self) -> float:
        sealed = self._sealed()
        return _rate(sum(1 for a in sealed if a.success), len(sealed))

    def calculate_average_time(self) -> float:
        return _mean([a.duration or 0.0 for a in self._sealed()])

    def get_metrics_by_failure_type(self) -> Dict[FailureType, TypeMetrics]:
        sealed = self._sealed()
        result: Dict[FailureType, TypeMetrics] = {}
        for failure_type in FailureType:
            typed = [a for a in sealed if a.failure_type is failure_type]
            successful = sum(1 for a in typed if a.success)
            result[failure_type] = TypeMetrics(
                attempts=len(typed),
                successful=successful,
                failed=len(typed) - successful,
                success_rate=_rate(successful, len(typed)),
                average_time=_mean([a.duration or 0.0 for a in typed]),
                total_cost=sum(a.estimated_cost for a in typed),
            )
        return result

    def get_ai_usage_stats(self) -> AIUsageStats:
        """
        Usage of AI-backed strategies.

        The prompt/completion split is an approximation: ``prompt_token_ratio``
        of the total is attributed to prompts, the rest to completions.
        """
        ai = [a for a in self._sealed() if a.strategy in AI_STRATEGIES]
        total_tokens = sum(a.tokens_used for a in ai)
        prompt_tokens = round(total_tokens * self.config.prompt_token_ratio)
        return AIUsageStats(
            times_used=len(ai),
            total_tokens=total_tokens,
            prompt_tokens=prompt_tokens,
            completion_tokens=total_tokens - prompt_tokens,
            total_cost=sum(a.estimated_cost for a in ai),
            average_tokens=total_tokens / len(ai) if ai else 0.0,
            success_rate=_rate(sum(1 for a in ai if a.success), len(ai)),
            cache_hit_rate=_rate(sum(1 for a in ai if a.cache_hit), len(ai)),
        )

    def get_fallback_usage_stats(self) -> FallbackUsageStats:
        fallback = [a for a in self._sealed() if a.strategy in FALLBACK_STRATEGIES]
        reasons = Counter(a.failure_reason or DEFAULT_FALLBACK_REASON for a in fallback)
        return FallbackUsageStats(
            times_used=len(fallback),
            success_rate=_rate(sum(1 for a in fallback if a.success), len(fallback)),
            average_time=_mean([a.duration or 0.0 for a in fallback]),
            fallback_reasons=dict(reasons),
        )

    def generate_summary(self) -> HealingSummary:
        sealed = self._sealed()
        successful = sum(1 for a in sealed if a.success)
        total_cost = sum(a.estimated_cost for a in sealed)
        success_rate = _rate(successful, len(sealed))
        ai_stats = self.get_ai_usage_stats()
        fallback_stats = self.get_fallback_usage_stats()

        warnings: List[str] = []
        recommendations: List[str] = []

        threshold = self.config.success_rate_warning_threshold * 100
        if sealed and success_rate < threshold:
            warnings.append(
                f"Low success rate: {success_rate:.1f}% (threshold: {threshold:.0f}%)"
            )
            recommendations.append(
                "Consider reviewing healing strategies or improving AI prompts"
            )

        if (
            ai_stats.times_used > 0
            and fallback_stats.times_used > 0
            and ai_stats.success_rate < fallback_stats.success_rate
        ):
            recommendations.append(
                "Fallback strategy has higher success rate - consider using it more frequently"
            )

        if (
            ai_stats.cache_hit_rate < LOW_CACHE_HIT_RATE
            and ai_stats.times_used > LOW_CACHE_MIN_USES
        ):
            recommendations.append(
                f"Low cache hit rate ({ai_stats.cache_hit_rate:.1f}%) - "
                f"consider enabling the cache or increasing its TTL"
            )

        if total_cost > HIGH_TOTAL_COST and ai_stats.times_used > 0:
            cost_per_healing = total_cost / ai_stats.times_used
            if cost_per_healing > HIGH_COST_PER_HEALING:
                warnings.append(f"High cost per healing: ${cost_per_healing:.2f}")
                recommendations.append(
                    "Consider using smaller models or increasing cache usage"
                )

        return HealingSummary(
            total_attempts=len(sealed),
            successful=successful,
            failed=len(sealed) - successful,
            success_rate=success_rate,
            average_time=_mean([a.duration or 0.0 for a in sealed]),
            total_cost=total_cost,
            by_failure_type=self.get_metrics_by_failure_type(),
            ai_stats=ai_stats,
            fallback_stats=fallback_stats,
            period_start=self._start_time,
            period_end=self._now(),
            warnings=warnings,
            recommendations=recommendations,
        )

    # --- Export ---

    def export_to_json(self) -> str:
        return json.dumps(to_jsonable(self.generate_summary()), indent=2)

    def export_to_markdown(self) -> str:
        summary = self.generate_summary()
        lines = [
            "# Healing Metrics Report",
            "",
            "## Overview",
            "",
            f"- **Total Attempts**: {summary.total_attempts}",
            f"- **Successful**: {summary.successful} ({summary.success_rate:.1f}%)",
            f"- **Failed**: {summary.failed}",
            f"- **Average Time**: {summary.average_time:.0f}ms",
            f"- **Total Cost**: ${summary.total_cost:.4f}",
            f"- **Period**: {summary.period_start.isoformat()} to "
            f"{summary.period_end.isoformat()}",
            "",
        ]

        active_types = {
            failure_type: type_metrics
            for failure_type, type_metrics in summary.by_failure_type.items()
            if type_metrics.attempts > 0
        }

        if self.config.enable_visualizations:
            lines += [
                "## Success Rate",
                "",
                "```",
                f"{_bar(summary.success_rate / 100)} {summary.success_rate:.1f}%",
                "```",
                "",
            ]
            if active_types:
                busiest = max(m.attempts for m in active_types.values())
                label_width = max(len(t.value) for t in active_types)
                lines += ["## Attempt Volume", "", "```"]
                for failure_type, type_metrics in active_types.items():
                    lines.append(
                        f"{failure_type.value.ljust(label_width)} "
                        f"{_bar(type_metrics.attempts / busiest)} {type_metrics.attempts}"
                    )
                lines += ["```", ""]

        lines += [
            "## Metrics by Failure Type",
            "",
            "| Type | Attempts | Success | Failed | Success Rate | Avg Time | Cost |",
            "|------|----------|---------|--------|--------------|----------|------|",
        ]
        for failure_type, m in active_types.items():
            lines.append(
                f"| {failure_type.value} | {m.attempts} | {m.successful} | {m.failed} | "
                f"{m.success_rate:.1f}% | {m.average_time:.0f}ms | ${m.total_cost:.4f} |"
            )
        lines.append("")

        ai = summary.ai_stats
        lines += [
            "## AI Usage Statistics",
            "",
            f"- **Times Used**: {ai.times_used}",
            f"- **Total Tokens**: {ai.total_tokens:,}",
            f"- **Prompt Tokens (est.)**: {ai.prompt_tokens:,}",
            f"- **Completion Tokens (est.)**: {ai.completion_tokens:,}",
            f"- **Total Cost**: ${ai.total_cost:.4f}",
            f"- **Success Rate**: {ai.success_rate:.1f}%",
            f"- **Cache Hit Rate**: {ai.cache_hit_rate:.1f}%",
            "",
        ]

        fallback = summary.fallback_stats
        lines += [
            "## Fallback Strategy Statistics",
            "",
            f"- **Times Used**: {fallback.times_used}",
            f"- **Success Rate**: {fallback.success_rate:.1f}%",
            f"- **Average Time**: {fallback.average_time:.0f}ms",
            "",
        ]
        if fallback.fallback_reasons:
            lines += ["### Fallback Reasons", ""]
            lines += [
                f"- **{reason}**: {count}"
                for reason, count in fallback.fallback_reasons.items()
            ]
            lines.append("")

        if summary.warnings:
            lines += ["## Warnings", ""] + [f"- {w}" for w in summary.warnings] + [""]
        if summary.recommendations:
            lines += ["## Recommendations", ""]
            lines += [f"- {r}" for r in summary.recommendations] + [""]

        return "\n".join(lines)

    # --- History ---

    def store_history(self, path: Optional[Union[str, Path]] = None) -> None:
        """
        Append a timestamped summary snapshot to the JSON history file.

        The file is created if absent and trimmed to ``max_history_entries``.

        Raises:
            HistoryError: "Failed to store history: ..." on any I/O failure.
        """
        target = Path(path or self.config.history_path)
        with error_context("Failed to store history", logger, HistoryError):
            history = self.load_history(target)
            history.append(
                {
                    "id": f"history-{uuid.uuid4().hex[:12]}",
                    "timestamp": self._now().isoformat(),
                    "metrics": to_jsonable(self.generate_summary()),
                }
            )
            history = history[-self.config.max_history_entries :]
            with open(target, "w", encoding="utf-8") as f:
                json.dump(history, f, indent=2)
        logger.info(f"Stored healing history snapshot in {target} ({len(history)} entries)")

    def load_history(
        self, path: Optional[Union[str, Path]] = None
    ) -> List[Dict[str, Any]]:
        """
        Load the JSON history array; a missing file yields ``[]``.

        Raises:
            HistoryError: "Failed to load history: ..." on other failures.
        """
        target = Path(path or self.config.history_path)
        if not target.exists():
            return []
        with error_context("Failed to load history", logger, HistoryError):
            with open(target, "r", encoding="utf-8") as f:
                history = json.load(f)
            if not isinstance(history, list):
                raise ValueError("history file does not contain a JSON array")
            return history

    def get_attempts(self) -> List[HealingAttempt]:
        with self._lock:
            return [copy.copy(a) for a in self._attempts.values()]

    def clear(self) -> None:
        with self._lock:
            self._attempts.clear()
            self._start_time = self._now()
