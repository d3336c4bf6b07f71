from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class ApplicationMetrics:
    """
    A centralized class for managing and exposing healing engine metrics using Prometheus.

    It uses a dedicated registry to avoid conflicts with other parts of the
    application or third-party libraries that might use the global
    Prometheus registry.
    """

    def __init__(self):
        self.registry = CollectorRegistry()

        self._initialize_healing_metrics()
        self._initialize_retry_metrics()
        self._initialize_cost_metrics()

    def _initialize_healing_metrics(self):
        """Initializes metrics related to repair attempts and the cache."""
        self.healing_attempts = Counter(
            "resilient_healer_healing_attempts_total",
            "Total number of sealed healing attempts.",
            ["strategy", "result"],  # result: 'success' or 'failure'
            registry=self.registry,
        )
        self.healing_duration = Histogram(
            "resilient_healer_healing_duration_seconds",
            "Histogram of healing attempt duration in seconds.",
            registry=self.registry,
        )
        self.cache_lookups = Counter(
            "resilient_healer_cache_lookups_total",
            "Total number of cache lookups.",
            ["result"],  # 'hit' or 'miss'
            registry=self.registry,
        )
        self.cache_evictions = Counter(
            "resilient_healer_cache_evictions_total",
            "Total number of LRU evictions.",
            registry=self.registry,
        )

    def _initialize_retry_metrics(self):
        """Initializes metrics related to retried task executions."""
        self.retry_attempts = Counter(
            "resilient_healer_retry_attempts_total",
            "Total number of failed attempts that were retried.",
            registry=self.registry,
        )
        self.flaky_tests = Counter(
            "resilient_healer_flaky_tests_total",
            "Total number of tasks classified as flaky.",
            registry=self.registry,
        )
        self.permanent_failures = Counter(
            "resilient_healer_permanent_failures_total",
            "Total number of tasks that exhausted their retries.",
            registry=self.registry,
        )

    def _initialize_cost_metrics(self):
        """Initializes metrics related to AI spend."""
        self.llm_tokens = Counter(
            "resilient_healer_llm_tokens_total",
            "Total number of tokens consumed by AI calls.",
            ["kind"],  # 'prompt' or 'completion'
            registry=self.registry,
        )
        self.llm_cost = Counter(
            "resilient_healer_llm_cost_usd_total",
            "Total tracked AI spend.",
            registry=self.registry,
        )
        self.budget_percent_used = Gauge(
            "resilient_healer_budget_percent_used",
            "Percentage of the monthly budget spent.",
            registry=self.registry,
        )

    def get_metrics_export(self) -> bytes:
        """Generates the latest metrics data in Prometheus text format."""
        return generate_latest(self.registry)


# Global instance used by components that are not handed their own.
metrics = ApplicationMetrics()
