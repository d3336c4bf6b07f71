from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .failed_test import utc_now


@dataclass
class TestTask:
    """A unit of work that may be re-executed by the retry handler."""

    __test__ = False  # not a pytest test class

    id: str
    file_path: str = ""
    test_name: Optional[str] = None
    max_retries: int = 3
    priority: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TestExecutionResult:
    """Outcome of executing a TestTask once."""

    __test__ = False

    task_id: str
    success: bool
    execution_time: float = 0.0  # milliseconds
    retry_attempt: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    is_flaky: bool = False
    worker_id: str = "unknown"
    output: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetryAttempt:
    """A failed, non-final attempt recorded by the retry handler."""

    attempt_number: int
    success: bool
    execution_time: float
    delay_ms: int
    timestamp: datetime = field(default_factory=utc_now)
    error: Optional[str] = None


@dataclass(frozen=True)
class FlakyTestRecord:
    """A task that failed at least once and later succeeded."""

    test_id: str
    file_path: str
    test_name: str
    failure_count: int
    attempts: Tuple[RetryAttempt, ...]
    first_failure: datetime
    final_success: datetime
    total_execution_time: float


@dataclass(frozen=True)
class FlakyTestStatistics:
    total_tests: int
    flaky_percentage: float
    average_retries: float
    most_flaky_test: Optional[FlakyTestRecord]


@dataclass(frozen=True)
class FlakyTestReport:
    generated_at: datetime
    total_flaky_tests: int
    flaky_tests: List[FlakyTestRecord]
    statistics: FlakyTestStatistics


@dataclass(frozen=True)
class RetryStatistics:
    total_tasks: int
    flaky_tests: int
    permanent_failures: int
    total_retry_attempts: int
