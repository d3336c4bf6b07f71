from .backoff import BackoffResult, calculate_backoff, calculate_total_retry_time
from .retry_handler import RetryHandler

__all__ = [
    "BackoffResult",
    "RetryHandler",
    "calculate_backoff",
    "calculate_total_retry_time",
]
