from .metrics import ApplicationMetrics, metrics

__all__ = ["ApplicationMetrics", "metrics"]
