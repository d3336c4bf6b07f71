from .error_handling import async_error_context, error_context

__all__ = ["async_error_context", "error_context"]
