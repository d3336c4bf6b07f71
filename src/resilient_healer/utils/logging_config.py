import contextvars
import inspect
import json
import logging
import sys
import time
import traceback
import uuid
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar

import structlog

from .config_types import Settings

F = TypeVar("F", bound=Callable[..., Any])

correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)
operation_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "operation", default=None
)

SENSITIVE_PATTERNS = {
    "password",
    "secret",
    "token",
    "api_key",
    "access_token",
    "private_key",
    "credentials",
    "authorization",
    "x-api-key",
    "bearer",
}

# Counters such as prompt_tokens are not secrets
NON_SENSITIVE_KEYS = {
    "tokens_used",
    "total_tokens",
    "prompt_tokens",
    "completion_tokens",
    "average_tokens",
}


def set_correlation_id(cid: Optional[str] = None) -> str:
    """
    Sets a correlation ID for the current context.
    If no ID is provided, a new UUID is generated.
    """
    if cid is None:
        cid = f"cid_{uuid.uuid4()}"
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def clear_logging_context() -> None:
    """Clears all logging context variables."""
    correlation_id_var.set(None)
    operation_var.set(None)


def mask_sensitive_data(data: Any, additional_patterns: Optional[set] = None) -> Any:
    """
    Recursively mask sensitive information in data structures.

    Args:
        data: Data to sanitize
        additional_patterns: Additional sensitive field patterns

    Returns:
        Sanitized data with sensitive fields masked
    """
    patterns = SENSITIVE_PATTERNS
    if additional_patterns:
        patterns = patterns.union(additional_patterns)

    def _is_sensitive(key: Any) -> bool:
        name = str(key).lower()
        if name in NON_SENSITIVE_KEYS:
            return False
        return any(pattern in name for pattern in patterns)

    def _mask_recursive(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {
                k: "***MASKED***" if _is_sensitive(k) else _mask_recursive(v)
                for k, v in obj.items()
            }
        elif isinstance(obj, list):
            return [_mask_recursive(item) for item in obj]
        elif isinstance(obj, tuple):
            return tuple(_mask_recursive(item) for item in obj)
        return obj

    return _mask_recursive(data)


class JsonFormatter(logging.Formatter):
    """JSON formatter with correlation id and sensitive data masking."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
            "name": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "correlation_id": correlation_id_var.get(),
            "operation": operation_var.get(),
        }

        if record.exc_info:
            log_record["exception"] = "".join(
                traceback.format_exception(*record.exc_info)
            )

        extra_data = getattr(record, "extra_data", None)
        if isinstance(extra_data, dict):
            log_record.update(extra_data)

        return json.dumps(mask_sensitive_data(log_record), default=str)


def log_performance(
    operation_name: Optional[str] = None, min_duration_ms: float = 0.0
) -> Callable[[F], F]:
    """
    Decorator to log execution time of a sync or async function.

    Args:
        operation_name: Name of the operation (defaults to function name)
        min_duration_ms: Minimum duration in ms to log (filters out fast operations)
    """

    def decorator(func: F) -> F:
        op_name = operation_name or f"{func.__module__}.{func.__name__}"
        logger = logging.getLogger(func.__module__)

        def _finish(start_time: float, error: Optional[Exception]) -> None:
            duration_ms = (time.time() - start_time) * 1000
            extra = {
                "extra_data": {
                    "operation": op_name,
                    "duration_ms": round(duration_ms, 2),
                    "success": error is None,
                }
            }
            if error is not None:
                extra["extra_data"]["error_type"] = type(error).__name__
                logger.error(f"Failed {op_name}: {error}", extra=extra)
            elif duration_ms >= min_duration_ms:
                logger.info(f"Completed {op_name}", extra=extra)

        @wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            token = operation_var.set(op_name)
            start_time = time.time()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _finish(start_time, e)
                raise
            finally:
                operation_var.reset(token)
            _finish(start_time, None)
            return result

        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            token = operation_var.set(op_name)
            start_time = time.time()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _finish(start_time, e)
                raise
            finally:
                operation_var.reset(token)
            _finish(start_time, None)
            return result

        if inspect.iscoroutinefunction(func):
            return async_wrapper  # type: ignore
        return sync_wrapper  # type: ignore

    return decorator


def configure_logging(
    settings: Optional[Settings] = None,
    log_file: Optional[str] = None,
    structured: bool = False,
    log_level_override: Optional[str] = None,
    use_structlog: bool = True,
    module_levels: Optional[Dict[str, str]] = None,
    log_rotation_config: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Configure root logging with optional JSON output, rotation and structlog.

    Args:
        settings: Application settings (only ``log_level`` is read).
        log_file: Optional path to a log file.
        structured: If True, logs will be in JSON format.
        log_level_override: Optional log level string to override settings.
        use_structlog: Whether to configure structlog alongside stdlib logging.
        module_levels: Dictionary of module names to log levels.
        log_rotation_config: maxBytes / backupCount for the rotating file handler.
    """
    level_str = settings.log_level if settings is not None else "INFO"
    if log_level_override:
        level_str = log_level_override
    log_level = getattr(logging, level_str.upper(), logging.INFO)

    if use_structlog and structured:
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.dev.set_exc_info,
                structlog.processors.TimeStamper(fmt="ISO"),
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(log_level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )

    rotation_config = log_rotation_config or {}
    max_bytes = rotation_config.get("maxBytes", 10 * 1024 * 1024)  # 10MB
    backup_count = rotation_config.get("backupCount", 5)

    if structured:
        console_formatter: logging.Formatter = JsonFormatter()
        file_formatter: logging.Formatter = JsonFormatter()
    else:
        console_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - [%(levelname)s] - %(message)s"
        )
        file_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - [%(levelname)s] - %(filename)s:%(lineno)d - %(message)s"
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Clear existing handlers to avoid duplicate logs
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(log_level)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count
        )
        file_handler.setFormatter(file_formatter)
        file_handler.setLevel(log_level)
        root_logger.addHandler(file_handler)

    if module_levels:
        for module_name, module_level in module_levels.items():
            logging.getLogger(module_name).setLevel(
                getattr(logging, module_level.upper(), logging.INFO)
            )

    # Configure library loggers to be less verbose
    for lib_name, lib_level in {
        "httpx": logging.WARNING,
        "httpcore": logging.WARNING,
        "anthropic": logging.INFO,
        "openai": logging.INFO,
    }.items():
        logging.getLogger(lib_name).setLevel(lib_level)

    logging.getLogger(__name__).debug(
        "Logging configured",
        extra={
            "extra_data": {
                "level": logging.getLevelName(log_level),
                "structured": structured,
                "file_logging": log_file is not None,
            }
        },
    )
