import logging
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncGenerator, Generator, Type

from ..errors import BaseError

# Default logger for utilities if no specific logger is provided
module_logger = logging.getLogger(__name__)


def _wrap(operation_name: str, error_type: Type[Exception], e: Exception) -> Exception:
    message = f"{operation_name}: {e}"
    if issubclass(error_type, BaseError):
        return error_type(
            message,
            context={"operation": operation_name},
            original_exception=e,
        )
    return error_type(message)


@contextmanager
def error_context(
    operation_name: str,
    logger: logging.Logger,
    error_type: Type[Exception],
    reraise: bool = True,
) -> Generator[None, None, None]:
    """
    Synchronous context manager for consistent error handling.

    Any exception raised in the block is logged and re-raised as
    ``error_type("<operation_name>: <cause>")`` chained to the original,
    so ``operation_name`` doubles as a stable message prefix.
    """
    logger.debug(f"Starting operation: {operation_name}")
    try:
        yield
        logger.debug(f"Successfully completed operation: {operation_name}")
    except Exception as e:
        logger.error(f"Error during operation '{operation_name}': {e}", exc_info=True)
        if reraise:
            if isinstance(e, error_type):
                raise
            raise _wrap(operation_name, error_type, e) from e


@asynccontextmanager
async def async_error_context(
    operation_name: str,
    logger: logging.Logger,
    error_type: Type[Exception],
    reraise: bool = True,
) -> AsyncGenerator[None, None]:
    """Asynchronous counterpart of :func:`error_context`."""
    logger.debug(f"Starting operation: {operation_name}")
    try:
        yield
        logger.debug(f"Successfully completed operation: {operation_name}")
    except Exception as e:
        logger.error(f"Error during operation '{operation_name}': {e}", exc_info=True)
        if reraise:
            if isinstance(e, error_type):
                raise
            raise _wrap(operation_name, error_type, e) from e
