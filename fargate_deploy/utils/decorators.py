"""Decorator utilities for cross-cutting concerns."""
import functools
import logging
import time
from typing import Any, Callable, Optional, TypeVar, cast

# Setup logging
logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])


def log_operation(description: str, logger_name: Optional[str] = None) -> Callable[[F], F]:
    """Decorator for timing and logging a deployment step.

    Args:
        description: Human-readable step name used in the log lines
        logger_name: Optional logger name (defaults to module logger)

    Returns:
        Decorator function
    """
    op_logger = logging.getLogger(logger_name) if logger_name else logger

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            op_logger.info(f"Starting: {description}")
            start_time = time.monotonic()
            try:
                result = func(*args, **kwargs)
                duration = time.monotonic() - start_time
                op_logger.info(f"Completed: {description} in {duration:.2f}s")
                return result
            except Exception as e:
                duration = time.monotonic() - start_time
                op_logger.error(f"Failed: {description} after {duration:.2f}s - {str(e)}")
                raise
        return cast(F, wrapper)

    return decorator
