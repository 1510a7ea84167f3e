"""
Utility functions for logging exceptions together with their causes.

Upstream failures surface as wrapper exceptions; the interesting part (DNS
failure, refused connection, timeout) is usually further down the chain.
"""

import logging
from typing import List


def _safe_str(obj) -> str:
    """
    Safely convert an object to string, handling cases where __str__ or __repr__ might fail.
    """
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def cause_chain(exception: BaseException) -> List[BaseException]:
    """Return ``exception`` followed by its explicit or implicit causes."""
    chain: List[BaseException] = []
    current = exception
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def format_exception_message(exception: BaseException) -> str:
    """Format an exception chain as ``Outer: msg <- Inner: msg``."""
    return " <- ".join(
        f"{type(exc).__name__}: {_safe_str(exc)}" for exc in cause_chain(exception)
    )


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
    include_traceback: bool = False,
) -> None:
    """
    Log an exception with its whole cause chain on a single line.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Proxy]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
        include_traceback: Attach the traceback to the record
    """
    logger.log(
        level,
        f"{prefix} {format_exception_message(exception)}",
        exc_info=exception if include_traceback else None,
    )
