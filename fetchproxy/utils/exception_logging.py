"""
Utility functions for exception logging, including exception groups raised by
task groups around streaming responses.
"""

import logging


def _safe_str(obj) -> str:
    """
    Safely convert an object to string, handling cases where __str__ or __repr__ might fail.

    Args:
        obj: The object to convert to string

    Returns:
        A string representation of the object, falling back to safe alternatives
    """
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def _safe_get_exceptions(exception_group) -> list:
    """Return the sub-exceptions of an exception group, or an empty list."""
    try:
        return list(exception_group.exceptions)
    except Exception:
        return []


def find_exception_in_exception_groups(exception: BaseException, target_type, _seen=None):
    """
    Recursively search through an exception and its sub-exceptions to find
    if any exception is of the target type.

    Args:
        exception: The exception to search through
        target_type: The exception type to look for

    Returns:
        The first exception matching the target type, or None if not found
    """
    if exception is None:
        return None
    if isinstance(exception, target_type):
        return exception

    # __context__ chains can loop back on themselves
    _seen = _seen if _seen is not None else set()
    if id(exception) in _seen:
        return None
    _seen.add(id(exception))

    if hasattr(exception, "exceptions"):
        for sub_exc in _safe_get_exceptions(exception):
            inner_exc = find_exception_in_exception_groups(sub_exc, target_type, _seen)
            if inner_exc is not None:
                return inner_exc

    # httpx wraps errors raised by request content iterators
    cause = getattr(exception, "__cause__", None) or getattr(
        exception, "__context__", None
    )
    return find_exception_in_exception_groups(cause, target_type, _seen)


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with detailed information, including sub-exceptions for
    exception groups. Never raises, even for broken exception objects or a
    failing logger.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Fetch]", "[Relay]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    try:
        safe_prefix = _safe_str(prefix) if prefix is not None else ""
        safe_exception_str = "None" if exception is None else _safe_str(exception)

        sub_exceptions = []
        if exception is not None and hasattr(exception, "exceptions"):
            sub_exceptions = _safe_get_exceptions(exception)

        if sub_exceptions:
            logger.log(
                level,
                f"{safe_prefix} Exception with {len(sub_exceptions)} sub-exceptions: {safe_exception_str}",
            )
            for i, sub_exc in enumerate(sub_exceptions):
                sub_exc_type = type(sub_exc).__name__
                logger.log(
                    level,
                    f"{safe_prefix} Sub-exception {i+1}: {sub_exc_type}: {_safe_str(sub_exc)}",
                    exc_info=sub_exc,
                )
        else:
            logger.log(
                level,
                f"{safe_prefix} Exception: {safe_exception_str}",
                exc_info=exception if exception is not None else False,
            )
    except Exception:
        try:
            logger.log(logging.ERROR, "Exception logging failed")
        except Exception:
            # Logging itself is broken; nothing left to report to
            pass


def format_exception_message(exception: BaseException) -> str:
    """
    Format an exception message, including sub-exceptions for exception groups.
    Never raises.
    """
    if exception is None:
        return "None"

    sub_exceptions = []
    if hasattr(exception, "exceptions"):
        sub_exceptions = _safe_get_exceptions(exception)

    if not sub_exceptions:
        return _safe_str(exception)

    sub_exception_strs = [
        f"{type(sub_exc).__name__}: {_safe_str(sub_exc)}" for sub_exc in sub_exceptions
    ]
    return f"{_safe_str(exception)} (Sub-exceptions: {'; '.join(sub_exception_strs)})"
