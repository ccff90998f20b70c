"""
Exception logging helpers that never raise themselves.

Used on the fail-soft paths of the proxy (rewriting, relay shutdown) where a
broken exception object or logger must not turn a degraded response into a
failed one.
"""

import logging


def _safe_str(obj) -> str:
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def _sub_exceptions(exception) -> list:
    try:
        return list(getattr(exception, "exceptions", None) or [])
    except Exception:
        return []


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: Exception,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception, expanding the members of an exception group.

    Args:
        logger: The logger instance to use
        prefix: Component tag for the message (e.g. "[Forward]", "[WS-Relay]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    try:
        safe_prefix = _safe_str(prefix) if prefix is not None else ""
        if exception is None:
            logger.log(level, f"{safe_prefix} Exception: None")
            return

        sub_exceptions = _sub_exceptions(exception)
        if sub_exceptions:
            logger.log(
                level,
                f"{safe_prefix} Exception with {len(sub_exceptions)} sub-exceptions: "
                f"{_safe_str(exception)}",
            )
            for i, sub_exc in enumerate(sub_exceptions):
                logger.log(
                    level,
                    f"{safe_prefix} Sub-exception {i + 1}: "
                    f"{type(sub_exc).__name__}: {_safe_str(sub_exc)}",
                    exc_info=sub_exc,
                )
            return

        logger.log(
            level,
            f"{safe_prefix} {type(exception).__name__}: {_safe_str(exception)}",
            exc_info=exception,
        )
    except Exception:
        try:
            logger.log(logging.ERROR, "Exception logging failed")
        except Exception:
            pass


def format_exception_message(exception: Exception) -> str:
    """Format an exception for a log line, including group members."""
    try:
        if exception is None:
            return "None"
        sub_exceptions = _sub_exceptions(exception)
        if not sub_exceptions:
            return _safe_str(exception)
        joined = "; ".join(
            f"{type(sub).__name__}: {_safe_str(sub)}" for sub in sub_exceptions
        )
        return f"{_safe_str(exception)} (Sub-exceptions: {joined})"
    except Exception:
        return "<exception (all formatting failed)>"
