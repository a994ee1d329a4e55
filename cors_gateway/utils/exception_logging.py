"""
Exception logging helpers that never raise, even for broken exception objects.
"""

import logging


def _safe_str(obj) -> str:
    """
    Convert an object to string, falling back to repr and then to its type name.
    """
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


def format_exception_message(exception: Exception) -> str:
    """
    One-line description of an exception suitable for a client-facing body.

    Never includes a traceback. Exception groups list their members.
    Falls back to the exception type name when the message is empty.
    """
    if exception is None:
        return "None"
    try:
        message = _safe_str(exception) or type(exception).__name__
        members = _sub_exceptions(exception)
        if not members:
            return message
        joined = "; ".join(
            f"{type(sub).__name__}: {_safe_str(sub)}" for sub in members
        )
        return f"{message} (Sub-exceptions: {joined})"
    except Exception:
        return f"<{type(exception).__name__} (formatting failed)>"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: Exception,
    level: int = logging.ERROR,
    include_traceback: bool = True,
) -> None:
    """
    Log an exception and each member of an exception group.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g. "[Proxy]", "[Tunnel]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
        include_traceback: Attach exc_info to the records
    """
    try:
        members = _sub_exceptions(exception)
        if members:
            logger.log(
                level,
                f"{prefix} Exception with {len(members)} sub-exceptions: {_safe_str(exception)}",
            )
            for i, sub in enumerate(members):
                logger.log(
                    level,
                    f"{prefix} Sub-exception {i+1}: {type(sub).__name__}: {_safe_str(sub)}",
                    exc_info=sub if include_traceback else False,
                )
            return
        logger.log(
            level,
            f"{prefix} {type(exception).__name__}: {_safe_str(exception)}",
            exc_info=exception if include_traceback and exception is not None else False,
        )
    except Exception:
        try:
            logger.log(logging.ERROR, f"{prefix} Exception logging failed")
        except Exception:
            # Logging itself is broken; nothing left to report to
            pass
