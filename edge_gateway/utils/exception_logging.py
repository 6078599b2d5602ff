"""
Exception helpers that understand exception groups raised by task groups.
"""

import logging
from typing import List, Optional, Type, TypeVar

E = TypeVar("E", bound=BaseException)


def _safe_str(obj) -> str:
    """Convert to string without letting a broken ``__str__`` escape."""
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def _sub_exceptions(exception) -> List[BaseException]:
    try:
        return list(getattr(exception, "exceptions", None) or [])
    except Exception:
        return []


def find_exception_in_exception_groups(
    exception: BaseException, target_type: Type[E]
) -> Optional[E]:
    """
    Depth-first search of an exception and any nested groups for ``target_type``.

    Returns the first match, or None.
    """
    if isinstance(exception, target_type):
        return exception
    for sub_exc in _sub_exceptions(exception):
        found = find_exception_in_exception_groups(sub_exc, target_type)
        if found is not None:
            return found
    return None


def format_exception_message(exception: Optional[BaseException]) -> str:
    """
    One-line description of an exception, listing group members when present.

    Transport errors with an empty message are described by their type.
    """
    if exception is None:
        return "None"
    subs = _sub_exceptions(exception)
    text = _safe_str(exception) or type(exception).__name__
    if not subs:
        return text
    joined = "; ".join(
        f"{type(sub).__name__}: {_safe_str(sub)}" for sub in subs
    )
    return f"{text} (Sub-exceptions: {joined})"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its traceback; exception groups log each member.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message, normally the request id (``[a1b2c3d4]``)
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    subs = _sub_exceptions(exception)
    if not subs:
        logger.log(level, f"{prefix} Exception: {_safe_str(exception)}", exc_info=exception)
        return

    logger.log(
        level,
        f"{prefix} Exception with {len(subs)} sub-exceptions: {_safe_str(exception)}",
    )
    for i, sub_exc in enumerate(subs):
        logger.log(
            level,
            f"{prefix} Sub-exception {i + 1}: {type(sub_exc).__name__}: {_safe_str(sub_exc)}",
            exc_info=sub_exc,
        )
