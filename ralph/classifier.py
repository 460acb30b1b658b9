"""Failure classification for agent recovery policy.

Maps an opaque failure (exit text, OS error code, exception type) onto the
closed set of recovery policies. The keyword and code tables live in
ClassifierRules so they can be swapped without touching the matching logic.
"""

import errno
from dataclasses import dataclass
from enum import Enum

from ralph.errors import (
    AgentCancelledError,
    AgentConnectionError,
    LoopError,
    ResourceExhaustionError,
)


class FailureKind(str, Enum):
    """Recovery policy selected for a failure."""

    CONNECTION = "connection"
    LOOP = "loop"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    CANCELLED = "cancelled"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class ClassifierRules:
    """Keyword and error-code tables used by the classifier.

    Attributes:
        loop_phrases: Exit text fragments reporting step limits or repetition
        connection_codes: OS error code names treated as transient
        connection_keywords: Message fragments treated as transport failures
        resource_keywords: Message fragments reporting an exhausted context/budget
    """

    loop_phrases: tuple[str, ...] = (
        "maximum number of steps",
        "looping",
        "reached maximum",
        "possible looping",
    )
    connection_codes: tuple[str, ...] = (
        "ECONNRESET",
        "ECONNREFUSED",
        "ETIMEDOUT",
        "EPIPE",
        "ENOTFOUND",
        "EAI_AGAIN",
    )
    connection_keywords: tuple[str, ...] = (
        "connection reset",
        "connection refused",
        "connection timeout",
        "connection stalled",
        "stalled",
        "aborted",
        "network",
        "socket",
        "econnreset",
        "econnrefused",
        "etimedout",
    )
    resource_keywords: tuple[str, ...] = (
        "resource_exhausted",
        "resource exhausted",
        "exceeded resource",
        "resource limit",
    )


DEFAULT_RULES = ClassifierRules()


def error_code_of(error: BaseException) -> str | None:
    """Return the symbolic OS error code carried by an error, if any.

    Checks an explicit ``code`` attribute first (set on AgentConnectionError),
    then maps ``errno`` of OSError instances to its name (``ECONNRESET``...).
    """
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code

    err_no = getattr(error, "errno", None)
    if isinstance(err_no, int):
        return errno.errorcode.get(err_no)
    return None


def _message_of(error: BaseException) -> str:
    return str(error).lower()


def _matches(text: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)


def is_loop_error(error: BaseException, rules: ClassifierRules = DEFAULT_RULES) -> bool:
    """Check if an error reports a step limit or repetition."""
    if isinstance(error, LoopError):
        return True
    return _matches(_message_of(error), rules.loop_phrases)


def is_connection_error(
    error: BaseException, rules: ClassifierRules = DEFAULT_RULES
) -> bool:
    """Check if an error is a retryable transport failure."""
    if isinstance(error, AgentCancelledError):
        return False
    if isinstance(error, AgentConnectionError):
        return True
    code = error_code_of(error)
    if code is not None and code in rules.connection_codes:
        return True
    return _matches(_message_of(error), rules.connection_keywords)


def is_resource_exhaustion_error(
    error: BaseException, rules: ClassifierRules = DEFAULT_RULES
) -> bool:
    """Check if an error reports an exhausted context window or resource budget."""
    if isinstance(error, ResourceExhaustionError):
        return True
    return _matches(_message_of(error), rules.resource_keywords)


def classify_failure(
    error: BaseException, rules: ClassifierRules = DEFAULT_RULES
) -> FailureKind:
    """Select the recovery policy for an error.

    Cancellation is checked first so it is never retried. Typed errors keep
    their kind. Untyped errors are matched connection first, then loop, then
    resource exhaustion: a connection drop during a loop retry must not be
    counted against the loop budget.

    Args:
        error: The exception to classify
        rules: Keyword and code tables

    Returns:
        The FailureKind whose policy owns this error
    """
    if isinstance(error, AgentCancelledError):
        return FailureKind.CANCELLED
    if isinstance(error, ResourceExhaustionError):
        return FailureKind.RESOURCE_EXHAUSTION
    if isinstance(error, LoopError):
        return FailureKind.LOOP
    if is_connection_error(error, rules):
        return FailureKind.CONNECTION
    if is_loop_error(error, rules):
        return FailureKind.LOOP
    if is_resource_exhaustion_error(error, rules):
        return FailureKind.RESOURCE_EXHAUSTION
    return FailureKind.UNCLASSIFIED
