"""
Classification of model invocation errors for the fallback policy.
"""
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from agent_graph.common.enums import ErrorType

TIMEOUT_PATTERNS = [
    re.compile(r"timeout", re.I),
    re.compile(r"timed out", re.I),
    re.compile(r"ETIMEDOUT", re.I),
    re.compile(r"ECONNRESET", re.I),
    re.compile(r"socket hang up", re.I),
]
RATE_LIMIT_PATTERNS = [
    re.compile(r"rate.?limit", re.I),
    re.compile(r"too many requests", re.I),
    re.compile(r"429"),
    re.compile(r"quota exceeded", re.I),
    re.compile(r"capacity", re.I),
]
SERVER_ERROR_PATTERNS = [
    re.compile(r"500"),
    re.compile(r"502"),
    re.compile(r"503"),
    re.compile(r"504"),
    re.compile(r"internal server error", re.I),
    re.compile(r"bad gateway", re.I),
    re.compile(r"service unavailable", re.I),
]
UNAVAILABLE_PATTERNS = [
    re.compile(r"ENOTFOUND", re.I),
    re.compile(r"ECONNREFUSED", re.I),
    re.compile(r"getaddrinfo", re.I),
    re.compile(r"network", re.I),
    re.compile(r"unreachable", re.I),
]
AUTH_PATTERNS = [
    re.compile(r"401"),
    re.compile(r"403"),
    re.compile(r"unauthorized", re.I),
    re.compile(r"forbidden", re.I),
    re.compile(r"invalid.*key", re.I),
    re.compile(r"authentication", re.I),
    re.compile(r"api.?key", re.I),
]
BAD_REQUEST_PATTERNS = [
    re.compile(r"400"),
    re.compile(r"malformed", re.I),
    re.compile(r"bad request", re.I),
]

# Order matters: the first matching group wins
_MESSAGE_RULES = [
    (TIMEOUT_PATTERNS, ErrorType.TIMEOUT, True),
    (RATE_LIMIT_PATTERNS, ErrorType.RATE_LIMIT, True),
    (AUTH_PATTERNS, ErrorType.AUTH, False),
    (BAD_REQUEST_PATTERNS, ErrorType.BAD_REQUEST, False),
    (SERVER_ERROR_PATTERNS, ErrorType.SERVER_ERROR, True),
    (UNAVAILABLE_PATTERNS, ErrorType.UNAVAILABLE, True),
]

DEFAULT_FALLBACK_ON = (
    ErrorType.TIMEOUT,
    ErrorType.RATE_LIMIT,
    ErrorType.SERVER_ERROR,
    ErrorType.UNAVAILABLE,
)

_ALIASES = {
    "rateLimit": ErrorType.RATE_LIMIT,
    "serverError": ErrorType.SERVER_ERROR,
    "badRequest": ErrorType.BAD_REQUEST,
}


@dataclass(frozen=True)
class ClassifiedError:
    type: ErrorType
    message: str
    retryable: bool
    status_code: Optional[int] = None


def _status_code(error: BaseException) -> Optional[int]:
    for candidate in (
        getattr(error, "status_code", None),
        getattr(error, "status", None),
        getattr(getattr(error, "response", None), "status_code", None),
    ):
        if isinstance(candidate, int):
            return candidate
    return None


def classify_error(error: BaseException) -> ClassifiedError:
    """
    Classify an error. Status codes are checked first, then the message.

    Unknown errors are treated as retryable.
    """
    message = str(error)
    status_code = _status_code(error)

    if status_code:
        if status_code == 429:
            return ClassifiedError(ErrorType.RATE_LIMIT, message, True, status_code)
        if status_code in (401, 403):
            return ClassifiedError(ErrorType.AUTH, message, False, status_code)
        if status_code == 400:
            return ClassifiedError(ErrorType.BAD_REQUEST, message, False, status_code)
        if 500 <= status_code < 600:
            return ClassifiedError(ErrorType.SERVER_ERROR, message, True, status_code)

    if isinstance(error, TimeoutError):
        return ClassifiedError(ErrorType.TIMEOUT, message, True, status_code)

    for patterns, error_type, retryable in _MESSAGE_RULES:
        if any(pattern.search(message) for pattern in patterns):
            return ClassifiedError(error_type, message, retryable, status_code)

    return ClassifiedError(ErrorType.UNKNOWN, message, True, status_code)


def normalize_error_types(values: Optional[Iterable[str]]) -> Optional[tuple]:
    if values is None:
        return None
    return tuple(_ALIASES.get(value) or ErrorType(value) for value in values)


def should_trigger_fallback(error_type: ErrorType, fallback_on: Optional[Iterable[str]] = None) -> bool:
    allowed = DEFAULT_FALLBACK_ON if fallback_on is None else normalize_error_types(fallback_on)
    return error_type in allowed
