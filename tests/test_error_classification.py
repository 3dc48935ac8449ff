"""
Tests for model error classification and the fallback policy
"""

import pytest

from agent_graph.common.enums import ErrorType
from agent_graph.utils.error_classification import classify_error, should_trigger_fallback


class _StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


@pytest.mark.parametrize("error, expected_type, retryable", [
    (_StatusError("slow down", 429), ErrorType.RATE_LIMIT, True),
    (_StatusError("nope", 401), ErrorType.AUTH, False),
    (_StatusError("bad", 400), ErrorType.BAD_REQUEST, False),
    (_StatusError("oops", 503), ErrorType.SERVER_ERROR, True),
    (TimeoutError("took too long"), ErrorType.TIMEOUT, True),
    (Exception("Request timed out"), ErrorType.TIMEOUT, True),
    (Exception("Rate limit exceeded"), ErrorType.RATE_LIMIT, True),
    (Exception("Invalid API key provided"), ErrorType.AUTH, False),
    (Exception("502 Bad Gateway"), ErrorType.SERVER_ERROR, True),
    (Exception("getaddrinfo ENOTFOUND api.example.com"), ErrorType.UNAVAILABLE, True),
    (Exception("something odd"), ErrorType.UNKNOWN, True),
])
def test_classify_error(error, expected_type, retryable):
    """Status codes win over message patterns"""
    classified = classify_error(error)
    assert classified.type == expected_type
    assert classified.retryable is retryable


def test_default_fallback_policy():
    """Transient errors trigger fallbacks by default, client errors do not"""
    assert should_trigger_fallback(ErrorType.RATE_LIMIT)
    assert should_trigger_fallback(ErrorType.UNAVAILABLE)
    assert not should_trigger_fallback(ErrorType.AUTH)
    assert not should_trigger_fallback(ErrorType.UNKNOWN)


def test_explicit_fallback_policy():
    """An explicit list replaces the default, accepting camelCase aliases"""
    assert should_trigger_fallback(ErrorType.RATE_LIMIT, ["rateLimit"])
    assert not should_trigger_fallback(ErrorType.TIMEOUT, ["rate_limit"])
    assert not should_trigger_fallback(ErrorType.RATE_LIMIT, [])
