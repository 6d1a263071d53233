import pytest
from core.exceptions import (
    FetchError,
    NetworkError,
    NonRetryableError,
    RateLimitError,
    ResourceNotFoundError,
    RetryableError,
)


def test_retryable_errors_carry_no_retry_policy():
    error = NetworkError("timed out", context={"api_url": "https://pp.example.test"})

    assert isinstance(error, RetryableError)
    assert isinstance(error, FetchError)
    assert not hasattr(error, "max_retries")
    assert not hasattr(error, "retry_delay")
    assert error.to_dict()["context"]["api_url"] == "https://pp.example.test"


def test_retryable_error_rejects_retry_keywords():
    with pytest.raises(TypeError):
        RetryableError("boom", max_retries=5)


def test_rate_limit_keeps_retry_after_hint():
    error = RateLimitError("slow down", retry_after=7.0)

    assert error.retry_after == 7.0
    assert error.context["retry_after"] == 7.0


def test_not_found_is_not_retryable():
    error = ResourceNotFoundError("gone")

    assert isinstance(error, NonRetryableError)
    assert not isinstance(error, RetryableError)
