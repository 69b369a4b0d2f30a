"""Tests for exponential backoff."""

import pytest

from kb_retrieval.config import RETRY_CONFIGS, RetryConfig
from kb_retrieval.errors import ArtifactsFetchError, MalformedArtifactError
from kb_retrieval.retry import retry_with_backoff, retry_with_backoff_async

NO_WAIT = RetryConfig(max_retries=3, initial_delay=0.0, max_delay=0.0)


def test_delay_schedule():
    """Test delays grow by the multiplier and stop at the cap."""
    config = RetryConfig(initial_delay=1.0, max_delay=10.0, backoff_multiplier=2.0)
    assert [config.delay_for(attempt) for attempt in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_presets():
    """Test per-operation presets."""
    assert RETRY_CONFIGS["model_load"].initial_delay == 2.0
    assert RETRY_CONFIGS["artifact_fetch"].max_delay == 10.0
    assert RETRY_CONFIGS["api_call"].max_retries == 2


def test_retries_until_success():
    """Test a transient failure is retried."""
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ArtifactsFetchError("503")
        return "ok"

    assert retry_with_backoff(flaky, NO_WAIT) == "ok"
    assert len(attempts) == 3


def test_gives_up_after_max_retries(caplog):
    """Test the last error is raised once attempts are exhausted."""
    attempts = []

    def failing():
        attempts.append(1)
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        retry_with_backoff(failing, NO_WAIT)
    assert len(attempts) == NO_WAIT.max_retries + 1
    assert "Max retries (3) exceeded" in caplog.text


def test_non_recoverable_short_circuits():
    """Test a non-recoverable error is raised on first occurrence."""
    attempts = []

    def malformed():
        attempts.append(1)
        raise MalformedArtifactError()

    with pytest.raises(MalformedArtifactError):
        retry_with_backoff(malformed, NO_WAIT)
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_async_retry():
    """Test the async variant retries recoverable failures."""
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise ArtifactsFetchError()
        return 42

    assert await retry_with_backoff_async(flaky, NO_WAIT) == 42
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_async_non_recoverable_short_circuits():
    """Test the async variant never retries non-recoverable errors."""
    attempts = []

    async def malformed():
        attempts.append(1)
        raise MalformedArtifactError()

    with pytest.raises(MalformedArtifactError):
        await retry_with_backoff_async(malformed, NO_WAIT)
    assert len(attempts) == 1
