"""Property-based tests for retry behavior.

Covers backoff timing, attempt bounds and the transient-error predicate
that keeps client errors from being retried.
"""

import asyncio
from typing import List, Optional, Tuple
from unittest.mock import patch

import pytest
from hypothesis import given, settings, strategies as st

from src.utils.errors import FalAPIError, LateAPIError, TikTokAPIError
from src.utils.retry import is_transient, with_retry


class TestExponentialBackoffRetry:
    """Attempts stay within max_attempts and delays double each time."""

    @settings(max_examples=100, deadline=None)
    @given(
        max_attempts=st.integers(min_value=1, max_value=5),
        num_failures=st.integers(min_value=0, max_value=10),
    )
    def test_attempts_never_exceed_max(self, max_attempts: int, num_failures: int) -> None:
        call_count = 0

        async def mock_sleep(delay: float) -> None:
            pass

        @with_retry(max_attempts=max_attempts, base_delay=0.001)
        async def flaky() -> str:
            nonlocal call_count
            call_count += 1
            if call_count <= num_failures:
                raise ConnectionError("upstream reset")
            return "ok"

        async def run_test() -> Optional[str]:
            with patch("src.utils.retry.asyncio.sleep", mock_sleep):
                try:
                    return await flaky()
                except ConnectionError:
                    return None

        result = asyncio.run(run_test())

        assert call_count <= max_attempts
        if num_failures < max_attempts:
            assert result == "ok"
            assert call_count == num_failures + 1
        else:
            assert result is None
            assert call_count == max_attempts

    @settings(max_examples=100, deadline=None)
    @given(
        max_attempts=st.integers(min_value=2, max_value=5),
        base_delay=st.floats(min_value=0.001, max_value=0.05),
    )
    def test_delays_double(self, max_attempts: int, base_delay: float) -> None:
        recorded_delays: List[float] = []

        async def mock_sleep(delay: float) -> None:
            recorded_delays.append(delay)

        @with_retry(max_attempts=max_attempts, base_delay=base_delay)
        async def always_fails() -> str:
            raise TimeoutError("slow upstream")

        async def run_test() -> None:
            with patch("src.utils.retry.asyncio.sleep", mock_sleep):
                with pytest.raises(TimeoutError):
                    await always_fails()

        asyncio.run(run_test())

        # No delay after the last attempt
        assert len(recorded_delays) == max_attempts - 1
        for i, delay in enumerate(recorded_delays):
            assert delay == pytest.approx(base_delay * (2**i))

    @settings(max_examples=50, deadline=None)
    @given(max_attempts=st.integers(min_value=1, max_value=5))
    def test_raises_last_exception(self, max_attempts: int) -> None:
        call_count = 0

        async def mock_sleep(delay: float) -> None:
            pass

        @with_retry(max_attempts=max_attempts, base_delay=0.001)
        async def always_fails() -> str:
            nonlocal call_count
            call_count += 1
            raise ConnectionError(f"Failure {call_count}")

        async def run_test() -> str:
            with patch("src.utils.retry.asyncio.sleep", mock_sleep):
                try:
                    await always_fails()
                    return ""
                except ConnectionError as e:
                    return str(e)

        assert asyncio.run(run_test()) == f"Failure {max_attempts}"
        assert call_count == max_attempts

    def test_unlisted_exception_type_not_retried(self) -> None:
        call_count = 0

        @with_retry(max_attempts=4, base_delay=0.001, exceptions=(ConnectionError,))
        async def raises_type_error() -> str:
            nonlocal call_count
            call_count += 1
            raise TypeError("bad argument")

        with pytest.raises(TypeError):
            asyncio.run(raises_type_error())
        assert call_count == 1


class TestTransientErrors:
    """Only rate limits and server errors are retried when a status is known."""

    @settings(max_examples=100, deadline=None)
    @given(status_code=st.integers(min_value=400, max_value=599))
    def test_status_code_classification(self, status_code: int) -> None:
        expected = status_code == 429 or status_code >= 500
        for error in (
            FalAPIError(status_code, "x"),
            TikTokAPIError(status_code, "x"),
            LateAPIError(status_code, "x"),
        ):
            assert is_transient(error) is expected

    def test_errors_without_status_are_transient(self) -> None:
        assert is_transient(ConnectionError("reset"))
        assert is_transient(TimeoutError())

    @pytest.mark.parametrize(
        "status_code,expected_calls",
        [(400, 1), (401, 1), (404, 1), (429, 3), (500, 3), (503, 3)],
    )
    def test_client_errors_fail_fast(self, status_code: int, expected_calls: int) -> None:
        call_count = 0

        async def mock_sleep(delay: float) -> None:
            pass

        @with_retry(max_attempts=3, base_delay=0.001)
        async def lookup() -> str:
            nonlocal call_count
            call_count += 1
            raise TikTokAPIError(status_code, "lookup failed")

        async def run_test() -> Tuple[int, str]:
            with patch("src.utils.retry.asyncio.sleep", mock_sleep):
                try:
                    await lookup()
                except TikTokAPIError as e:
                    return e.status_code, str(e)
            return 0, ""

        code, message = asyncio.run(run_test())

        assert code == status_code
        assert "lookup failed" in message
        assert call_count == expected_calls
