"""Property-based tests for the signed URL cache.

Covers request coalescing, time-based expiry, failure handling and the
permanent-reference fallback used by read endpoints.
"""

import asyncio
from datetime import timedelta
from typing import List

import pytest
from hypothesis import given, settings, strategies as st

from src.models.job import utcnow
from src.services.signed_url_cache import SignedUrlCache
from src.services.storage import SignedUrl
from src.utils.errors import SigningError


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class CountingSigner:
    """Signer that counts calls and can be made slow or failing."""

    def __init__(self, delay: float = 0.0, fail_times: int = 0) -> None:
        self.calls: List[str] = []
        self.delay = delay
        self.fail_times = fail_times

    async def __call__(self, ref: str) -> str:
        self.calls.append(ref)
        await asyncio.sleep(self.delay)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise SigningError(f"cannot sign {ref}")
        return f"{ref}?token={len(self.calls)}"


class TestConcurrentDeduplication:
    """Concurrent misses for one reference share a single signing call."""

    @settings(max_examples=50, deadline=None)
    @given(callers=st.integers(min_value=2, max_value=20))
    def test_concurrent_gets_sign_once(self, callers: int) -> None:
        signer = CountingSigner(delay=0.01)
        cache = SignedUrlCache(signer, ttl_seconds=60)

        async def run_test() -> List[str]:
            return await asyncio.gather(*(cache.get("ref-a") for _ in range(callers)))

        urls = asyncio.run(run_test())

        assert signer.calls == ["ref-a"]
        assert len(set(urls)) == 1

    @pytest.mark.asyncio
    async def test_distinct_refs_sign_separately(self) -> None:
        signer = CountingSigner(delay=0.01)
        cache = SignedUrlCache(signer, ttl_seconds=60)

        await asyncio.gather(cache.get("a"), cache.get("b"), cache.get("a"))

        assert sorted(signer.calls) == ["a", "b"]
        assert len(cache) == 2

    @pytest.mark.asyncio
    async def test_caller_timeout_does_not_cancel_shared_signing(self) -> None:
        signer = CountingSigner(delay=0.05)
        cache = SignedUrlCache(signer, ttl_seconds=60)

        fallback = await cache.resolve("ref", timeout=0.001)
        url = await cache.get("ref")

        assert fallback == "ref"
        assert url == "ref?token=1"
        assert signer.calls == ["ref"]


class TestExpiry:
    """Entries are served only inside their validity window."""

    @settings(max_examples=50, deadline=None)
    @given(
        ttl=st.floats(min_value=1.0, max_value=1000.0),
        elapsed=st.floats(min_value=0.0, max_value=2000.0),
    )
    def test_resigns_only_after_ttl(self, ttl: float, elapsed: float) -> None:
        clock = FakeClock()
        signer = CountingSigner()
        cache = SignedUrlCache(signer, ttl_seconds=ttl, clock=clock)

        async def run_test() -> None:
            await cache.get("ref")
            clock.now += elapsed
            await cache.get("ref")

        asyncio.run(run_test())

        expected_calls = 2 if elapsed >= ttl else 1
        assert len(signer.calls) == expected_calls

    @pytest.mark.asyncio
    async def test_entry_never_outlives_signed_url(self) -> None:
        clock = FakeClock()

        async def short_lived(ref: str) -> SignedUrl:
            return SignedUrl(url=f"{ref}?short", valid_until=utcnow() + timedelta(seconds=10))

        cache = SignedUrlCache(short_lived, ttl_seconds=6 * 24 * 3600, clock=clock)
        await cache.get("ref")
        assert len(cache) == 1

        clock.now += 11
        assert cache._lookup("ref") is None

    @pytest.mark.asyncio
    async def test_oldest_entry_evicted_when_full(self) -> None:
        signer = CountingSigner()
        cache = SignedUrlCache(signer, ttl_seconds=60, max_entries=2)

        for ref in ("a", "b", "c"):
            await cache.get(ref)

        assert len(cache) == 2
        await cache.get("a")
        assert signer.calls == ["a", "b", "c", "a"]

    @pytest.mark.asyncio
    async def test_invalidate_forces_resign(self) -> None:
        signer = CountingSigner()
        cache = SignedUrlCache(signer, ttl_seconds=60)

        await cache.get("a")
        cache.invalidate("a")
        await cache.get("a")

        assert signer.calls == ["a", "a"]

    def test_rejects_non_positive_ttl(self) -> None:
        with pytest.raises(ValueError):
            SignedUrlCache(CountingSigner(), ttl_seconds=0)


class TestFailures:
    """A failed signing attempt reaches every waiter and is never cached."""

    @pytest.mark.asyncio
    async def test_error_propagates_to_all_waiters(self) -> None:
        signer = CountingSigner(delay=0.01, fail_times=1)
        cache = SignedUrlCache(signer, ttl_seconds=60)

        results = await asyncio.gather(
            cache.get("ref"), cache.get("ref"), cache.get("ref"), return_exceptions=True
        )

        assert all(isinstance(r, SigningError) for r in results)
        assert signer.calls == ["ref"]
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_next_call_after_failure_retries(self) -> None:
        signer = CountingSigner(fail_times=1)
        cache = SignedUrlCache(signer, ttl_seconds=60)

        with pytest.raises(SigningError):
            await cache.get("ref")
        url = await cache.get("ref")

        assert url == "ref?token=2"
        assert len(signer.calls) == 2

    @pytest.mark.asyncio
    async def test_resolve_falls_back_to_permanent_reference(self) -> None:
        signer = CountingSigner(fail_times=5)
        cache = SignedUrlCache(signer, ttl_seconds=60)

        assert await cache.resolve("ref") == "ref"
        assert await cache.resolve("ref", timeout=1.0) == "ref"
