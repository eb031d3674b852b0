"""In-memory cache of signed access URLs with in-flight request de-duplication."""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from src.models.job import utcnow
from src.services.storage import SignedUrl

logger = logging.getLogger(__name__)

Signer = Callable[[str], Awaitable[Union[SignedUrl, str]]]


@dataclass
class _Entry:
    url: str
    expires_at: float


class SignedUrlCache:
    """
    Memoizes ``permanent reference -> signed URL`` for a bounded time.

    Entries live for ``ttl_seconds`` (kept shorter than the signer's real
    expiry) and never past the ``valid_until`` reported by the signer.
    Concurrent misses for the same reference share one signing call; a
    failed call is propagated to every waiter and leaves no entry behind,
    so the next call retries.

    One instance is owned by the application container and injected into
    the services that need it.
    """

    def __init__(
        self,
        signer: Signer,
        ttl_seconds: float,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._signer = signer
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._inflight: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _lookup(self, ref: str) -> Optional[str]:
        entry = self._entries.get(ref)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[ref]
            return None
        return entry.url

    def _store(self, ref: str, signed: Union[SignedUrl, str]) -> str:
        now = self._clock()
        expires_at = now + self.ttl_seconds
        if isinstance(signed, SignedUrl):
            remaining = (signed.valid_until - utcnow()).total_seconds()
            expires_at = min(expires_at, now + remaining)
            url = signed.url
        else:
            url = signed

        self._entries[ref] = _Entry(url=url, expires_at=expires_at)
        self._entries.move_to_end(ref)
        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        return url

    async def _mint(self, ref: str) -> str:
        signed = await self._signer(ref)
        return self._store(ref, signed)

    def _finish(self, ref: str, task: asyncio.Task) -> None:
        if self._inflight.get(ref) is task:
            del self._inflight[ref]
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Signing failed for {ref}: {task.exception()}")

    async def get(self, ref: str) -> str:
        """
        Signed URL for ``ref``, signing at most once per validity window.

        Raises:
            Whatever the signer raised, to every caller awaiting that attempt
        """
        cached = self._lookup(ref)
        if cached is not None:
            return cached

        task = self._inflight.get(ref)
        if task is None:
            task = asyncio.ensure_future(self._mint(ref))
            self._inflight[ref] = task
            task.add_done_callback(lambda t: self._finish(ref, t))

        # A caller giving up must not cancel the signing other callers share.
        return await asyncio.shield(task)

    async def resolve(self, ref: str, timeout: Optional[float] = None) -> str:
        """
        Signed URL for display, falling back to the permanent reference.

        Signing errors and timeouts are logged, never raised.
        """
        try:
            if timeout is None:
                return await self.get(ref)
            return await asyncio.wait_for(self.get(ref), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Signing {ref} timed out after {timeout}s, using permanent URL")
        except Exception as e:
            logger.warning(f"Signing {ref} failed, using permanent URL: {e}")
        return ref

    def invalidate(self, ref: str) -> None:
        self._entries.pop(ref, None)

    def clear(self) -> None:
        self._entries.clear()
