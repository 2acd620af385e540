"""Time-boxed memo of which models a credential can use.

The cache is an explicit object passed to whichever backend needs it; entries
are keyed by a SHA-256 digest of the credential and refreshed lazily once
they are older than the TTL (10 minutes by default).
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("chatengine.availability")

__all__ = ["AvailabilityEntry", "ModelAvailabilityCache"]

DEFAULT_TTL_SECONDS = 600.0


@dataclass(frozen=True)
class AvailabilityEntry:
    models: dict[str, bool]
    checked_at: float


def _credential_key(credential: str) -> str:
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


class ModelAvailabilityCache:
    """TTL cache of model availability per credential.

    Safe to share across concurrent exchanges: reads are lock-free, refreshes
    are serialised so that one expired entry triggers a single fetch.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, AvailabilityEntry] = {}
        self._refresh_lock = asyncio.Lock()

    def get(self, credential: str) -> Optional[dict[str, bool]]:
        """Fresh availability for ``credential``, or None if missing/expired."""
        entry = self._entries.get(_credential_key(credential))
        if entry is None:
            return None
        if self._clock() - entry.checked_at >= self.ttl_seconds:
            return None
        return dict(entry.models)

    def put(self, credential: str, models: dict[str, bool]) -> None:
        self._entries[_credential_key(credential)] = AvailabilityEntry(
            models=dict(models), checked_at=self._clock()
        )

    def invalidate(self, credential: Optional[str] = None) -> None:
        """Drop one credential's entry, or every entry when None."""
        if credential is None:
            self._entries.clear()
        else:
            self._entries.pop(_credential_key(credential), None)

    async def get_or_refresh(
        self,
        credential: str,
        refresh: Callable[[], Awaitable[dict[str, bool]]],
    ) -> dict[str, bool]:
        """Return cached availability, fetching it with ``refresh`` when stale."""
        cached = self.get(credential)
        if cached is not None:
            return cached

        async with self._refresh_lock:
            # Another task may have refreshed while we waited
            cached = self.get(credential)
            if cached is not None:
                return cached
            models = await refresh()
            self.put(credential, models)
            logger.info(
                "model_availability_refreshed",
                extra={"available": sorted(m for m, ok in models.items() if ok)},
            )
            return dict(models)
