"""
AI-scan quota per user over a sliding window.

The limiter fails OPEN: when the counter store cannot be reached the caller
is treated as having the full quota. Blocking paying users during a storage
outage is worse than letting a few extra scans through.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billo.core.config import Settings
from billo.core.errors import CounterStoreUnavailable
from billo.models.usage import AiScanEvent
from billo.models.user import SubscriptionTier, User

logger = logging.getLogger(__name__)


@dataclass
class UsageResult:
    allowed: bool
    remaining: int
    limit: int
    resets_at: datetime


@dataclass
class UsageSnapshot:
    remaining: int
    used: int
    limit: int
    resets_at: datetime

    @property
    def is_limited(self) -> bool:
        return self.remaining == 0


class CounterStore(Protocol):
    async def events(self, key: str, since: datetime) -> list[datetime]:
        """Timestamps recorded for ``key`` after ``since``, oldest first."""
        ...

    async def consume(self, key: str, now: datetime, since: datetime, limit: int) -> tuple[bool, list[datetime]]:
        """Atomically record ``now`` if fewer than ``limit`` events exist after ``since``.

        Returns (consumed, events in window after the call).
        """
        ...


class InMemoryCounterStore:
    """Single-process store for tests and local development."""

    def __init__(self):
        self._events: dict[str, list[datetime]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def _window(self, key: str, since: datetime) -> list[datetime]:
        kept = [t for t in self._events[key] if t > since]
        self._events[key] = kept
        return list(kept)

    async def events(self, key: str, since: datetime) -> list[datetime]:
        async with self._lock:
            return self._window(key, since)

    async def consume(self, key: str, now: datetime, since: datetime, limit: int) -> tuple[bool, list[datetime]]:
        async with self._lock:
            window = self._window(key, since)
            if len(window) >= limit:
                return False, window
            self._events[key].append(now)
            return True, window + [now]


class SqlCounterStore:
    """ai_scan_events table; consume holds a row lock on the user while counting."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def events(self, key: str, since: datetime) -> list[datetime]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(AiScanEvent.created_at)
                    .where(AiScanEvent.user_id == key, AiScanEvent.created_at > since)
                    .order_by(AiScanEvent.created_at)
                )
                return list(result.scalars().all())
        except (SQLAlchemyError, OSError) as e:
            raise CounterStoreUnavailable(str(e)) from e

    async def consume(self, key: str, now: datetime, since: datetime, limit: int) -> tuple[bool, list[datetime]]:
        try:
            async with self._session_factory() as session, session.begin():
                # Serialises concurrent consumers for the same user
                await session.execute(select(User.id).where(User.id == key).with_for_update())
                count_result = await session.execute(
                    select(func.count(AiScanEvent.id)).where(
                        AiScanEvent.user_id == key, AiScanEvent.created_at > since
                    )
                )
                if count_result.scalar_one() >= limit:
                    consumed = False
                else:
                    session.add(AiScanEvent(user_id=key, created_at=now))
                    consumed = True
                window_result = await session.execute(
                    select(AiScanEvent.created_at)
                    .where(AiScanEvent.user_id == key, AiScanEvent.created_at > since)
                    .order_by(AiScanEvent.created_at)
                )
                return consumed, list(window_result.scalars().all())
        except (SQLAlchemyError, OSError) as e:
            raise CounterStoreUnavailable(str(e)) from e


class UsageLimiter:
    def __init__(self, store: CounterStore, limits: dict[SubscriptionTier, int], window: timedelta, clock=None):
        self.store = store
        self.limits = limits
        self.window = window
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, store: CounterStore, settings: Settings) -> "UsageLimiter":
        return cls(
            store,
            limits={
                SubscriptionTier.free: settings.ai_scan_limit_free,
                SubscriptionTier.pro: settings.ai_scan_limit_pro,
            },
            window=timedelta(hours=settings.ai_scan_window_hours),
        )

    def limit_for(self, tier) -> int:
        return self.limits[SubscriptionTier(tier)]

    def _resets_at(self, now: datetime, window_events: list[datetime]) -> datetime:
        if window_events:
            return min(window_events) + self.window
        return now + self.window

    async def check_and_consume(self, user_id: str, tier) -> UsageResult:
        limit = self.limit_for(tier)
        now = self._clock()
        since = now - self.window
        try:
            allowed, window_events = await self.store.consume(user_id, now, since, limit)
        except CounterStoreUnavailable as e:
            logger.error(f"Usage store unavailable, allowing scan for {user_id}: {e}")
            return UsageResult(allowed=True, remaining=limit, limit=limit, resets_at=now + self.window)

        return UsageResult(
            allowed=allowed,
            remaining=max(0, limit - len(window_events)),
            limit=limit,
            resets_at=self._resets_at(now, window_events),
        )

    async def peek_usage(self, user_id: str, tier) -> UsageSnapshot:
        limit = self.limit_for(tier)
        now = self._clock()
        try:
            window_events = await self.store.events(user_id, now - self.window)
        except CounterStoreUnavailable as e:
            logger.error(f"Usage store unavailable, reporting full quota for {user_id}: {e}")
            return UsageSnapshot(remaining=limit, used=0, limit=limit, resets_at=now + self.window)

        used = len(window_events)
        return UsageSnapshot(
            remaining=max(0, limit - used),
            used=used,
            limit=limit,
            resets_at=self._resets_at(now, window_events),
        )
