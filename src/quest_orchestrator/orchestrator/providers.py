"""External collaborators used by the orchestrator workflows.

Bank sync, notification delivery and recurring-charge detection live outside
this service. Each is a Protocol with a small in-process default that keeps
the workflows runnable in development and tests.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime
from typing import Any, Protocol

from pydantic import BaseModel, Field

from quest_orchestrator.storage.models import Transaction

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class NotificationPayload(BaseModel):
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)


class BankDataProvider(Protocol):
    async def sync_transactions(self, user_id: str) -> list[Transaction]: ...


class NotificationProvider(Protocol):
    async def enforce_daily_limit(self, user_id: str) -> bool: ...

    async def schedule(self, user_id: str, payload: NotificationPayload) -> bool: ...


class RecurringChargeDetector(Protocol):
    async def refresh(self, user_id: str) -> int: ...


class QueuedBankDataProvider:
    """Hands out transactions queued per user; each sync drains the user's queue."""

    def __init__(self, transactions: Iterable[Transaction] = ()) -> None:
        self._queued: dict[str, list[Transaction]] = defaultdict(list)
        self.queue(*transactions)

    def queue(self, *transactions: Transaction) -> None:
        for txn in transactions:
            self._queued[txn.user_id].append(txn)

    async def sync_transactions(self, user_id: str) -> list[Transaction]:
        return self._queued.pop(user_id, [])


class InMemoryNotificationProvider:
    """Records notifications and caps deliveries per user per UTC day."""

    def __init__(self, *, daily_limit: int = 5, clock: Callable[[], datetime] = _utc_now) -> None:
        self.daily_limit = daily_limit
        self.clock = clock
        self.sent: list[tuple[str, NotificationPayload]] = []
        self._daily_counts: dict[tuple[str, date], int] = {}

    def daily_count(self, user_id: str) -> int:
        return self._daily_counts.get((user_id, self.clock().date()), 0)

    async def enforce_daily_limit(self, user_id: str) -> bool:
        return self.daily_count(user_id) < self.daily_limit

    async def schedule(self, user_id: str, payload: NotificationPayload) -> bool:
        if not await self.enforce_daily_limit(user_id):
            logger.info(
                "notification event=skipped reason=daily_limit user_id=%s title=%s",
                user_id,
                payload.title,
            )
            return False
        slot = (user_id, self.clock().date())
        self._daily_counts[slot] = self._daily_counts.get(slot, 0) + 1
        self.sent.append((user_id, payload))
        logger.info("notification event=scheduled user_id=%s title=%s", user_id, payload.title)
        return True


class NoopRecurringChargeDetector:
    async def refresh(self, user_id: str) -> int:
        return 0
