"""Quest verification engine.

Only posted transactions can verify or fail a quest. Pending evidence can at
most move a quest to ``COMPLETED_PROVISIONAL``. Each evaluation writes the
new status, one progress snapshot and (on first verification) the reward in
a single store transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import assert_never
from uuid import uuid4

from pydantic import BaseModel

from quest_orchestrator.quests.metrics import (
    CategorySpendCap,
    MerchantSpendCap,
    MetricParams,
    NoMerchantCharge,
    TransferAmount,
)
from quest_orchestrator.storage.base import QuestStore
from quest_orchestrator.storage.models import (
    OPEN_QUEST_STATUSES,
    TERMINAL_QUEST_STATUSES,
    Quest,
    QuestProgressSnapshot,
    QuestStatus,
    RewardGrant,
    Transaction,
)

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_TRANSFER_KEYWORDS = ("transfer", "savings")


class QuestNotFoundError(LookupError):
    def __init__(self, quest_id: str) -> None:
        super().__init__(f"Quest not found: {quest_id}")
        self.quest_id = quest_id


class EvaluationResult(BaseModel):
    quest_id: str
    previous_status: QuestStatus
    new_status: QuestStatus
    confirmed_value: float
    pending_value: float
    explanation: str
    reward_granted: bool


class _Decision(BaseModel):
    status: QuestStatus
    confirmed_value: float
    pending_value: float
    explanation: str


def _utc_now() -> datetime:
    return datetime.now(UTC)


def round_cents(value: Decimal | float) -> float:
    """Round half-up to whole cents."""
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def _spend_total(transactions: Iterable[Transaction]) -> float:
    total = sum(
        (Decimal(str(abs(txn.amount))) for txn in transactions if txn.amount < 0), Decimal(0)
    )
    return round_cents(total)


def _transfer_total(transactions: Iterable[Transaction]) -> float:
    total = sum(
        (Decimal(str(txn.amount)) for txn in transactions if is_transfer_like(txn)), Decimal(0)
    )
    return round_cents(total)


def is_transfer_like(txn: Transaction) -> bool:
    if txn.amount <= 0:
        return False
    if (txn.category_primary or "").lower() == "transfer":
        return True
    name = txn.name.lower()
    return any(keyword in name for keyword in _TRANSFER_KEYWORDS)


def _money(value: float) -> str:
    return f"${value:.2f}"


class QuestEvaluator:
    """Evaluate quests against transaction evidence and commit the outcome."""

    def __init__(self, store: QuestStore, *, clock: Callable[[], datetime] = _utc_now) -> None:
        self.store = store
        self.clock = clock

    def evaluate_quest(self, quest_id: str) -> EvaluationResult:
        quest = self.store.get_quest(quest_id)
        if quest is None:
            raise QuestNotFoundError(quest_id)

        now = self.clock()
        decision = self._decide(quest, today=now.date())
        previous = quest.status
        new_status = decision.status
        explanation = decision.explanation
        if previous in TERMINAL_QUEST_STATUSES:
            new_status = previous
            explanation = f"{explanation} Status {previous.value} is final."

        reward: RewardGrant | None = None
        first_verification = (
            new_status is QuestStatus.COMPLETED_VERIFIED
            and previous is not QuestStatus.COMPLETED_VERIFIED
        )
        if first_verification:
            reward = RewardGrant(
                user_id=quest.user_id,
                food_type=quest.reward_food_type,
                happiness_delta=quest.happiness_delta,
            )

        snapshot = QuestProgressSnapshot(
            id=str(uuid4()),
            quest_id=quest.id,
            as_of=now,
            confirmed_value=decision.confirmed_value,
            pending_value=decision.pending_value,
            status=new_status,
            explanation=explanation,
        )
        granted = (
            self.store.commit_evaluation(
                quest_id=quest.id,
                status=new_status,
                snapshot=snapshot,
                reward=reward,
            )
            is not None
        )
        logger.info(
            "quest_eval event=committed quest_id=%s metric=%s previous=%s new=%s "
            "confirmed=%s pending=%s reward_granted=%s",
            quest.id,
            quest.metric_type.value,
            previous.value,
            new_status.value,
            decision.confirmed_value,
            decision.pending_value,
            granted,
        )
        return EvaluationResult(
            quest_id=quest.id,
            previous_status=previous,
            new_status=new_status,
            confirmed_value=decision.confirmed_value,
            pending_value=decision.pending_value,
            explanation=explanation,
            reward_granted=granted,
        )

    def evaluate_user_quests(self, user_id: str) -> list[EvaluationResult]:
        """Evaluate every ACTIVE or COMPLETED_PROVISIONAL quest of one user, in turn."""
        quests = self.store.list_quests(user_id, statuses=OPEN_QUEST_STATUSES)
        return [self.evaluate_quest(quest.id) for quest in quests]

    def evaluate_open_quests(self) -> list[EvaluationResult]:
        return [self.evaluate_quest(quest_id) for quest_id in self.store.list_open_quest_ids()]

    def _decide(self, quest: Quest, *, today: date) -> _Decision:
        metric: MetricParams = quest.metric
        expired = today > quest.window_end
        if isinstance(metric, CategorySpendCap):
            confirmed, pending = self._split(quest, category=metric.category)
            return self._spend_cap(
                cap=metric.cap,
                confirmed=_spend_total(confirmed),
                pending=_spend_total(pending),
                expired=expired,
                scope="",
            )
        if isinstance(metric, MerchantSpendCap):
            confirmed, pending = self._split(quest, merchant_key=metric.merchant_key)
            return self._spend_cap(
                cap=metric.cap,
                confirmed=_spend_total(confirmed),
                pending=_spend_total(pending),
                expired=expired,
                scope=f" at {metric.merchant_key}",
            )
        if isinstance(metric, NoMerchantCharge):
            confirmed, pending = self._split(quest, merchant_key=metric.merchant_key)
            return self._no_merchant_charge(
                merchant=metric.merchant_key,
                confirmed=sum(1 for txn in confirmed if txn.amount < 0),
                pending=sum(1 for txn in pending if txn.amount < 0),
                expired=expired,
            )
        if isinstance(metric, TransferAmount):
            confirmed, pending = self._split(quest)
            return self._transfer(
                target=metric.target_amount,
                confirmed=_transfer_total(confirmed),
                pending=_transfer_total(pending),
                expired=expired,
            )
        assert_never(metric)

    def _split(
        self,
        quest: Quest,
        *,
        category: str | None = None,
        merchant_key: str | None = None,
    ) -> tuple[list[Transaction], list[Transaction]]:
        rows = self.store.get_transactions(
            quest.user_id,
            quest.window_start,
            quest.window_end,
            include_pending=True,
            category=category,
            merchant_key=merchant_key,
        )
        confirmed = [txn for txn in rows if not txn.pending]
        pending = [txn for txn in rows if txn.pending]
        return confirmed, pending

    @staticmethod
    def _spend_cap(
        *, cap: float, confirmed: float, pending: float, expired: bool, scope: str
    ) -> _Decision:
        if expired:
            if confirmed <= cap:
                status = QuestStatus.COMPLETED_VERIFIED
                explanation = (
                    f"Spent {_money(confirmed)}{scope} (cap: {_money(cap)}). Quest completed!"
                )
            else:
                status = QuestStatus.FAILED
                explanation = f"Spent {_money(confirmed)}{scope} (cap: {_money(cap)}). Over budget."
        elif confirmed > cap:
            status = QuestStatus.FAILED
            explanation = (
                f"Already spent {_money(confirmed)}{scope}, exceeding cap of {_money(cap)}."
            )
        elif confirmed + pending > cap:
            status = QuestStatus.ACTIVE
            explanation = (
                f"{_money(confirmed)} confirmed + {_money(pending)} pending{scope}. "
                f"Close to cap of {_money(cap)}."
            )
        else:
            status = QuestStatus.ACTIVE
            explanation = f"{_money(confirmed)} of {_money(cap)} cap used so far{scope}. On track!"
        return _Decision(
            status=status, confirmed_value=confirmed, pending_value=pending, explanation=explanation
        )

    @staticmethod
    def _no_merchant_charge(
        *, merchant: str, confirmed: int, pending: int, expired: bool
    ) -> _Decision:
        if confirmed > 0:
            status = QuestStatus.FAILED
            explanation = f"{confirmed} posted charge(s) from {merchant} detected."
        elif expired:
            status = QuestStatus.COMPLETED_VERIFIED
            explanation = f"No charges from {merchant} detected. Verification passed!"
        elif pending > 0:
            status = QuestStatus.COMPLETED_PROVISIONAL
            explanation = (
                f"No posted charges from {merchant}, but {pending} pending. "
                "Provisional until posting."
            )
        else:
            status = QuestStatus.ACTIVE
            explanation = f"No charges from {merchant} so far. Monitoring continues."
        return _Decision(
            status=status,
            confirmed_value=float(confirmed),
            pending_value=float(pending),
            explanation=explanation,
        )

    @staticmethod
    def _transfer(*, target: float, confirmed: float, pending: float, expired: bool) -> _Decision:
        if confirmed >= target:
            status = QuestStatus.COMPLETED_VERIFIED
            explanation = (
                f"Transferred {_money(confirmed)} (target: {_money(target)}). Quest completed!"
            )
        elif confirmed + pending >= target:
            status = QuestStatus.COMPLETED_PROVISIONAL
            explanation = (
                f"{_money(confirmed)} confirmed + {_money(pending)} pending toward "
                f"{_money(target)} target."
            )
        elif expired:
            status = QuestStatus.EXPIRED
            explanation = (
                f"Only {_money(confirmed)} of {_money(target)} transferred before deadline."
            )
        else:
            status = QuestStatus.ACTIVE
            explanation = f"{_money(confirmed)} of {_money(target)} transferred so far."
        return _Decision(
            status=status, confirmed_value=confirmed, pending_value=pending, explanation=explanation
        )
