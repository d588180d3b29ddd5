from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterable, List, Mapping, Optional

from ledger_engine.ledger_view import LiveView
from ledger_engine.models import ZERO, coerce_amount
from ledger_engine.schemas import (
    DepositPayload,
    SavingsGoalPayload,
    SavingsGoalUpdatePayload,
    coerce_payload,
)
from ledger_engine.store import RecordStore

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


class GoalStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class SavingsGoal:
    id: Optional[int]
    name: str
    target_amount: Decimal
    saved_amount: Decimal
    target_date: date
    created_at: Optional[datetime] = None

    @property
    def is_completed(self) -> bool:
        return self.saved_amount >= self.target_amount

    @property
    def remaining_amount(self) -> Decimal:
        return max(ZERO, self.target_amount - self.saved_amount)

    @property
    def progress(self) -> Decimal:
        if self.target_amount <= ZERO:
            return ZERO
        return self.saved_amount / self.target_amount * HUNDRED

    def days_remaining(self, today: date) -> int:
        return (self.target_date - today).days

    def is_overdue(self, today: date) -> bool:
        return not self.is_completed and self.target_date < today

    def status(self, today: date) -> GoalStatus:
        # Completion wins over an expired target date.
        if self.is_completed:
            return GoalStatus.COMPLETED
        if self.target_date < today:
            return GoalStatus.OVERDUE
        return GoalStatus.ACTIVE

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "SavingsGoal":
        return cls(
            id=record.get("id"),
            name=record["name"],
            target_amount=coerce_amount(record["target_amount"]),
            saved_amount=coerce_amount(record.get("saved_amount") or ZERO),
            target_date=record["target_date"],
            created_at=record.get("created_at"),
        )


@dataclass(frozen=True)
class GoalStatistics:
    total_saved: Decimal
    total_target: Decimal
    overall_progress: Decimal
    completed: List[SavingsGoal]
    active: List[SavingsGoal]
    overdue: List[SavingsGoal]
    completion_rate: Decimal

    @property
    def total_count(self) -> int:
        return len(self.completed) + len(self.active) + len(self.overdue)


def goal_statistics(goals: Iterable[SavingsGoal], today: date) -> GoalStatistics:
    goals = list(goals)
    total_saved = sum((goal.saved_amount for goal in goals), ZERO)
    total_target = sum((goal.target_amount for goal in goals), ZERO)
    by_status = {status: [] for status in GoalStatus}
    for goal in goals:
        by_status[goal.status(today)].append(goal)
    completed = by_status[GoalStatus.COMPLETED]
    return GoalStatistics(
        total_saved=total_saved,
        total_target=total_target,
        overall_progress=(
            total_saved / total_target * HUNDRED if total_target > ZERO else ZERO
        ),
        completed=completed,
        active=by_status[GoalStatus.ACTIVE],
        overdue=by_status[GoalStatus.OVERDUE],
        completion_rate=(
            Decimal(len(completed)) / Decimal(len(goals)) * HUNDRED if goals else ZERO
        ),
    )


class SavingsGoalService:
    def __init__(
        self,
        store: RecordStore,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.clock = clock

    def view(self, user_id: str) -> LiveView[SavingsGoal]:
        # Newest goals first, as they are listed to the user.
        return LiveView(
            self.store,
            user_id,
            convert=SavingsGoal.from_record,
            sort_key=lambda goal: goal.created_at or datetime.min,
            reverse=True,
        )

    def list(self, user_id: str) -> List[SavingsGoal]:
        goals = [SavingsGoal.from_record(record) for record in self.store.list(user_id)]
        goals.sort(key=lambda goal: goal.created_at or datetime.min, reverse=True)
        return goals

    def get(self, user_id: str, goal_id: int) -> SavingsGoal:
        return SavingsGoal.from_record(self.store.get(user_id, goal_id))

    def create(
        self, user_id: str, payload: SavingsGoalPayload | Mapping[str, Any]
    ) -> SavingsGoal:
        payload = coerce_payload(SavingsGoalPayload, payload)
        payload = SavingsGoalPayload.validate_payload(payload, self._today())
        record = self.store.add(
            user_id,
            {
                "name": payload.name,
                "target_amount": payload.target_amount,
                "saved_amount": payload.saved_amount,
                "target_date": payload.target_date,
                "created_at": self.clock(),
            },
        )
        return SavingsGoal.from_record(record)

    def deposit(
        self,
        user_id: str,
        goal_id: int,
        amount: Decimal | DepositPayload | Mapping[str, Any],
    ) -> SavingsGoal:
        """Add ``amount`` to the goal; the total may pass the target."""
        if not isinstance(amount, (DepositPayload, Mapping)):
            amount = {"amount": amount}
        payload = DepositPayload.validate_payload(coerce_payload(DepositPayload, amount))
        record = self.store.increment(
            user_id, goal_id, "saved_amount", payload.amount
        )
        goal = SavingsGoal.from_record(record)
        if goal.is_completed:
            logger.info("Savings goal %s reached its target", goal_id)
        return goal

    def update(
        self,
        user_id: str,
        goal_id: int,
        payload: SavingsGoalUpdatePayload | Mapping[str, Any],
    ) -> SavingsGoal:
        payload = coerce_payload(SavingsGoalUpdatePayload, payload)
        changes = SavingsGoalUpdatePayload.validate_payload(payload, self._today())
        if not changes:
            return self.get(user_id, goal_id)
        return SavingsGoal.from_record(self.store.update(user_id, goal_id, changes))

    def delete(self, user_id: str, goal_id: int) -> None:
        self.store.remove(user_id, goal_id)

    def statistics(self, user_id: str, today: Optional[date] = None) -> GoalStatistics:
        return goal_statistics(self.list(user_id), today or self._today())

    def _today(self) -> date:
        return self.clock().date()
