from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ledger_engine.errors import DuplicateBudgetError
from ledger_engine.ledger_view import LiveView
from ledger_engine.models import (
    DEFAULT_CATALOG,
    ZERO,
    CategoryCatalog,
    TransactionType,
    coerce_amount,
)
from ledger_engine.schemas import BudgetPayload, BudgetUpdatePayload, coerce_payload
from ledger_engine.store import RecordStore

HUNDRED = Decimal("100")
MONTHLY = "monthly"


@dataclass(frozen=True)
class Budget:
    id: Optional[int]
    category: str
    limit: Decimal
    period: str = MONTHLY
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Budget":
        return cls(
            id=record.get("id"),
            category=record["category"],
            limit=coerce_amount(record["limit"]),
            period=record.get("period") or MONTHLY,
            created_at=record.get("created_at"),
        )


@dataclass(frozen=True)
class BudgetProgress:
    budget_id: Optional[int]
    category: str
    limit: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: Decimal
    is_exceeded: bool

    @property
    def status(self) -> str:
        return "exceeded" if self.is_exceeded else "within"


@dataclass(frozen=True)
class BudgetSummary:
    total_budget: Decimal
    total_spent: Decimal
    remaining: Decimal
    percentage: Decimal
    is_exceeded: bool


def budget_progress(
    budgets: Iterable[Budget], expenses_by_category: Mapping[str, Decimal]
) -> List[BudgetProgress]:
    """One progress entry per budget, in the order given.

    ``expenses_by_category`` is normally the current month's spend from
    :func:`ledger_engine.aggregation.aggregate`. Categories match
    case-insensitively.
    """
    spend = _spend_index(expenses_by_category)
    results: List[BudgetProgress] = []
    for budget in budgets:
        limit = coerce_amount(budget.limit)
        spent = spend.get(budget.category.casefold(), ZERO)
        percentage = _percentage(spent, limit)
        results.append(
            BudgetProgress(
                budget_id=budget.id,
                category=budget.category,
                limit=limit,
                spent=spent,
                remaining=max(ZERO, limit - spent),
                percentage=percentage,
                is_exceeded=percentage > HUNDRED,
            )
        )
    return results


def budget_summary(
    budgets: Iterable[Budget], expenses_by_category: Mapping[str, Decimal]
) -> BudgetSummary:
    progress = budget_progress(budgets, expenses_by_category)
    total_budget = sum((item.limit for item in progress), ZERO)
    total_spent = sum((item.spent for item in progress), ZERO)
    return BudgetSummary(
        total_budget=total_budget,
        total_spent=total_spent,
        remaining=max(ZERO, total_budget - total_spent),
        percentage=_percentage(total_spent, total_budget),
        is_exceeded=total_spent > total_budget,
    )


def available_categories(
    budgets: Iterable[Budget], catalog: CategoryCatalog = DEFAULT_CATALOG
) -> List[str]:
    used = {budget.category.casefold() for budget in budgets}
    return [
        name
        for name in catalog.names_for(TransactionType.EXPENSE)
        if name.casefold() not in used
    ]


def _spend_index(expenses_by_category: Mapping[str, Decimal]) -> Dict[str, Decimal]:
    index: Dict[str, Decimal] = {}
    for category, amount in expenses_by_category.items():
        key = category.casefold()
        index[key] = index.get(key, ZERO) + coerce_amount(amount)
    return index


def _percentage(spent: Decimal, limit: Decimal) -> Decimal:
    if limit == ZERO:
        return ZERO
    return spent / limit * HUNDRED


class BudgetService:
    def __init__(
        self,
        store: RecordStore,
        catalog: CategoryCatalog = DEFAULT_CATALOG,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.clock = clock

    def view(self, user_id: str) -> LiveView[Budget]:
        return LiveView(
            self.store,
            user_id,
            convert=Budget.from_record,
            sort_key=lambda budget: budget.category.casefold(),
        )

    def list(self, user_id: str) -> List[Budget]:
        budgets = [Budget.from_record(record) for record in self.store.list(user_id)]
        budgets.sort(key=lambda budget: budget.category.casefold())
        return budgets

    def add(self, user_id: str, payload: BudgetPayload | Mapping[str, Any]) -> Budget:
        payload = coerce_payload(BudgetPayload, payload)
        payload = BudgetPayload.validate_payload(payload, self.catalog)
        self._ensure_unique(user_id, payload.category)
        record = self.store.add(
            user_id,
            {
                "category": payload.category,
                "limit": payload.limit,
                "period": MONTHLY,
                "created_at": self.clock(),
            },
        )
        return Budget.from_record(record)

    def update(
        self,
        user_id: str,
        budget_id: int,
        payload: BudgetUpdatePayload | Mapping[str, Any],
    ) -> Budget:
        payload = coerce_payload(BudgetUpdatePayload, payload)
        changes = BudgetUpdatePayload.validate_payload(payload, self.catalog)
        if "category" in changes:
            self._ensure_unique(user_id, changes["category"], exclude_id=budget_id)
        if not changes:
            return Budget.from_record(self.store.get(user_id, budget_id))
        return Budget.from_record(self.store.update(user_id, budget_id, changes))

    def delete(self, user_id: str, budget_id: int) -> None:
        self.store.remove(user_id, budget_id)

    def _ensure_unique(
        self, user_id: str, category: str, exclude_id: Optional[int] = None
    ) -> None:
        wanted = category.casefold()
        for budget in self.list(user_id):
            if budget.id != exclude_id and budget.category.casefold() == wanted:
                raise DuplicateBudgetError(category)
