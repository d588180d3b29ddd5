from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from ledger_engine.models import ZERO, Transaction, TransactionType

HUNDRED = Decimal("100")
TOP_EXPENSES_LIMIT = 6


@dataclass(frozen=True)
class Totals:
    total_expenses: Decimal = ZERO
    total_incomes: Decimal = ZERO
    balance: Decimal = ZERO
    expenses_by_category: Dict[str, Decimal] = field(default_factory=dict)
    incomes_by_category: Dict[str, Decimal] = field(default_factory=dict)
    this_month_expenses: Decimal = ZERO
    this_month_incomes: Decimal = ZERO
    this_month_balance: Decimal = ZERO
    this_month_expenses_by_category: Dict[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class CategoryShare:
    category: str
    total_spent: Decimal
    percentage_of_total: Decimal


def aggregate(
    transactions: Iterable[Transaction], today: Optional[date] = None
) -> Totals:
    """Fold a ledger snapshot into totals.

    "This month" is the calendar month of ``today`` (defaults to the
    current date) matched against each transaction's effective date.
    Sums are exact; no rounding happens here.
    """
    today = today or date.today()
    total_expenses = ZERO
    total_incomes = ZERO
    month_expenses = ZERO
    month_incomes = ZERO
    expenses_by_category: Dict[str, Decimal] = {}
    incomes_by_category: Dict[str, Decimal] = {}
    month_by_category: Dict[str, Decimal] = {}

    for txn in transactions:
        key = txn.category_key
        in_month = _in_month(txn.effective_date, today)
        if txn.type is TransactionType.INCOME:
            total_incomes += txn.amount
            incomes_by_category[key] = incomes_by_category.get(key, ZERO) + txn.amount
            if in_month:
                month_incomes += txn.amount
        else:
            total_expenses += txn.amount
            expenses_by_category[key] = expenses_by_category.get(key, ZERO) + txn.amount
            if in_month:
                month_expenses += txn.amount
                month_by_category[key] = month_by_category.get(key, ZERO) + txn.amount

    return Totals(
        total_expenses=total_expenses,
        total_incomes=total_incomes,
        balance=total_incomes - total_expenses,
        expenses_by_category=expenses_by_category,
        incomes_by_category=incomes_by_category,
        this_month_expenses=month_expenses,
        this_month_incomes=month_incomes,
        this_month_balance=month_incomes - month_expenses,
        this_month_expenses_by_category=month_by_category,
    )


def category_breakdown(expenses_by_category: Dict[str, Decimal]) -> List[CategoryShare]:
    total = sum(expenses_by_category.values(), ZERO)
    shares = [
        CategoryShare(
            category=category,
            total_spent=amount,
            percentage_of_total=(amount / total * HUNDRED) if total > ZERO else ZERO,
        )
        for category, amount in expenses_by_category.items()
    ]
    shares.sort(key=lambda share: share.total_spent, reverse=True)
    return shares


def top_expenses(
    transactions: Iterable[Transaction], limit: int = TOP_EXPENSES_LIMIT
) -> List[Transaction]:
    expenses = [
        txn
        for txn in transactions
        if txn.type is TransactionType.EXPENSE and txn.amount > ZERO
    ]
    expenses.sort(key=lambda txn: txn.amount, reverse=True)
    return expenses[:limit]


def _in_month(value: Optional[date], today: date) -> bool:
    if value is None:
        return False
    return value.year == today.year and value.month == today.month
