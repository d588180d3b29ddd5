from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

ZERO = Decimal("0")
UNCATEGORIZED = "Uncategorized"

EXPENSE_CATEGORIES = (
    "Food",
    "Transport",
    "Entertainment",
    "Health",
    "Education",
    "Shopping",
    "Services",
    "Home",
    "Clothing",
    "Insurance",
    "Hobbies",
    "Subscriptions",
    "Technology",
    "Other",
)
INCOME_CATEGORIES = (
    "Salary",
    "Freelance",
    "Investments",
    "Sale",
    "Gift",
    "Other",
)


class TransactionType(str, Enum):
    EXPENSE = "expense"
    INCOME = "income"

    @classmethod
    def validate(cls, value: "str | TransactionType") -> "TransactionType":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError("Invalid transaction type.") from None

    @classmethod
    def from_record(cls, value: Optional[str]) -> "TransactionType":
        # Legacy records without a type count as expenses.
        if not value:
            return cls.EXPENSE
        return cls.validate(value)


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    BIANNUAL = "biannual"
    ANNUAL = "annual"

    @classmethod
    def validate(cls, value: "str | Frequency") -> "Frequency":
        if isinstance(value, cls):
            return value
        normalized = "".join(ch for ch in str(value).strip().lower() if ch.isalnum())
        if normalized == "byweekly":
            normalized = "biweekly"
        try:
            return cls(normalized)
        except ValueError:
            allowed = ", ".join(item.value for item in cls)
            raise ValueError(f"Frequency must be one of: {allowed}.") from None


class CategoryCatalog:
    """Closed set of category names accepted at the input boundary."""

    def __init__(
        self,
        expense: Iterable[str] = EXPENSE_CATEGORIES,
        income: Iterable[str] = INCOME_CATEGORIES,
        extra: Iterable[str] = (),
    ) -> None:
        extra = tuple(extra)
        self.expense = tuple(dict.fromkeys((*expense, *extra)))
        self.income = tuple(dict.fromkeys((*income, *extra)))

    def names_for(self, txn_type: TransactionType) -> tuple[str, ...]:
        if txn_type is TransactionType.INCOME:
            return self.income
        return self.expense

    def validate(self, value: str, txn_type: TransactionType) -> str:
        """Return the catalog spelling of ``value`` or raise ``ValueError``."""
        lookup = {name.casefold(): name for name in self.names_for(txn_type)}
        try:
            return lookup[value.strip().casefold()]
        except KeyError:
            raise ValueError(
                f"Unknown {txn_type.value} category: {value.strip()}."
            ) from None


DEFAULT_CATALOG = CategoryCatalog()


@dataclass(frozen=True)
class Transaction:
    id: Optional[int]
    type: TransactionType
    amount: Decimal
    description: str = ""
    category: Optional[str] = None
    date: Optional[date] = None
    created_at: Optional[datetime] = None
    generated_from: Optional[int] = None
    is_recurring: bool = False
    recurring_frequency: Optional[Frequency] = None

    @property
    def effective_date(self) -> Optional[date]:
        if self.date is not None:
            return self.date
        if self.created_at is not None:
            return self.created_at.date()
        return None

    @property
    def category_key(self) -> str:
        return self.category or UNCATEGORIZED

    @property
    def signed_amount(self) -> Decimal:
        if self.type is TransactionType.INCOME:
            return self.amount
        return -self.amount

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Transaction":
        frequency = record.get("recurring_frequency")
        return cls(
            id=record.get("id"),
            type=TransactionType.from_record(record.get("type")),
            amount=coerce_amount(record["amount"]),
            description=record.get("description") or "",
            category=record.get("category") or None,
            date=record.get("date"),
            created_at=record.get("created_at"),
            generated_from=record.get("generated_from"),
            is_recurring=bool(record.get("is_recurring")),
            recurring_frequency=Frequency.validate(frequency) if frequency else None,
        )


def coerce_amount(amount: Decimal | float | int | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
