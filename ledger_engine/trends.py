from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from ledger_engine.models import ZERO, Transaction, TransactionType

TREND_THRESHOLD_PERCENT = Decimal("5")
HUNDRED = Decimal("100")


class TrendPeriod(str, Enum):
    LAST_7_DAYS = "7days"
    LAST_30_DAYS = "30days"
    LAST_3_MONTHS = "3months"
    LAST_6_MONTHS = "6months"
    LAST_YEAR = "1year"
    ALL = "all"

    @property
    def days(self) -> Optional[int]:
        return _PERIOD_DAYS[self]

    @classmethod
    def validate(cls, value: "str | TrendPeriod") -> "TrendPeriod":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError("Invalid trend period.") from None


_PERIOD_DAYS = {
    TrendPeriod.LAST_7_DAYS: 7,
    TrendPeriod.LAST_30_DAYS: 30,
    TrendPeriod.LAST_3_MONTHS: 90,
    TrendPeriod.LAST_6_MONTHS: 180,
    TrendPeriod.LAST_YEAR: 365,
    TrendPeriod.ALL: None,
}


class Granularity(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @classmethod
    def validate(cls, value: "str | Granularity") -> "Granularity":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError("Invalid granularity.") from None


class TrendDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class TrendBucket:
    bucket_start: date
    income: Decimal
    expense: Decimal
    balance: Decimal
    transaction_count: int
    cumulative_balance: Decimal


@dataclass(frozen=True)
class TrendStatistics:
    average_income: Decimal
    average_expense: Decimal
    average_balance: Decimal
    income_trend: TrendDirection
    expense_trend: TrendDirection
    balance_trend: TrendDirection
    best_period: Optional[TrendBucket]
    worst_period: Optional[TrendBucket]
    period_count: int


@dataclass(frozen=True)
class TrendReport:
    period: TrendPeriod
    granularity: Granularity
    buckets: List[TrendBucket]
    statistics: TrendStatistics


def filter_by_period(
    transactions: Iterable[Transaction], period: TrendPeriod, today: date
) -> List[Transaction]:
    dated = [txn for txn in transactions if txn.effective_date is not None]
    if period.days is None:
        return dated
    cutoff = today - timedelta(days=period.days)
    return [txn for txn in dated if txn.effective_date >= cutoff]


def get_bucket_start(value: date, granularity: Granularity) -> date:
    if granularity is Granularity.WEEKLY:
        return value - timedelta(days=value.weekday())
    if granularity is Granularity.MONTHLY:
        return value.replace(day=1)
    return value


def build_buckets(
    transactions: Iterable[Transaction], granularity: Granularity
) -> List[TrendBucket]:
    """Group dated transactions into ascending buckets with a running balance."""
    income: Dict[date, Decimal] = {}
    expense: Dict[date, Decimal] = {}
    counts: Dict[date, int] = {}
    for txn in transactions:
        if txn.effective_date is None:
            continue
        key = get_bucket_start(txn.effective_date, granularity)
        income.setdefault(key, ZERO)
        expense.setdefault(key, ZERO)
        if txn.type is TransactionType.INCOME:
            income[key] += txn.amount
        else:
            expense[key] += txn.amount
        counts[key] = counts.get(key, 0) + 1

    buckets: List[TrendBucket] = []
    running = ZERO
    for key in sorted(counts):
        balance = income[key] - expense[key]
        running += balance
        buckets.append(
            TrendBucket(
                bucket_start=key,
                income=income[key],
                expense=expense[key],
                balance=balance,
                transaction_count=counts[key],
                cumulative_balance=running,
            )
        )
    return buckets


def trend_direction(first: Decimal, second: Decimal) -> TrendDirection:
    """Compare two averages; moves within 5% of ``|first|`` are neutral."""
    if first == ZERO:
        if second > ZERO:
            return TrendDirection.UP
        if second < ZERO:
            return TrendDirection.DOWN
        return TrendDirection.NEUTRAL
    change = (second - first) / abs(first) * HUNDRED
    if change > TREND_THRESHOLD_PERCENT:
        return TrendDirection.UP
    if change < -TREND_THRESHOLD_PERCENT:
        return TrendDirection.DOWN
    return TrendDirection.NEUTRAL


def trend_statistics(buckets: Sequence[TrendBucket]) -> TrendStatistics:
    if len(buckets) < 2:
        return TrendStatistics(
            average_income=ZERO,
            average_expense=ZERO,
            average_balance=ZERO,
            income_trend=TrendDirection.NEUTRAL,
            expense_trend=TrendDirection.NEUTRAL,
            balance_trend=TrendDirection.NEUTRAL,
            best_period=None,
            worst_period=None,
            period_count=len(buckets),
        )

    midpoint = len(buckets) // 2
    first_half = buckets[:midpoint]
    second_half = buckets[midpoint:]

    best = buckets[0]
    worst = buckets[0]
    for bucket in buckets[1:]:
        if bucket.balance > best.balance:
            best = bucket
        if bucket.balance < worst.balance:
            worst = bucket

    return TrendStatistics(
        average_income=_average(buckets, "income"),
        average_expense=_average(buckets, "expense"),
        average_balance=_average(buckets, "balance"),
        income_trend=trend_direction(
            _average(first_half, "income"), _average(second_half, "income")
        ),
        expense_trend=trend_direction(
            _average(first_half, "expense"), _average(second_half, "expense")
        ),
        balance_trend=trend_direction(
            _average(first_half, "balance"), _average(second_half, "balance")
        ),
        best_period=best,
        worst_period=worst,
        period_count=len(buckets),
    )


def analyze_trends(
    transactions: Iterable[Transaction],
    period: TrendPeriod | str = TrendPeriod.LAST_30_DAYS,
    granularity: Granularity | str = Granularity.DAILY,
    today: Optional[date] = None,
) -> TrendReport:
    period = TrendPeriod.validate(period)
    granularity = Granularity.validate(granularity)
    today = today or date.today()
    buckets = build_buckets(filter_by_period(transactions, period, today), granularity)
    return TrendReport(
        period=period,
        granularity=granularity,
        buckets=buckets,
        statistics=trend_statistics(buckets),
    )


def category_trends(
    transactions: Iterable[Transaction],
    period: TrendPeriod | str = TrendPeriod.LAST_30_DAYS,
    today: Optional[date] = None,
) -> Dict[str, Dict[date, Decimal]]:
    """Expense totals per category per day within ``period``."""
    period = TrendPeriod.validate(period)
    today = today or date.today()
    result: Dict[str, Dict[date, Decimal]] = {}
    for txn in filter_by_period(transactions, period, today):
        if txn.type is not TransactionType.EXPENSE:
            continue
        per_day = result.setdefault(txn.category_key, {})
        per_day[txn.effective_date] = per_day.get(txn.effective_date, ZERO) + txn.amount
    return result


def _average(buckets: Sequence[TrendBucket], attribute: str) -> Decimal:
    if not buckets:
        return ZERO
    total = sum((getattr(bucket, attribute) for bucket in buckets), ZERO)
    return total / len(buckets)
