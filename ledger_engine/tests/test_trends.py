import unittest
from datetime import date, datetime
from decimal import Decimal

from ledger_engine.models import Transaction, TransactionType
from ledger_engine.trends import (
    Granularity,
    TrendDirection,
    TrendPeriod,
    analyze_trends,
    build_buckets,
    category_trends,
    filter_by_period,
    get_bucket_start,
    trend_direction,
    trend_statistics,
)


def txn(amount, on, type=TransactionType.EXPENSE, category="Food"):
    return Transaction(
        id=None,
        type=type,
        amount=Decimal(amount),
        category=category,
        date=on,
    )


class BucketTests(unittest.TestCase):
    def test_bucket_start_per_granularity(self) -> None:
        wednesday = date(2024, 5, 15)

        self.assertEqual(get_bucket_start(wednesday, Granularity.DAILY), wednesday)
        self.assertEqual(get_bucket_start(wednesday, Granularity.WEEKLY), date(2024, 5, 13))
        self.assertEqual(get_bucket_start(date(2024, 5, 19), Granularity.WEEKLY), date(2024, 5, 13))
        self.assertEqual(get_bucket_start(wednesday, Granularity.MONTHLY), date(2024, 5, 1))

    def test_every_transaction_lands_in_exactly_one_bucket(self) -> None:
        transactions = [
            txn("10", date(2024, 5, 1)),
            txn("20", date(2024, 5, 1), TransactionType.INCOME),
            txn("5", date(2024, 5, 6)),
            txn("7", date(2024, 5, 12)),
            txn("3", date(2024, 6, 2)),
        ]

        for granularity in Granularity:
            with self.subTest(granularity=granularity):
                buckets = build_buckets(transactions, granularity)
                starts = [bucket.bucket_start for bucket in buckets]
                self.assertEqual(starts, sorted(set(starts)))
                self.assertEqual(
                    sum(bucket.transaction_count for bucket in buckets),
                    len(transactions),
                )

        weekly = build_buckets(transactions, Granularity.WEEKLY)
        self.assertEqual(
            [bucket.bucket_start for bucket in weekly],
            [date(2024, 4, 29), date(2024, 5, 6), date(2024, 5, 27)],
        )
        self.assertEqual([bucket.transaction_count for bucket in weekly], [2, 2, 1])

    def test_running_balance(self) -> None:
        transactions = [
            txn("100", date(2024, 1, 10), TransactionType.INCOME),
            txn("40", date(2024, 1, 20)),
            txn("30", date(2024, 2, 3)),
            txn("50", date(2024, 3, 3), TransactionType.INCOME),
        ]

        buckets = build_buckets(transactions, Granularity.MONTHLY)

        self.assertEqual([b.balance for b in buckets], [Decimal("60"), Decimal("-30"), Decimal("50")])
        self.assertEqual(
            [b.cumulative_balance for b in buckets],
            [Decimal("60"), Decimal("30"), Decimal("80")],
        )

    def test_undated_transactions_are_skipped(self) -> None:
        undated = Transaction(id=None, type=TransactionType.EXPENSE, amount=Decimal("5"))

        self.assertEqual(build_buckets([undated], Granularity.DAILY), [])

    def test_created_at_stands_in_for_missing_date(self) -> None:
        stamped = Transaction(
            id=None,
            type=TransactionType.EXPENSE,
            amount=Decimal("5"),
            created_at=datetime(2024, 5, 2, 18, 0),
        )

        [bucket] = build_buckets([stamped], Granularity.DAILY)

        self.assertEqual(bucket.bucket_start, date(2024, 5, 2))


class DirectionTests(unittest.TestCase):
    def test_threshold(self) -> None:
        self.assertEqual(trend_direction(Decimal("100"), Decimal("106")), TrendDirection.UP)
        self.assertEqual(trend_direction(Decimal("100"), Decimal("105")), TrendDirection.NEUTRAL)
        self.assertEqual(trend_direction(Decimal("100"), Decimal("94")), TrendDirection.DOWN)
        self.assertEqual(trend_direction(Decimal("-100"), Decimal("-80")), TrendDirection.UP)

    def test_from_zero(self) -> None:
        self.assertEqual(trend_direction(Decimal("0"), Decimal("1")), TrendDirection.UP)
        self.assertEqual(trend_direction(Decimal("0"), Decimal("-1")), TrendDirection.DOWN)
        self.assertEqual(trend_direction(Decimal("0"), Decimal("0")), TrendDirection.NEUTRAL)


class StatisticsTests(unittest.TestCase):
    def test_halves_and_extremes(self) -> None:
        transactions = [
            txn("100", date(2024, 1, 1), TransactionType.INCOME),
            txn("100", date(2024, 1, 2), TransactionType.INCOME),
            txn("200", date(2024, 1, 3), TransactionType.INCOME),
            txn("10", date(2024, 1, 3)),
            txn("100", date(2024, 1, 4), TransactionType.INCOME),
            txn("300", date(2024, 1, 4)),
        ]
        buckets = build_buckets(transactions, Granularity.DAILY)

        stats = trend_statistics(buckets)

        self.assertEqual(stats.period_count, 4)
        self.assertEqual(stats.average_income, Decimal("125"))
        # first half income 100, second half 150
        self.assertEqual(stats.income_trend, TrendDirection.UP)
        self.assertEqual(stats.expense_trend, TrendDirection.UP)
        self.assertEqual(stats.balance_trend, TrendDirection.DOWN)
        self.assertEqual(stats.best_period.bucket_start, date(2024, 1, 3))
        self.assertEqual(stats.worst_period.bucket_start, date(2024, 1, 4))

    def test_ties_keep_first_bucket(self) -> None:
        transactions = [
            txn("50", date(2024, 1, 1), TransactionType.INCOME),
            txn("50", date(2024, 1, 2), TransactionType.INCOME),
            txn("50", date(2024, 1, 3), TransactionType.INCOME),
        ]

        stats = trend_statistics(build_buckets(transactions, Granularity.DAILY))

        self.assertEqual(stats.best_period.bucket_start, date(2024, 1, 1))
        self.assertEqual(stats.worst_period.bucket_start, date(2024, 1, 1))
        self.assertEqual(stats.balance_trend, TrendDirection.NEUTRAL)

    def test_single_bucket_is_neutral(self) -> None:
        buckets = build_buckets([txn("50", date(2024, 1, 1))], Granularity.DAILY)

        stats = trend_statistics(buckets)

        self.assertEqual(stats.period_count, 1)
        self.assertEqual(stats.average_expense, Decimal("0"))
        self.assertEqual(stats.expense_trend, TrendDirection.NEUTRAL)
        self.assertIsNone(stats.best_period)
        self.assertIsNone(stats.worst_period)


class PeriodTests(unittest.TestCase):
    def test_period_filter(self) -> None:
        today = date(2024, 6, 30)
        transactions = [
            txn("1", date(2024, 6, 23)),
            txn("2", date(2024, 6, 22)),
            txn("3", date(2023, 1, 1)),
        ]

        self.assertEqual(len(filter_by_period(transactions, TrendPeriod.LAST_7_DAYS, today)), 1)
        self.assertEqual(len(filter_by_period(transactions, TrendPeriod.LAST_30_DAYS, today)), 2)
        self.assertEqual(len(filter_by_period(transactions, TrendPeriod.ALL, today)), 3)

    def test_analyze_trends_accepts_strings(self) -> None:
        report = analyze_trends(
            [txn("5", date(2024, 6, 1)), txn("9", date(2024, 6, 20))],
            period="3months",
            granularity="Monthly",
            today=date(2024, 6, 30),
        )

        self.assertEqual(report.period, TrendPeriod.LAST_3_MONTHS)
        self.assertEqual(report.granularity, Granularity.MONTHLY)
        self.assertEqual(len(report.buckets), 1)
        self.assertEqual(report.buckets[0].expense, Decimal("14"))

    def test_unknown_period_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            analyze_trends([], period="fortnight", today=date(2024, 6, 30))

    def test_category_trends_count_expenses_only(self) -> None:
        transactions = [
            txn("5", date(2024, 6, 1)),
            txn("7", date(2024, 6, 1)),
            txn("3", date(2024, 6, 2), category="Transport"),
            txn("900", date(2024, 6, 1), TransactionType.INCOME, category="Salary"),
            txn("4", date(2024, 6, 2), category=None),
        ]

        result = category_trends(transactions, TrendPeriod.ALL, today=date(2024, 6, 30))

        self.assertEqual(
            result,
            {
                "Food": {date(2024, 6, 1): Decimal("12")},
                "Transport": {date(2024, 6, 2): Decimal("3")},
                "Uncategorized": {date(2024, 6, 2): Decimal("4")},
            },
        )


if __name__ == "__main__":
    unittest.main()
