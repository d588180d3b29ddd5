import unittest
from datetime import date, datetime
from decimal import Decimal

from ledger_engine.aggregation import aggregate
from ledger_engine.budget_tracker import (
    Budget,
    BudgetService,
    available_categories,
    budget_progress,
    budget_summary,
)
from ledger_engine.errors import DuplicateBudgetError, NotFoundError, ValidationError
from ledger_engine.models import Transaction, TransactionType
from ledger_engine.store import Stores


class BudgetProgressTests(unittest.TestCase):
    def test_food_budget_half_spent(self) -> None:
        transactions = [
            Transaction(
                id=1,
                type=TransactionType.EXPENSE,
                amount=Decimal("50"),
                category="Food",
                date=date(2024, 5, 3),
            ),
            Transaction(
                id=2,
                type=TransactionType.EXPENSE,
                amount=Decimal("80"),
                category="Food",
                date=date(2024, 4, 30),
            ),
        ]
        totals = aggregate(transactions, today=date(2024, 5, 20))

        [progress] = budget_progress(
            [Budget(id=1, category="Food", limit=Decimal("100"))],
            totals.this_month_expenses_by_category,
        )

        self.assertEqual(progress.spent, Decimal("50"))
        self.assertEqual(progress.percentage, Decimal("50"))
        self.assertEqual(progress.remaining, Decimal("50"))
        self.assertFalse(progress.is_exceeded)
        self.assertEqual(progress.status, "within")

    def test_zero_limit_is_never_exceeded(self) -> None:
        [progress] = budget_progress(
            [Budget(id=1, category="Food", limit=Decimal("0"))],
            {"Food": Decimal("500")},
        )

        self.assertEqual(progress.percentage, Decimal("0"))
        self.assertFalse(progress.is_exceeded)

    def test_exceeded_only_above_one_hundred_percent(self) -> None:
        results = budget_progress(
            [
                Budget(id=1, category="Food", limit=Decimal("100")),
                Budget(id=2, category="Home", limit=Decimal("100")),
            ],
            {"Food": Decimal("100"), "Home": Decimal("100.01")},
        )

        self.assertFalse(results[0].is_exceeded)
        self.assertTrue(results[1].is_exceeded)
        self.assertEqual(results[1].remaining, Decimal("0"))
        self.assertEqual(results[1].status, "exceeded")

    def test_budget_without_spend_and_case_insensitive_lookup(self) -> None:
        results = budget_progress(
            [
                Budget(id=1, category="Health", limit=Decimal("60")),
                Budget(id=2, category="Food", limit=Decimal("60")),
            ],
            {"food": Decimal("15")},
        )

        self.assertEqual(results[0].spent, Decimal("0"))
        self.assertEqual(results[1].spent, Decimal("15"))

    def test_summary_and_available_categories(self) -> None:
        budgets = [
            Budget(id=1, category="Food", limit=Decimal("100")),
            Budget(id=2, category="Home", limit=Decimal("300")),
        ]

        summary = budget_summary(budgets, {"Food": Decimal("150"), "Home": Decimal("50")})

        self.assertEqual(summary.total_budget, Decimal("400"))
        self.assertEqual(summary.total_spent, Decimal("200"))
        self.assertEqual(summary.remaining, Decimal("200"))
        self.assertEqual(summary.percentage, Decimal("50"))
        self.assertFalse(summary.is_exceeded)

        remaining = available_categories(budgets)
        self.assertNotIn("Food", remaining)
        self.assertNotIn("Home", remaining)
        self.assertIn("Transport", remaining)
        self.assertIn("Technology", remaining)


class BudgetServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.stores = Stores.connect("sqlite://")
        self.service = BudgetService(
            self.stores.budgets, clock=lambda: datetime(2024, 5, 1, 12, 0)
        )

    def tearDown(self) -> None:
        self.stores.dispose()

    def test_add_and_list(self) -> None:
        budget = self.service.add("alice", {"category": "food", "limit": "100"})

        self.assertEqual(budget.category, "Food")
        self.assertEqual(budget.limit, Decimal("100"))
        self.assertEqual(budget.period, "monthly")

        gadgets = self.service.add("alice", {"category": "technology", "limit": "40"})
        self.assertEqual(gadgets.category, "Technology")
        self.assertEqual([b.id for b in self.service.list("alice")], [budget.id, gadgets.id])
        self.assertEqual(self.service.list("bob"), [])

    def test_duplicate_category_is_rejected_case_insensitively(self) -> None:
        self.service.add("alice", {"category": "Food", "limit": "100"})

        with self.assertRaises(DuplicateBudgetError):
            self.service.add("alice", {"category": "FOOD", "limit": "50"})

        # Another user may budget the same category.
        self.service.add("bob", {"category": "Food", "limit": "50"})

    def test_invalid_budget_reports_every_problem(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.service.add("alice", {"category": "Spaceships", "limit": "-5"})

        self.assertEqual(len(ctx.exception.messages), 2)

    def test_update_checks_collisions_and_delete(self) -> None:
        food = self.service.add("alice", {"category": "Food", "limit": "100"})
        home = self.service.add("alice", {"category": "Home", "limit": "300"})

        with self.assertRaises(DuplicateBudgetError):
            self.service.update("alice", home.id, {"category": "food"})

        updated = self.service.update("alice", food.id, {"limit": "120"})
        self.assertEqual(updated.limit, Decimal("120"))

        self.service.delete("alice", food.id)
        self.assertEqual([b.category for b in self.service.list("alice")], ["Home"])
        with self.assertRaises(NotFoundError):
            self.service.delete("alice", food.id)

    def test_view_follows_store_changes(self) -> None:
        seen = []
        with self.service.view("alice") as view:
            view.subscribe(lambda budgets: seen.append([b.category for b in budgets]))
            self.service.add("alice", {"category": "Home", "limit": "10"})
            self.service.add("alice", {"category": "Food", "limit": "10"})

        self.assertEqual(seen, [[], ["Home"], ["Food", "Home"]])


if __name__ == "__main__":
    unittest.main()
