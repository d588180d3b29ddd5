import unittest
from datetime import date, datetime
from decimal import Decimal

from ledger_engine.aggregation import aggregate
from ledger_engine.errors import NotFoundError, UpstreamError, ValidationError
from ledger_engine.ledger_view import LedgerService, LedgerView, sort_ledger
from ledger_engine.models import Transaction, TransactionType
from ledger_engine.store import RecordStore, Snapshot, Stores, transactions


class FlakyStore(RecordStore):
    def __init__(self, engine) -> None:
        super().__init__(engine, transactions, "Transaction")
        self.failing = False

    def list(self, user_id):
        if self.failing:
            raise UpstreamError("Failed to load Transaction records.")
        return super().list(user_id)


class SortLedgerTests(unittest.TestCase):
    def test_created_at_first_then_date(self) -> None:
        older = Transaction(
            id=1,
            type=TransactionType.EXPENSE,
            amount=Decimal("1"),
            created_at=datetime(2024, 3, 1, 9, 0),
        )
        newer = Transaction(
            id=2,
            type=TransactionType.EXPENSE,
            amount=Decimal("1"),
            created_at=datetime(2024, 3, 2, 9, 0),
        )
        dated_only = Transaction(
            id=3,
            type=TransactionType.EXPENSE,
            amount=Decimal("1"),
            date=date(2024, 3, 1),
        )
        undated = Transaction(id=4, type=TransactionType.EXPENSE, amount=Decimal("1"))

        ordered = sort_ledger([undated, older, dated_only, newer])

        self.assertEqual([t.id for t in ordered], [2, 1, 3, 4])


class LedgerViewTests(unittest.TestCase):
    def setUp(self) -> None:
        self.stores = Stores.connect("sqlite://")
        self.minute = 0

        def clock():
            self.minute += 1
            return datetime(2024, 3, 1, 12, self.minute)

        self.service = LedgerService(self.stores.ledger, clock=clock)

    def tearDown(self) -> None:
        self.stores.dispose()

    def add(self, amount, user="alice", **extra):
        payload = {"amount": amount, "date": "2024-03-01", "category": "Food"}
        payload.update(extra)
        return self.service.add(user, payload)

    def test_view_reflects_writes_newest_first(self) -> None:
        with self.service.view("alice") as view:
            self.assertEqual(view.transactions, [])
            first = self.add("10")
            second = self.add("20")
            self.add("99", user="bob")

            self.assertEqual([t.id for t in view.transactions], [second.id, first.id])

            self.service.update("alice", first.id, {"amount": "15"})
            self.assertEqual(view.transactions[1].amount, Decimal("15"))

            self.service.remove("alice", second.id)
            self.assertEqual([t.id for t in view.transactions], [first.id])

    def test_unsubscribe_stops_delivery(self) -> None:
        seen = []
        with self.service.view("alice") as view:
            unsubscribe = view.subscribe(lambda records: seen.append(len(records)))
            self.add("10")
            unsubscribe()
            unsubscribe()
            self.add("20")

            self.assertEqual(seen, [0, 1])
            self.assertEqual(len(view.transactions), 2)

    def test_close_releases_store_subscription(self) -> None:
        view = self.service.view("alice").open()
        self.assertEqual(self.stores.ledger.subscriber_count("alice"), 1)

        view.close()
        self.add("10")

        self.assertEqual(self.stores.ledger.subscriber_count("alice"), 0)
        self.assertEqual(view.transactions, [])

    def test_store_failure_empties_the_view(self) -> None:
        store = FlakyStore(self.stores.engine)
        service = LedgerService(store, clock=lambda: datetime(2024, 3, 1, 12, 0))
        service.add("alice", {"amount": "10", "date": "2024-03-01"})

        with LedgerView(store, "alice") as view:
            self.assertEqual(len(view.transactions), 1)
            store.failing = True
            with self.assertLogs("ledger_engine.store", level="ERROR"):
                service.add("alice", {"amount": "20", "date": "2024-03-01"})

            self.assertEqual(view.transactions, [])
            self.assertIsInstance(view.error, UpstreamError)

            store.failing = False
            service.add("alice", {"amount": "30", "date": "2024-03-01"})
            self.assertEqual(len(view.transactions), 3)
            self.assertIsNone(view.error)

    def test_failing_listener_does_not_fail_the_write(self) -> None:
        def broken(records):
            if records:
                raise RuntimeError("listener failed")

        seen = []
        with self.service.view("alice") as first, self.service.view("alice") as second:
            first.subscribe(broken)
            second.subscribe(lambda records: seen.append(len(records)))

            with self.assertLogs("ledger_engine.store", level="ERROR"):
                created = self.add("10")

            self.assertEqual([t.id for t in self.service.list("alice")], [created.id])
            self.assertEqual(seen, [0, 1])
            self.assertEqual(len(second.transactions), 1)

    def test_stale_snapshot_is_ignored(self) -> None:
        first = self.add("10")
        with self.service.view("alice") as view:
            self.add("20")
            with self.assertLogs("ledger_engine.ledger_view", level="WARNING"):
                view._on_snapshot(Snapshot(user_id="alice", version=1, records=()))

            self.assertEqual(len(view.transactions), 2)
            self.assertIn(first.id, [t.id for t in view.transactions])


class LedgerServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.stores = Stores.connect("sqlite://")
        self.service = LedgerService(
            self.stores.ledger, clock=lambda: datetime(2024, 3, 1, 12, 0)
        )

    def tearDown(self) -> None:
        self.stores.dispose()

    def test_add_normalizes_input(self) -> None:
        created = self.service.add(
            "alice",
            {
                "type": "Income",
                "amount": "1200.50",
                "description": "  March salary ",
                "category": "salary",
                "date": "2024-03-01",
            },
        )

        self.assertEqual(created.type, TransactionType.INCOME)
        self.assertEqual(created.amount, Decimal("1200.50"))
        self.assertEqual(created.description, "March salary")
        self.assertEqual(created.category, "Salary")
        self.assertEqual(created.created_at, datetime(2024, 3, 1, 12, 0))
        self.assertFalse(created.is_recurring)

    def test_amounts_round_trip_exactly(self) -> None:
        for amount in ("0.1234567", "12345678901234.01"):
            self.service.add("alice", {"amount": amount, "date": "2024-03-01"})

        stored = sorted(t.amount for t in self.service.list("alice"))
        totals = aggregate(self.service.list("alice"), today=date(2024, 3, 1))

        self.assertEqual(stored, [Decimal("0.1234567"), Decimal("12345678901234.01")])
        self.assertEqual(str(totals.total_expenses), "12345678901234.1334567")

    def test_amount_beyond_decimal_precision_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.service.add(
                "alice", {"amount": "1" * 20 + "." + "1" * 10, "date": "2024-03-01"}
            )

        self.assertEqual(
            ctx.exception.messages, ["Amounts are limited to 28 significant digits."]
        )

    def test_invalid_input_never_reaches_the_store(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.service.add(
                "alice",
                {
                    "type": "transfer",
                    "amount": "-3",
                    "description": "x" * 300,
                    "date": "2024-03-01",
                },
            )

        self.assertEqual(len(ctx.exception.messages), 3)
        self.assertEqual(self.service.list("alice"), [])

    def test_missing_fields_are_reported_together(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.service.add("alice", {"description": "Lunch"})

        self.assertEqual(len(ctx.exception.messages), 2)

    def test_category_must_match_type(self) -> None:
        with self.assertRaises(ValidationError):
            self.service.add(
                "alice",
                {"type": "expense", "amount": "5", "category": "Salary", "date": "2024-03-01"},
            )

    def test_update_without_changes_and_missing_record(self) -> None:
        created = self.service.add("alice", {"amount": "5", "date": "2024-03-01"})

        self.assertEqual(self.service.update("alice", created.id, {}), created)
        with self.assertRaises(NotFoundError):
            self.service.update("bob", created.id, {"amount": "7"})
        with self.assertRaises(NotFoundError):
            self.service.remove("alice", created.id + 1)


if __name__ == "__main__":
    unittest.main()
