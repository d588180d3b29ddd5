from __future__ import annotations

import logging
from calendar import monthrange
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterable, List, Mapping, Optional

from ledger_engine.ledger_view import LedgerService, LiveView
from ledger_engine.models import (
    DEFAULT_CATALOG,
    ZERO,
    CategoryCatalog,
    Frequency,
    Transaction,
    TransactionType,
    coerce_amount,
)
from ledger_engine.schemas import (
    RecurrencePayload,
    RecurrenceUpdatePayload,
    coerce_payload,
)
from ledger_engine.store import RecordStore

logger = logging.getLogger(__name__)

DAY_INTERVALS = {
    Frequency.DAILY: 1,
    Frequency.WEEKLY: 7,
    Frequency.BIWEEKLY: 14,
}
MONTH_INTERVALS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.BIANNUAL: 6,
    Frequency.ANNUAL: 12,
}
# Approximate period lengths, only used to express amounts per month.
APPROXIMATE_DAYS = {
    Frequency.DAILY: 1,
    Frequency.WEEKLY: 7,
    Frequency.BIWEEKLY: 14,
    Frequency.MONTHLY: 30,
    Frequency.QUARTERLY: 90,
    Frequency.BIANNUAL: 180,
    Frequency.ANNUAL: 365,
}
DAYS_PER_MONTH = Decimal("30")
DEFAULT_UPCOMING_DAYS = 30
DEFAULT_MAX_CATCH_UP_RUNS = 366


@dataclass(frozen=True)
class RecurrenceDefinition:
    id: Optional[int]
    description: str
    amount: Decimal
    type: TransactionType
    frequency: Frequency
    start_date: date
    next_date: date
    category: Optional[str] = None
    is_active: bool = True
    last_executed: Optional[date] = None
    execution_count: int = 0
    created_at: Optional[datetime] = None

    def is_due(self, today: date) -> bool:
        return self.is_active and self.next_date <= today

    def days_until_next(self, today: date) -> int:
        """Days left before the next run; 0 once it is due."""
        return max(0, (self.next_date - today).days)

    @property
    def monthly_amount(self) -> Decimal:
        return self.amount * DAYS_PER_MONTH / APPROXIMATE_DAYS[self.frequency]

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "RecurrenceDefinition":
        return cls(
            id=record.get("id"),
            description=record["description"],
            amount=coerce_amount(record["amount"]),
            type=TransactionType.from_record(record.get("type")),
            frequency=Frequency.validate(record["frequency"]),
            start_date=record["start_date"],
            next_date=record["next_date"],
            category=record.get("category"),
            is_active=bool(record.get("is_active", True)),
            last_executed=record.get("last_executed"),
            execution_count=int(record.get("execution_count") or 0),
            created_at=record.get("created_at"),
        )


@dataclass(frozen=True)
class RecurringStatistics:
    total: int
    active: int
    inactive: int
    monthly_amount: Decimal
    due_today: int


def next_occurrence(from_date: date, frequency: Frequency | str) -> date:
    """Advance ``from_date`` by one period of ``frequency``.

    Calendar-month steps keep the day of month and clamp it to the last
    day of the target month, so Jan 31 + 1 month is Feb 28 (or 29).
    """
    frequency = Frequency.validate(frequency)
    if frequency in DAY_INTERVALS:
        return from_date + timedelta(days=DAY_INTERVALS[frequency])
    return _add_months(from_date, MONTH_INTERVALS[frequency], from_date.day)


def new_definition(
    description: str,
    amount: Decimal,
    type: TransactionType,
    frequency: Frequency,
    start_date: date,
    category: Optional[str] = None,
) -> RecurrenceDefinition:
    return RecurrenceDefinition(
        id=None,
        description=description,
        amount=coerce_amount(amount),
        type=type,
        frequency=frequency,
        start_date=start_date,
        next_date=next_occurrence(start_date, frequency),
        category=category,
    )


def materialize(
    definition: RecurrenceDefinition, execution_date: date
) -> Transaction:
    return Transaction(
        id=None,
        type=definition.type,
        amount=definition.amount,
        description=definition.description,
        category=definition.category,
        date=execution_date,
        generated_from=definition.id,
        is_recurring=True,
        recurring_frequency=definition.frequency,
    )


def advance(
    definition: RecurrenceDefinition, execution_date: date
) -> RecurrenceDefinition:
    return replace(
        definition,
        last_executed=execution_date,
        next_date=next_occurrence(execution_date, definition.frequency),
        execution_count=definition.execution_count + 1,
    )


def due_definitions(
    definitions: Iterable[RecurrenceDefinition], today: date
) -> List[RecurrenceDefinition]:
    return [definition for definition in definitions if definition.is_due(today)]


def upcoming_definitions(
    definitions: Iterable[RecurrenceDefinition],
    today: date,
    days: int = DEFAULT_UPCOMING_DAYS,
) -> List[RecurrenceDefinition]:
    horizon = today + timedelta(days=days)
    upcoming = [
        definition
        for definition in definitions
        if definition.is_active and definition.next_date <= horizon
    ]
    upcoming.sort(key=lambda definition: definition.next_date)
    return upcoming


def recurring_statistics(
    definitions: Iterable[RecurrenceDefinition], today: date
) -> RecurringStatistics:
    definitions = list(definitions)
    active = [definition for definition in definitions if definition.is_active]
    return RecurringStatistics(
        total=len(definitions),
        active=len(active),
        inactive=len(definitions) - len(active),
        monthly_amount=sum((definition.monthly_amount for definition in active), ZERO),
        due_today=len(due_definitions(definitions, today)),
    )


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)


def _to_values(definition: RecurrenceDefinition) -> dict[str, Any]:
    return {
        "description": definition.description,
        "amount": definition.amount,
        "category": definition.category,
        "type": definition.type.value,
        "frequency": definition.frequency.value,
        "start_date": definition.start_date,
        "next_date": definition.next_date,
        "is_active": definition.is_active,
        "last_executed": definition.last_executed,
        "execution_count": definition.execution_count,
    }


class RecurringScheduler:
    """Owns recurrence definitions and materializes them into the ledger.

    Nothing runs on a timer: callers trigger :meth:`execute` or
    :meth:`run_due` explicitly. Executing the same period twice is not
    prevented.
    """

    def __init__(
        self,
        store: RecordStore,
        ledger: LedgerService,
        catalog: CategoryCatalog = DEFAULT_CATALOG,
        clock: Callable[[], datetime] = datetime.now,
        max_catch_up_runs: int = DEFAULT_MAX_CATCH_UP_RUNS,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.catalog = catalog
        self.clock = clock
        self.max_catch_up_runs = max_catch_up_runs

    def view(self, user_id: str) -> LiveView[RecurrenceDefinition]:
        return LiveView(
            self.store,
            user_id,
            convert=RecurrenceDefinition.from_record,
            sort_key=lambda definition: definition.next_date,
        )

    def list(self, user_id: str) -> List[RecurrenceDefinition]:
        definitions = [
            RecurrenceDefinition.from_record(record)
            for record in self.store.list(user_id)
        ]
        definitions.sort(key=lambda definition: definition.next_date)
        return definitions

    def get(self, user_id: str, definition_id: int) -> RecurrenceDefinition:
        return RecurrenceDefinition.from_record(self.store.get(user_id, definition_id))

    def create(
        self, user_id: str, payload: RecurrencePayload | Mapping[str, Any]
    ) -> RecurrenceDefinition:
        payload = coerce_payload(RecurrencePayload, payload)
        payload = RecurrencePayload.validate_payload(payload, self.catalog)
        definition = new_definition(
            description=payload.description,
            amount=payload.amount,
            type=TransactionType.validate(payload.type),
            frequency=Frequency.validate(payload.frequency),
            start_date=payload.start_date,
            category=payload.category,
        )
        values = _to_values(definition)
        values["created_at"] = self.clock()
        return RecurrenceDefinition.from_record(self.store.add(user_id, values))

    def update(
        self,
        user_id: str,
        definition_id: int,
        payload: RecurrenceUpdatePayload | Mapping[str, Any],
    ) -> RecurrenceDefinition:
        payload = coerce_payload(RecurrenceUpdatePayload, payload)
        current = self.get(user_id, definition_id)
        changes = RecurrenceUpdatePayload.validate_payload(
            payload, current.type, self.catalog
        )
        if "frequency" in changes:
            base = changes.get("start_date", current.start_date)
            if current.last_executed is not None:
                base = current.last_executed
            changes["next_date"] = next_occurrence(base, changes["frequency"])
        elif "start_date" in changes and current.last_executed is None:
            changes["next_date"] = next_occurrence(
                changes["start_date"], current.frequency
            )
        if not changes:
            return current
        return RecurrenceDefinition.from_record(
            self.store.update(user_id, definition_id, changes)
        )

    def set_active(
        self, user_id: str, definition_id: int, is_active: bool
    ) -> RecurrenceDefinition:
        record = self.store.update(user_id, definition_id, {"is_active": is_active})
        logger.info(
            "Recurring transaction %s %s",
            definition_id,
            "activated" if is_active else "deactivated",
        )
        return RecurrenceDefinition.from_record(record)

    def delete(self, user_id: str, definition_id: int) -> None:
        # Transactions already generated from it stay in the ledger.
        self.store.remove(user_id, definition_id)

    def execute(
        self,
        user_id: str,
        definition_id: int,
        execution_date: Optional[date] = None,
    ) -> Transaction:
        definition = self.get(user_id, definition_id)
        transaction, _ = self._execute(user_id, definition, execution_date or self._today())
        return transaction

    def run_due(
        self,
        user_id: str,
        today: Optional[date] = None,
        catch_up: bool = False,
    ) -> List[Transaction]:
        """Execute every due definition.

        By default a definition that missed several cycles runs once, dated
        ``today``. With ``catch_up`` each missed cycle is materialized on its
        own due date until the definition is no longer due.
        """
        today = today or self._today()
        created: List[Transaction] = []
        for definition in due_definitions(self.list(user_id), today):
            if not catch_up:
                transaction, _ = self._execute(user_id, definition, today)
                created.append(transaction)
                continue
            runs = 0
            while definition.is_due(today):
                if runs >= self.max_catch_up_runs:
                    logger.warning(
                        "Stopped catching up recurring transaction %s after %s runs",
                        definition.id,
                        runs,
                    )
                    break
                transaction, definition = self._execute(
                    user_id, definition, definition.next_date
                )
                created.append(transaction)
                runs += 1
        return created

    def _execute(
        self,
        user_id: str,
        definition: RecurrenceDefinition,
        execution_date: date,
    ) -> tuple[Transaction, RecurrenceDefinition]:
        transaction = self.ledger.add_generated(
            user_id, materialize(definition, execution_date)
        )
        advanced = advance(definition, execution_date)
        record = self.store.update(
            user_id,
            definition.id,
            {
                "last_executed": advanced.last_executed,
                "next_date": advanced.next_date,
                "execution_count": self.store.table.c.execution_count + 1,
            },
        )
        logger.info(
            "Executed recurring transaction %s on %s (run %s)",
            definition.id,
            execution_date.isoformat(),
            record["execution_count"],
        )
        return transaction, RecurrenceDefinition.from_record(record)

    def _today(self) -> date:
        return self.clock().date()
