from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Generic, Iterable, List, Mapping, Optional, TypeVar

from ledger_engine.errors import UpstreamError
from ledger_engine.models import DEFAULT_CATALOG, CategoryCatalog, Transaction
from ledger_engine.schemas import (
    TransactionPayload,
    TransactionUpdatePayload,
    coerce_payload,
)
from ledger_engine.store import RecordStore, Snapshot

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT")
Listener = Callable[[List[RecordT]], None]


class LiveView(Generic[RecordT]):
    """Keeps the latest snapshot of one user's records in one store.

    Records are converted with ``convert`` and re-sorted in full on every
    snapshot. Snapshots older than the last one applied are ignored.
    """

    def __init__(
        self,
        store: RecordStore,
        user_id: str,
        convert: Callable[[Mapping[str, Any]], RecordT],
        sort_key: Optional[Callable[[RecordT], Any]] = None,
        reverse: bool = False,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self._convert = convert
        self._sort_key = sort_key
        self._reverse = reverse
        self._lock = threading.Lock()
        self._records: List[RecordT] = []
        self._version = 0
        self._listeners: dict[int, Listener] = {}
        self._next_listener = 0
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.error: Optional[UpstreamError] = None

    @property
    def records(self) -> List[RecordT]:
        with self._lock:
            return list(self._records)

    @property
    def is_open(self) -> bool:
        return self._unsubscribe is not None

    def open(self) -> "LiveView[RecordT]":
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(
                self.user_id, self._on_snapshot, self._on_error
            )
        return self

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        with self._lock:
            self._listeners.clear()

    def __enter__(self) -> "LiveView[RecordT]":
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with the current records now and on every change."""
        with self._lock:
            token = self._next_listener
            self._next_listener += 1
            self._listeners[token] = listener
            current = list(self._records)
        listener(current)

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(token, None)

        return unsubscribe

    def _on_snapshot(self, snapshot: Snapshot) -> None:
        records = [self._convert(record) for record in snapshot.records]
        if self._sort_key is not None:
            records.sort(key=self._sort_key, reverse=self._reverse)
        with self._lock:
            if snapshot.version <= self._version:
                logger.warning(
                    "Ignoring stale %s snapshot %s (have %s)",
                    self.store.kind,
                    snapshot.version,
                    self._version,
                )
                return
            self._version = snapshot.version
            self._records = records
            self.error = None
            listeners = list(self._listeners.values())
        for listener in listeners:
            listener(list(records))

    def _on_error(self, error: UpstreamError) -> None:
        with self._lock:
            self.error = error
            self._records = []
            listeners = list(self._listeners.values())
        for listener in listeners:
            listener([])


def ledger_sort_key(transaction: Transaction) -> datetime:
    if transaction.created_at is not None:
        return transaction.created_at
    if transaction.date is not None:
        return datetime.combine(transaction.date, datetime.min.time())
    return datetime.min


def sort_ledger(transactions: Iterable[Transaction]) -> List[Transaction]:
    """Most recent first; equal keys keep their incoming order."""
    return sorted(transactions, key=ledger_sort_key, reverse=True)


class LedgerView(LiveView[Transaction]):
    def __init__(self, store: RecordStore, user_id: str) -> None:
        super().__init__(
            store,
            user_id,
            convert=Transaction.from_record,
            sort_key=ledger_sort_key,
            reverse=True,
        )

    @property
    def transactions(self) -> List[Transaction]:
        return self.records


class LedgerService:
    """Validated writes against the ledger store."""

    def __init__(
        self,
        store: RecordStore,
        catalog: CategoryCatalog = DEFAULT_CATALOG,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.clock = clock

    def view(self, user_id: str) -> LedgerView:
        return LedgerView(self.store, user_id)

    def list(self, user_id: str) -> List[Transaction]:
        return sort_ledger(
            Transaction.from_record(record) for record in self.store.list(user_id)
        )

    def get(self, user_id: str, transaction_id: int) -> Transaction:
        return Transaction.from_record(self.store.get(user_id, transaction_id))

    def add(
        self, user_id: str, payload: TransactionPayload | Mapping[str, Any]
    ) -> Transaction:
        payload = coerce_payload(TransactionPayload, payload)
        payload = TransactionPayload.validate_payload(payload, self.catalog)
        record = self.store.add(
            user_id,
            {
                "type": payload.type,
                "description": payload.description,
                "amount": payload.amount,
                "category": payload.category,
                "date": payload.date,
                "created_at": self.clock(),
                "is_recurring": False,
            },
        )
        return Transaction.from_record(record)

    def add_generated(
        self, user_id: str, transaction: Transaction
    ) -> Transaction:
        """Store a transaction materialized from a recurrence definition."""
        record = self.store.add(
            user_id,
            {
                "type": transaction.type.value,
                "description": transaction.description,
                "amount": transaction.amount,
                "category": transaction.category,
                "date": transaction.date,
                "created_at": transaction.created_at or self.clock(),
                "generated_from": transaction.generated_from,
                "is_recurring": transaction.is_recurring,
                "recurring_frequency": (
                    transaction.recurring_frequency.value
                    if transaction.recurring_frequency
                    else None
                ),
            },
        )
        return Transaction.from_record(record)

    def update(
        self,
        user_id: str,
        transaction_id: int,
        payload: TransactionUpdatePayload | Mapping[str, Any],
    ) -> Transaction:
        payload = coerce_payload(TransactionUpdatePayload, payload)
        current = self.get(user_id, transaction_id)
        changes = TransactionUpdatePayload.validate_payload(
            payload, current.type, self.catalog
        )
        if not changes:
            return current
        return Transaction.from_record(
            self.store.update(user_id, transaction_id, changes)
        )

    def remove(self, user_id: str, transaction_id: int) -> None:
        self.store.remove(user_id, transaction_id)
