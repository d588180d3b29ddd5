from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    TypeDecorator,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from ledger_engine.errors import NotFoundError, UpstreamError

logger = logging.getLogger(__name__)

metadata = MetaData()


class Amount(TypeDecorator):
    """Decimal stored as its exact text, so no backend rounds it."""

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        return str(value)

    def process_result_value(self, value: Any, dialect: Any) -> Optional[Decimal]:
        if value is None:
            return None
        return Decimal(value)


transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(128), nullable=False, index=True),
    Column("type", String(20)),
    Column("description", String(255), nullable=False, server_default=""),
    Column("amount", Amount(), nullable=False),
    Column("category", String(255)),
    Column("date", Date),
    Column("created_at", DateTime, server_default=func.now()),
    Column("generated_from", Integer),
    Column("is_recurring", Boolean, nullable=False, server_default="0"),
    Column("recurring_frequency", String(20)),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(128), nullable=False, index=True),
    Column("category", String(255), nullable=False),
    Column("limit", Amount(), nullable=False),
    Column("period", String(20), nullable=False, server_default="monthly"),
    Column("created_at", DateTime, server_default=func.now()),
)

recurrences = Table(
    "recurring_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(128), nullable=False, index=True),
    Column("description", String(255), nullable=False),
    Column("amount", Amount(), nullable=False),
    Column("category", String(255)),
    Column("type", String(20), nullable=False),
    Column("frequency", String(20), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("next_date", Date, nullable=False),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("last_executed", Date),
    Column("execution_count", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime, server_default=func.now()),
)

savings_goals = Table(
    "savings_goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(128), nullable=False, index=True),
    Column("name", String(50), nullable=False),
    Column("target_amount", Amount(), nullable=False),
    Column("saved_amount", Amount(), nullable=False, server_default="0"),
    Column("target_date", Date, nullable=False),
    Column("created_at", DateTime, server_default=func.now()),
)


def create_store_engine(database_url: str) -> Engine:
    connect_args: dict[str, Any] = {}
    kwargs: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every checkout sees an empty database.
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, connect_args=connect_args, **kwargs)
    metadata.create_all(engine)
    return engine


@dataclass(frozen=True)
class Snapshot:
    """Every record a user owns in one store, as of ``version``."""

    user_id: str
    version: int
    records: tuple[Mapping[str, Any], ...]


SnapshotCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[UpstreamError], None]


@dataclass
class _Subscription:
    token: int
    on_snapshot: SnapshotCallback
    on_error: Optional[ErrorCallback]


class RecordStore:
    """User-scoped collection of records in one table.

    Writes are single statements, except ``increment`` which reads and
    writes inside one transaction. After each successful write every
    subscriber of the affected user receives a fresh full snapshot.
    """

    def __init__(self, engine: Engine, table: Table, kind: str) -> None:
        self.engine = engine
        self.table = table
        self.kind = kind
        self._lock = threading.RLock()
        self._subscriptions: dict[str, list[_Subscription]] = {}
        self._versions: dict[str, int] = {}
        self._tokens = itertools.count(1)

    def list(self, user_id: str) -> list[dict[str, Any]]:
        stmt = (
            select(self.table)
            .where(self.table.c.user_id == user_id)
            .order_by(self.table.c.id)
        )
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            raise UpstreamError(f"Failed to load {self.kind} records.", exc) from exc
        return [dict(row) for row in rows]

    def get(self, user_id: str, record_id: int) -> dict[str, Any]:
        stmt = select(self.table).where(
            self.table.c.id == record_id,
            self.table.c.user_id == user_id,
        )
        try:
            with self.engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise UpstreamError(f"Failed to load {self.kind} {record_id}.", exc) from exc
        if row is None:
            raise NotFoundError(self.kind, record_id)
        return dict(row)

    def add(self, user_id: str, values: Mapping[str, Any]) -> dict[str, Any]:
        stmt = (
            insert(self.table)
            .values(user_id=user_id, **values)
            .returning(*self.table.c)
        )
        try:
            with self.engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise UpstreamError(f"Failed to create {self.kind}.", exc) from exc
        if row is None:
            raise UpstreamError(f"Failed to create {self.kind}.")
        logger.info("Created %s %s for user %s", self.kind, row["id"], user_id)
        self._publish(user_id)
        return dict(row)

    def update(
        self, user_id: str, record_id: int, values: Mapping[str, Any]
    ) -> dict[str, Any]:
        stmt = (
            update(self.table)
            .where(self.table.c.id == record_id, self.table.c.user_id == user_id)
            .values(**values)
            .returning(*self.table.c)
        )
        try:
            with self.engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise UpstreamError(f"Failed to update {self.kind} {record_id}.", exc) from exc
        if row is None:
            raise NotFoundError(self.kind, record_id)
        logger.info("Updated %s %s for user %s", self.kind, record_id, user_id)
        self._publish(user_id)
        return dict(row)

    def increment(
        self, user_id: str, record_id: int, column: str, amount: Decimal
    ) -> dict[str, Any]:
        """Add ``amount`` to a column in one transaction, locking the row where
        the backend supports it."""
        target = self.table.c[column]
        where = (self.table.c.id == record_id, self.table.c.user_id == user_id)
        try:
            with self.engine.begin() as conn:
                current = conn.execute(
                    select(target).where(*where).with_for_update()
                ).first()
                if current is None:
                    raise NotFoundError(self.kind, record_id)
                stmt = (
                    update(self.table)
                    .where(*where)
                    .values({column: (current[0] or 0) + amount})
                    .returning(*self.table.c)
                )
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise UpstreamError(f"Failed to update {self.kind} {record_id}.", exc) from exc
        logger.info("Updated %s %s for user %s", self.kind, record_id, user_id)
        self._publish(user_id)
        return dict(row)

    def remove(self, user_id: str, record_id: int) -> None:
        stmt = delete(self.table).where(
            self.table.c.id == record_id,
            self.table.c.user_id == user_id,
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise UpstreamError(f"Failed to delete {self.kind} {record_id}.", exc) from exc
        if result.rowcount == 0:
            raise NotFoundError(self.kind, record_id)
        logger.info("Deleted %s %s for user %s", self.kind, record_id, user_id)
        self._publish(user_id)

    def subscribe(
        self,
        user_id: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Callable[[], None]:
        """Deliver the current snapshot now and after every write.

        Returns a callable that cancels the subscription; calling it more
        than once is harmless.
        """
        subscription = _Subscription(next(self._tokens), on_snapshot, on_error)
        with self._lock:
            self._subscriptions.setdefault(user_id, []).append(subscription)
        self._deliver(user_id, [subscription])

        def unsubscribe() -> None:
            with self._lock:
                active = self._subscriptions.get(user_id, [])
                remaining = [s for s in active if s.token != subscription.token]
                if remaining:
                    self._subscriptions[user_id] = remaining
                else:
                    self._subscriptions.pop(user_id, None)

        return unsubscribe

    def subscriber_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(user_id, []))

    def _publish(self, user_id: str) -> None:
        with self._lock:
            targets = list(self._subscriptions.get(user_id, []))
        if targets:
            self._deliver(user_id, targets)

    def _deliver(self, user_id: str, targets: list[_Subscription]) -> None:
        # Reading and numbering happen together so a newer read always
        # carries the higher version.
        with self._lock:
            try:
                records = self.list(user_id)
            except UpstreamError as exc:
                records = None
                failure = exc
            else:
                version = self._versions.get(user_id, 0) + 1
                self._versions[user_id] = version
        if records is None:
            logger.error(
                "Snapshot of %s for user %s failed", self.kind, user_id, exc_info=failure
            )
            for subscription in targets:
                if subscription.on_error is not None:
                    self._notify(subscription.on_error, failure)
            return
        snapshot = Snapshot(user_id=user_id, version=version, records=tuple(records))
        for subscription in targets:
            if self._is_active(user_id, subscription):
                self._notify(subscription.on_snapshot, snapshot)

    def _notify(self, callback: Callable[[Any], None], value: Any) -> None:
        # Writes have already committed by the time subscribers run.
        try:
            callback(value)
        except Exception:
            logger.exception("Subscriber to %s failed", self.kind)

    def _is_active(self, user_id: str, subscription: _Subscription) -> bool:
        with self._lock:
            return any(
                s.token == subscription.token
                for s in self._subscriptions.get(user_id, [])
            )


@dataclass
class Stores:
    """The four stores the engine talks to, sharing one database engine."""

    engine: Engine
    ledger: RecordStore
    budgets: RecordStore
    recurrences: RecordStore
    goals: RecordStore

    @classmethod
    def connect(cls, database_url: str) -> "Stores":
        engine = create_store_engine(database_url)
        return cls(
            engine=engine,
            ledger=RecordStore(engine, transactions, "Transaction"),
            budgets=RecordStore(engine, budgets, "Budget"),
            recurrences=RecordStore(engine, recurrences, "Recurring transaction"),
            goals=RecordStore(engine, savings_goals, "Savings goal"),
        )

    def dispose(self) -> None:
        self.engine.dispose()
