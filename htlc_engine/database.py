"""
Persistence for swap records and account balances.

Swap rows keep a few normalized columns for querying next to a JSON blob
with the complete record, which is what gets read back. Status changes go
through a conditional UPDATE so that two processes sharing one database
cannot both settle the same swap.

Store and ledger calls made inside ``SwapDatabase.transaction()`` share its
session, so a status change and the balance movement it pays for commit or
roll back together.
"""

import threading
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

import structlog
from sqlalchemy import (
    BigInteger,
    Column,
    Index,
    String,
    Text,
    create_engine,
    event,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import config
from .errors import InsufficientBalance, InvalidAmount, LedgerConflict
from .models import SwapRecord, SwapStatus

logger = structlog.get_logger()
Base = declarative_base()


class SwapRow(Base):
    """Table schema for swap persistence."""

    __tablename__ = "htlc_swaps"

    # Primary identification
    swap_id = Column(String(64), primary_key=True)
    sender = Column(String, nullable=False, index=True)
    receiver = Column(String, nullable=False, index=True)
    asset = Column(String, nullable=False)

    # 128-bit amounts and 64-bit timelocks overflow SQLite integers
    amount = Column(String, nullable=False)
    hashlock = Column(String(64), nullable=False)
    timelock = Column(String, nullable=False)

    # State tracking
    status = Column(String, nullable=False)
    created_at = Column(BigInteger, nullable=False)
    settled_at = Column(BigInteger, nullable=True)

    # Complete record as JSON
    full_swap_json = Column(Text, nullable=False)

    __table_args__ = (
        Index("idx_swap_status", "status"),
        Index("idx_swap_created", "created_at"),
    )


class BalanceRow(Base):
    """Balance of one asset held by one account."""

    __tablename__ = "htlc_balances"

    account = Column(String, primary_key=True)
    asset = Column(String, primary_key=True)
    amount = Column(String, nullable=False, default="0")


def _row_from_record(record: SwapRecord) -> SwapRow:
    return SwapRow(
        swap_id=record.swap_id,
        sender=record.sender,
        receiver=record.receiver,
        asset=record.asset,
        amount=str(record.amount),
        hashlock=record.hashlock,
        timelock=str(record.timelock),
        status=record.status.value,
        created_at=record.created_at,
        settled_at=record.settled_at,
        full_swap_json=record.model_dump_json(),
    )


def _begin_immediate(engine):
    """Let SQLAlchemy own SQLite transactions and take the write lock at BEGIN."""

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SwapDatabase:
    """Owns the SQLAlchemy engine shared by the swap store and the ledger."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or config.database_url
        connect_args = {}
        if self.database_url.startswith("sqlite"):
            # Sessions hop between worker threads of the HTTP service
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_engine(
            self.database_url,
            echo=False,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        if self.engine.dialect.name == "sqlite":
            _begin_immediate(self.engine)
        self.session_factory = sessionmaker(self.engine, expire_on_commit=False)
        self._active: ContextVar[Optional[Session]] = ContextVar(
            "htlc_session", default=None
        )

    def init(self):
        """Initialize database schema."""
        Base.metadata.create_all(self.engine)
        logger.info("Database initialized", url=self.engine.url.render_as_string())

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Open a unit of work, or join the one already open in this context.

        Commits when the outermost block exits cleanly and rolls back
        everything written inside it otherwise.
        """
        session = self._active.get()
        if session is not None:
            yield session
            return

        with self.session_factory.begin() as session:
            token = self._active.set(session)
            try:
                yield session
            finally:
                self._active.reset(token)

    def close(self):
        """Close database connection."""
        self.engine.dispose()


class SqlSwapStore:
    """Swap records in the ``htlc_swaps`` table."""

    def __init__(self, database: SwapDatabase):
        self.db = database

    def get(self, swap_id: str) -> Optional[SwapRecord]:
        """Get a swap by ID."""
        with self.db.transaction() as session:
            payload = session.execute(
                select(SwapRow.full_swap_json).where(SwapRow.swap_id == swap_id)
            ).scalar_one_or_none()
        if payload:
            return SwapRecord.model_validate_json(payload)
        return None

    def set(self, swap_id: str, record: SwapRecord):
        """Save or update a swap record."""
        if swap_id != record.swap_id:
            raise ValueError("Record stored under a foreign key")
        with self.db.transaction() as session:
            session.merge(_row_from_record(record))

    def insert(self, record: SwapRecord) -> bool:
        """Add a new swap; returns False if the identifier is taken."""
        with self.db.transaction() as session:
            try:
                with session.begin_nested():
                    session.add(_row_from_record(record))
            except IntegrityError:
                return False
        return True

    def compare_and_set(
        self, swap_id: str, expected: SwapStatus, record: SwapRecord
    ) -> bool:
        """Replace a swap only while its stored status is ``expected``."""
        with self.db.transaction() as session:
            result = session.execute(
                update(SwapRow)
                .where(SwapRow.swap_id == swap_id, SwapRow.status == expected.value)
                .values(
                    status=record.status.value,
                    settled_at=record.settled_at,
                    full_swap_json=record.model_dump_json(),
                )
            )
            return result.rowcount == 1

    def list(
        self, status: Optional[SwapStatus] = None, limit: int = 50
    ) -> list[SwapRecord]:
        """Most recently created swaps, optionally filtered by status."""
        if limit < 1:
            raise ValueError("limit must be at least 1")
        query = select(SwapRow.full_swap_json).order_by(SwapRow.created_at.desc())
        if status is not None:
            query = query.where(SwapRow.status == status.value)
        with self.db.transaction() as session:
            result = session.execute(query.limit(limit))
            return [SwapRecord.model_validate_json(row[0]) for row in result]


class MemorySwapStore:
    """
    Dict-backed swap store.

    Hands out copies so callers can never mutate a stored record without
    going through ``set`` or ``compare_and_set``.
    """

    def __init__(self):
        self._records: dict[str, SwapRecord] = {}
        self._lock = threading.Lock()

    def get(self, swap_id: str) -> Optional[SwapRecord]:
        with self._lock:
            record = self._records.get(swap_id)
            return record.model_copy() if record else None

    def set(self, swap_id: str, record: SwapRecord):
        if swap_id != record.swap_id:
            raise ValueError("Record stored under a foreign key")
        with self._lock:
            self._records[swap_id] = record.model_copy()

    def insert(self, record: SwapRecord) -> bool:
        with self._lock:
            if record.swap_id in self._records:
                return False
            self._records[record.swap_id] = record.model_copy()
            return True

    def compare_and_set(
        self, swap_id: str, expected: SwapStatus, record: SwapRecord
    ) -> bool:
        with self._lock:
            current = self._records.get(swap_id)
            if current is None or current.status != expected:
                return False
            self._records[swap_id] = record.model_copy()
            return True

    def list(
        self, status: Optional[SwapStatus] = None, limit: int = 50
    ) -> list[SwapRecord]:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        with self._lock:
            records = [
                r for r in self._records.values() if status is None or r.status == status
            ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy() for r in records[:limit]]


class SqlLedger:
    """
    Balances in the ``htlc_balances`` table.

    Every balance change is a conditional UPDATE on the value that was read,
    so a concurrent writer makes the transfer fail with LedgerConflict
    instead of being overwritten. Debit and credit share one transaction;
    any failure rolls the whole transfer back.
    """

    def __init__(self, database: SwapDatabase):
        self.db = database

    def _balance(self, session: Session, account: str, asset: str) -> Optional[str]:
        return session.execute(
            select(BalanceRow.amount).where(
                BalanceRow.account == account, BalanceRow.asset == asset
            )
        ).scalar_one_or_none()

    def _adjust(self, session: Session, account: str, asset: str, delta: int):
        current = self._balance(session, account, asset)
        held = int(current) if current is not None else 0
        if held + delta < 0:
            raise InsufficientBalance(f"{account} holds {held} {asset}, needs {-delta}")

        if current is None:
            try:
                with session.begin_nested():
                    session.execute(
                        insert(BalanceRow).values(
                            account=account, asset=asset, amount=str(delta)
                        )
                    )
            except IntegrityError:
                raise LedgerConflict(
                    f"Balance of {account} was created concurrently"
                ) from None
            return

        result = session.execute(
            update(BalanceRow)
            .where(
                BalanceRow.account == account,
                BalanceRow.asset == asset,
                BalanceRow.amount == current,
            )
            .values(amount=str(held + delta))
        )
        if result.rowcount != 1:
            logger.warning("Balance changed concurrently", account=account, asset=asset)
            raise LedgerConflict(f"Balance of {account} changed during the transfer")

    def mint(self, account: str, asset: str, amount: int):
        """Credit ``amount`` to an account, used to fund accounts."""
        if amount <= 0:
            raise InvalidAmount()
        with self.db.transaction() as session:
            self._adjust(session, account, asset, amount)
        logger.info("Minted", account=account, asset=asset, amount=amount)

    def balance_of(self, account: str, asset: str) -> int:
        with self.db.transaction() as session:
            current = self._balance(session, account, asset)
        return int(current) if current is not None else 0

    def transfer(self, asset: str, source: str, destination: str, amount: int):
        """Move ``amount`` of ``asset`` between accounts atomically."""
        if amount <= 0:
            raise InvalidAmount()

        with self.db.transaction() as session:
            self._adjust(session, source, asset, -amount)
            self._adjust(session, destination, asset, amount)

        logger.debug(
            "Transferred",
            asset=asset,
            source=source,
            destination=destination,
            amount=amount,
        )
