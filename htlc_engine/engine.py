"""
Swap lifecycle state machine.

A swap is created pending by ``initiate`` and settled exactly once, either
by the receiver revealing the secret before the timelock (``claim``) or by
the sender after it (``refund``). The instant ``now == timelock`` already
belongs to refund.

Settlement reserves the terminal status with a compare-and-set on the
store before any value leaves escrow. Whoever loses that race gets
AlreadySettled and moves nothing, so escrowed value is released once.

When the store and the ledger share a database, the engine is given their
``transaction`` and every status change commits together with the value
it moves. Without one, a failed step is undone by a compensating write.
"""

import threading
from contextlib import AbstractContextManager, contextmanager
from typing import Callable, Iterator, Optional

import structlog

from .config import config
from .errors import (
    AlreadySettled,
    DuplicateSwap,
    EscrowFailed,
    Expired,
    InvalidAmount,
    InvalidPreimage,
    InvalidTimelock,
    NotYetExpired,
    SwapNotFound,
)
from .events import SWAP_CLAIMED, SWAP_INITIATED, SWAP_REFUNDED
from .identity import MAX_TIMELOCK, as_bytes32, derive_swap_id, preimage_matches
from .interfaces import Authorizer, Clock, EventSink, SwapStore, ValueTransfer
from .models import (
    MAX_AMOUNT,
    SwapClaimed,
    SwapInitiated,
    SwapRecord,
    SwapRefunded,
    SwapStatus,
)

logger = structlog.get_logger()

UnitOfWork = Callable[[], AbstractContextManager]


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class HTLCEngine:
    """
    Owns swap records and enforces every transition on them.

    All collaborators are injected; the engine holds no balances itself.
    Custody is the named ``escrow_account`` on the value transfer ledger.
    """

    def __init__(
        self,
        clock: Clock,
        store: SwapStore,
        authorizer: Authorizer,
        ledger: ValueTransfer,
        events: EventSink,
        escrow_account: Optional[str] = None,
        transaction: Optional[UnitOfWork] = None,
    ):
        """
        Wire up the collaborators.

        Args:
            clock: Source of ledger time
            store: Durable swap records
            authorizer: Checks the identity of the current caller
            ledger: Moves value into and out of escrow
            events: Receives lifecycle notifications
            escrow_account: Custody account, defaults to the configured one
            transaction: Opens one atomic unit of work spanning store and ledger
        """
        self.clock = clock
        self.store = store
        self.authorizer = authorizer
        self.ledger = ledger
        self.events = events
        self.escrow_account = escrow_account or config.escrow_account
        self.transaction = transaction

        self._locks: dict[str, _LockEntry] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _swap_lock(self, swap_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(swap_id)
            if entry is None:
                entry = self._locks[swap_id] = _LockEntry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[swap_id]

    def _load(self, swap_id: str) -> SwapRecord:
        record = self.store.get(swap_id)
        if record is None:
            raise SwapNotFound(f"Swap {swap_id} not found")
        return record

    def _publish(self, topic: str, payload: dict):
        # The transition is already committed; a notification failure must not
        # make the caller believe it was not.
        try:
            self.events.publish(topic, payload)
        except Exception as e:
            logger.error("Event publish failed", topic=topic, error=str(e))

    def initiate(
        self,
        sender: str,
        receiver: str,
        asset: str,
        amount: int,
        hashlock: bytes | str,
        timelock: int,
    ) -> bytes:
        """
        Escrow value and open a new pending swap.

        Args:
            sender: Funding identity, must be the authenticated caller
            receiver: Identity allowed to claim with the secret
            asset: Value type to escrow
            amount: Positive amount to escrow
            hashlock: SHA-256 of the secret, raw or hex
            timelock: Absolute deadline, strictly in the future

        Returns:
            bytes: The 32-byte swap identifier
        """
        self.authorizer.require_auth(sender)

        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmount(f"Amount must be an integer, got {amount!r}")
        if not 0 < amount <= MAX_AMOUNT:
            raise InvalidAmount(f"Amount must be positive and fit 128 bits, got {amount}")

        now = self.clock.now()
        if isinstance(timelock, bool) or not isinstance(timelock, int):
            raise InvalidTimelock(f"Timelock must be an integer, got {timelock!r}")
        if timelock <= now:
            raise InvalidTimelock(f"Timelock {timelock} is not after ledger time {now}")
        if timelock > MAX_TIMELOCK:
            raise InvalidTimelock("Timelock does not fit in 64 bits")

        hashlock = as_bytes32(hashlock, "hashlock")
        swap_id = derive_swap_id(sender, receiver, hashlock, timelock)
        key = swap_id.hex()

        with self._swap_lock(key):
            if self.store.get(key) is not None:
                logger.warning("Duplicate swap rejected", swap_id=key)
                raise DuplicateSwap(f"Swap {key} already exists")

            record = SwapRecord(
                swap_id=key,
                sender=sender,
                receiver=receiver,
                asset=asset,
                amount=amount,
                hashlock=hashlock.hex(),
                timelock=timelock,
                status=SwapStatus.PENDING,
                created_at=now,
            )
            if self.transaction is not None:
                with self.transaction():
                    self._open(record)
            else:
                self._open_compensated(record)

        logger.info(
            "Swap initiated",
            swap_id=key,
            sender=sender,
            receiver=receiver,
            asset=asset,
            amount=amount,
            timelock=timelock,
        )
        self._publish(
            SWAP_INITIATED,
            SwapInitiated(
                swap_id=key, sender=sender, receiver=receiver, amount=amount
            ).model_dump(),
        )
        return swap_id

    def _escrow(self, record: SwapRecord):
        try:
            self.ledger.transfer(
                record.asset, record.sender, self.escrow_account, record.amount
            )
        except Exception as e:
            logger.warning(
                "Escrow failed",
                swap_id=record.swap_id,
                sender=record.sender,
                error=str(e),
            )
            raise EscrowFailed(str(e)) from e

    def _open(self, record: SwapRecord):
        """Escrow and insert inside one unit of work; any failure undoes both."""
        self._escrow(record)
        if not self.store.insert(record):
            raise DuplicateSwap(f"Swap {record.swap_id} already exists")

    def _open_compensated(self, record: SwapRecord):
        self._escrow(record)
        try:
            inserted = self.store.insert(record)
        except Exception:
            self.ledger.transfer(
                record.asset, self.escrow_account, record.sender, record.amount
            )
            raise
        if not inserted:
            self.ledger.transfer(
                record.asset, self.escrow_account, record.sender, record.amount
            )
            raise DuplicateSwap(f"Swap {record.swap_id} already exists")

    def _release(self, record: SwapRecord, beneficiary: str):
        try:
            self.ledger.transfer(
                record.asset, self.escrow_account, beneficiary, record.amount
            )
        except Exception as e:
            logger.error(
                "Escrow release failed", swap_id=record.swap_id, error=str(e)
            )
            raise EscrowFailed(str(e)) from e

    def _settle(self, record: SwapRecord, settled: SwapRecord, beneficiary: str):
        """Reserve the terminal status, then release escrow to ``beneficiary``."""
        if self.transaction is not None:
            with self.transaction():
                if not self.store.compare_and_set(
                    record.swap_id, SwapStatus.PENDING, settled
                ):
                    raise AlreadySettled(f"Swap {record.swap_id} is already settled")
                self._release(record, beneficiary)
            return

        if not self.store.compare_and_set(record.swap_id, SwapStatus.PENDING, settled):
            raise AlreadySettled(f"Swap {record.swap_id} is already settled")

        try:
            self.ledger.transfer(
                record.asset, self.escrow_account, beneficiary, record.amount
            )
        except Exception as e:
            if not self.store.compare_and_set(record.swap_id, settled.status, record):
                logger.critical(
                    "Could not restore pending status after failed release",
                    swap_id=record.swap_id,
                )
            logger.error(
                "Escrow release failed", swap_id=record.swap_id, error=str(e)
            )
            raise EscrowFailed(str(e)) from e

    def claim(self, swap_id: bytes | str, preimage: bytes):
        """
        Release escrow to the receiver in exchange for the secret.

        Args:
            swap_id: Identifier returned by ``initiate``, raw or hex
            preimage: Secret whose SHA-256 equals the hashlock
        """
        key = as_bytes32(swap_id, "swap_id").hex()

        with self._swap_lock(key):
            record = self._load(key)
            if not record.is_pending:
                raise AlreadySettled(f"Swap {key} is already {record.status.value}")

            now = self.clock.now()
            if now >= record.timelock:
                raise Expired(f"Swap {key} expired at {record.timelock}")

            self.authorizer.require_auth(record.receiver)

            if not preimage_matches(preimage, bytes.fromhex(record.hashlock)):
                logger.warning("Invalid preimage", swap_id=key)
                raise InvalidPreimage()

            claimed = record.model_copy(
                update={
                    "status": SwapStatus.CLAIMED,
                    "settled_at": now,
                    "preimage": preimage.hex(),
                }
            )
            self._settle(record, claimed, record.receiver)

        logger.info(
            "Swap claimed", swap_id=key, receiver=record.receiver, amount=record.amount
        )
        self._publish(
            SWAP_CLAIMED, SwapClaimed(swap_id=key, preimage=preimage.hex()).model_dump()
        )

    def refund(self, swap_id: bytes | str):
        """Return escrow to the sender once the timelock has passed."""
        key = as_bytes32(swap_id, "swap_id").hex()

        with self._swap_lock(key):
            record = self._load(key)
            if not record.is_pending:
                raise AlreadySettled(f"Swap {key} is already {record.status.value}")

            now = self.clock.now()
            if now < record.timelock:
                raise NotYetExpired(f"Swap {key} is locked until {record.timelock}")

            self.authorizer.require_auth(record.sender)

            refunded = record.model_copy(
                update={"status": SwapStatus.REFUNDED, "settled_at": now}
            )
            self._settle(record, refunded, record.sender)

        logger.info(
            "Swap refunded", swap_id=key, sender=record.sender, amount=record.amount
        )
        self._publish(SWAP_REFUNDED, SwapRefunded(swap_id=key).model_dump())

    def get_swap(self, swap_id: bytes | str) -> SwapRecord:
        """Look up a swap, raising SwapNotFound if it does not exist."""
        return self._load(as_bytes32(swap_id, "swap_id").hex())

    def escrowed_amount(self, swap_id: bytes | str) -> int:
        """Value held in custody for this swap: ``amount`` while pending, else 0."""
        record = self.get_swap(swap_id)
        return record.amount if record.is_pending else 0

    def list_swaps(
        self, status: Optional[SwapStatus] = None, limit: int = 50
    ) -> list[SwapRecord]:
        return self.store.list(status=status, limit=limit)
