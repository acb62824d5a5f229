"""Ledger time sources and an in-memory value transfer."""

import threading
import time
from collections import defaultdict

import structlog

from .errors import InsufficientBalance, InvalidAmount

logger = structlog.get_logger()


class SystemClock:
    """Wall-clock time in whole seconds."""

    def now(self) -> int:
        return int(time.time())


class ManualClock:
    """
    Clock that only moves when told to.

    Used by tests and simulations to sit exactly on either side of a
    timelock boundary.
    """

    def __init__(self, start: int = 0):
        self._now = start

    def now(self) -> int:
        return self._now

    def set(self, timestamp: int):
        """Jump to ``timestamp``; going backwards is refused."""
        if timestamp < self._now:
            raise ValueError("Ledger time cannot move backwards")
        self._now = timestamp

    def advance(self, seconds: int):
        self.set(self._now + seconds)


class InMemoryLedger:
    """
    Balances per (account, asset) kept in a dict.

    Transfers are checked and applied under one lock, so a failed transfer
    never leaves a debit without the matching credit.
    """

    def __init__(self):
        self._balances: dict[tuple[str, str], int] = defaultdict(int)
        self._lock = threading.Lock()

    def mint(self, account: str, asset: str, amount: int):
        """Credit ``amount`` out of thin air, for funding test accounts."""
        if amount <= 0:
            raise InvalidAmount()
        with self._lock:
            self._balances[(account, asset)] += amount
        logger.debug("Minted", account=account, asset=asset, amount=amount)

    def balance_of(self, account: str, asset: str) -> int:
        with self._lock:
            return self._balances.get((account, asset), 0)

    def transfer(self, asset: str, source: str, destination: str, amount: int):
        """Move ``amount`` of ``asset`` between accounts."""
        if amount <= 0:
            raise InvalidAmount()

        with self._lock:
            available = self._balances.get((source, asset), 0)
            if available < amount:
                raise InsufficientBalance(
                    f"{source} holds {available} {asset}, needs {amount}"
                )
            self._balances[(source, asset)] = available - amount
            self._balances[(destination, asset)] += amount

        logger.debug(
            "Transferred",
            asset=asset,
            source=source,
            destination=destination,
            amount=amount,
        )
