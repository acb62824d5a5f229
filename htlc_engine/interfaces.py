"""
Collaborator interfaces consumed by the engine.

The engine only talks to these protocols, so the state machine can be
driven by an in-memory ledger in tests and by the SQL-backed one in the
service without changes.
"""

from typing import Any, Optional, Protocol

from .models import SwapRecord, SwapStatus


class Clock(Protocol):
    """Trusted, monotonically non-decreasing ledger time."""

    def now(self) -> int: ...


class SwapStore(Protocol):
    """Durable swap records keyed by the hex swap identifier."""

    def get(self, swap_id: str) -> Optional[SwapRecord]: ...

    def set(self, swap_id: str, record: SwapRecord) -> None: ...

    def insert(self, record: SwapRecord) -> bool:
        """Store a new record; False if the key is already taken."""
        ...

    def compare_and_set(
        self, swap_id: str, expected: SwapStatus, record: SwapRecord
    ) -> bool:
        """Replace the record only if its stored status is still ``expected``."""
        ...

    def list(
        self, status: Optional[SwapStatus] = None, limit: int = 50
    ) -> list[SwapRecord]: ...


class Authorizer(Protocol):
    """Fails the current operation unless the caller is ``identity``."""

    def require_auth(self, identity: str) -> None: ...


class ValueTransfer(Protocol):
    """Moves balances; raises InsufficientBalance without partial effects."""

    def transfer(self, asset: str, source: str, destination: str, amount: int) -> None: ...


class EventSink(Protocol):
    """Fire-and-forget notification of swap lifecycle events."""

    def publish(self, topic: str, payload: dict[str, Any]) -> None: ...
