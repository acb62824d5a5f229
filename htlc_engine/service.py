"""Wiring of the engine with its SQL-backed collaborators."""

from typing import Optional

from .auth import CallerAuthorizer
from .database import SqlLedger, SqlSwapStore, SwapDatabase
from .engine import HTLCEngine
from .events import EventBus, build_event_bus
from .interfaces import Clock
from .ledger import SystemClock


class SwapService:
    """
    Everything needed to run the engine against one database.

    The CLI and the HTTP server both build one of these; tests build it
    with a temporary database and a manual clock. Store and ledger share the
    database, so the engine runs each transition as one transaction.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        clock: Optional[Clock] = None,
        events: Optional[EventBus] = None,
        escrow_account: Optional[str] = None,
    ):
        self.database = SwapDatabase(database_url)
        self.store = SqlSwapStore(self.database)
        self.ledger = SqlLedger(self.database)
        self.authorizer = CallerAuthorizer()
        self.events = events if events is not None else build_event_bus()
        self.engine = HTLCEngine(
            clock=clock or SystemClock(),
            store=self.store,
            authorizer=self.authorizer,
            ledger=self.ledger,
            events=self.events,
            escrow_account=escrow_account,
            transaction=self.database.transaction,
        )

    def init(self):
        self.database.init()

    def close(self):
        self.database.close()
