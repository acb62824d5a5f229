"""Caller authorization backed by a context variable."""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

import structlog

from .errors import Unauthorized

logger = structlog.get_logger()


class CallerAuthorizer:
    """
    Tracks who is calling the engine right now.

    Whoever authenticates the caller (the HTTP service, the CLI, a test)
    wraps the engine call in ``acting_as``. The context variable keeps
    concurrent requests on one event loop from seeing each other's caller.
    """

    def __init__(self):
        self._caller: ContextVar[Optional[str]] = ContextVar("htlc_caller", default=None)

    @property
    def current_caller(self) -> Optional[str]:
        return self._caller.get()

    @contextmanager
    def acting_as(self, identity: str) -> Iterator[None]:
        """Run the enclosed block as ``identity``."""
        token = self._caller.set(identity)
        try:
            yield
        finally:
            self._caller.reset(token)

    def require_auth(self, identity: str):
        """Raise Unauthorized unless the current caller is ``identity``."""
        caller = self._caller.get()
        if caller is None:
            raise Unauthorized("No authenticated caller")
        if caller != identity:
            logger.warning("Rejected caller", caller=caller, required=identity)
            raise Unauthorized(f"Caller {caller} is not {identity}")
