"""
Error kinds raised by the HTLC engine and its collaborators.

Every failure carries a stable ``code`` so callers on the other side of the
HTTP service (or a counter-swap orchestrator) can react to the exact
condition instead of parsing messages.
"""


class HTLCError(Exception):
    """Base class for all swap failures."""

    code = "htlc_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class InvalidAmount(HTLCError):
    """Amount must be a positive 128-bit integer."""

    code = "invalid_amount"


class InvalidTimelock(HTLCError):
    """Timelock must be in the future."""

    code = "invalid_timelock"


class DuplicateSwap(HTLCError):
    """A swap with this identifier already exists."""

    code = "duplicate_swap"


class EscrowFailed(HTLCError):
    """Value could not be moved into or out of escrow."""

    code = "escrow_failed"


class SwapNotFound(HTLCError):
    """No swap exists with this identifier."""

    code = "swap_not_found"


class AlreadySettled(HTLCError):
    """Swap was already claimed or refunded."""

    code = "already_settled"


class Expired(HTLCError):
    """Timelock expired, the swap can no longer be claimed."""

    code = "expired"


class NotYetExpired(HTLCError):
    """Timelock not expired, the swap cannot be refunded yet."""

    code = "not_yet_expired"


class Unauthorized(HTLCError):
    """Caller is not allowed to perform this operation."""

    code = "unauthorized"


class InvalidPreimage(HTLCError):
    """Preimage does not hash to the hashlock."""

    code = "invalid_preimage"


class InsufficientBalance(HTLCError):
    """Account balance is too low for the transfer."""

    code = "insufficient_balance"


class LedgerConflict(HTLCError):
    """Balance kept changing under a transfer; nothing was moved."""

    code = "ledger_conflict"


ERRORS_BY_CODE: dict[str, type[HTLCError]] = {
    cls.code: cls
    for cls in (
        InvalidAmount,
        InvalidTimelock,
        DuplicateSwap,
        EscrowFailed,
        SwapNotFound,
        AlreadySettled,
        Expired,
        NotYetExpired,
        Unauthorized,
        InvalidPreimage,
        InsufficientBalance,
        LedgerConflict,
    )
}


def error_for_code(code: str, message: str | None = None) -> HTLCError:
    """Rebuild a typed error from its wire code, falling back to the base class."""
    return ERRORS_BY_CODE.get(code, HTLCError)(message)
