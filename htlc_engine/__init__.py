"""HTLC Engine - hash time-locked swaps of custodied value."""

__version__ = "0.1.0"

from .engine import HTLCEngine
from .errors import HTLCError
from .identity import derive_swap_id, hash_preimage, new_secret
from .models import SwapRecord, SwapStatus

__all__ = [
    "HTLCEngine",
    "HTLCError",
    "SwapRecord",
    "SwapStatus",
    "derive_swap_id",
    "hash_preimage",
    "new_secret",
]
