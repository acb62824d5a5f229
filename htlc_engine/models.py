"""
Data structures for swap records and the notifications they emit.

Binary values (identifiers, hashlocks, preimages) are kept as lowercase hex
so records serialize cleanly to JSON for storage and the HTTP service.
"""

from enum import Enum

from pydantic import BaseModel, Field

HEX32_PATTERN = r"^[0-9a-f]{64}$"
MAX_AMOUNT = 2**127 - 1


class SwapStatus(str, Enum):
    """Lifecycle state of a swap."""

    PENDING = "pending"  # Value escrowed, waiting for claim or refund
    CLAIMED = "claimed"  # Receiver revealed the secret
    REFUNDED = "refunded"  # Timelock passed, value returned to sender


class SwapRecord(BaseModel):
    """
    One in-flight or settled swap.

    Created pending by ``initiate`` and moved exactly once, by whichever of
    ``claim`` or ``refund`` succeeds first. Never deleted.
    """

    swap_id: str = Field(pattern=HEX32_PATTERN, description="Derived identifier")
    sender: str = Field(description="Identity that funded the swap")
    receiver: str = Field(description="Identity entitled to claim")
    asset: str = Field(description="Escrowed value type")
    amount: int = Field(gt=0, le=MAX_AMOUNT, description="Escrowed amount")
    hashlock: str = Field(pattern=HEX32_PATTERN, description="SHA-256 of the secret")
    timelock: int = Field(ge=0, description="Claim deadline / refund unlock time")
    status: SwapStatus = Field(default=SwapStatus.PENDING)

    created_at: int = Field(description="Ledger time at initiation")
    settled_at: int | None = Field(None, description="Ledger time of settlement")
    preimage: str | None = Field(None, description="Revealed secret once claimed")

    @property
    def is_pending(self) -> bool:
        return self.status == SwapStatus.PENDING


class SwapInitiated(BaseModel):
    """Published after value is escrowed and the record persisted."""

    swap_id: str
    sender: str
    receiver: str
    amount: int


class SwapClaimed(BaseModel):
    """
    Published after a successful claim.

    Carries the preimage: once this is out, the secret is public and any
    counter-swap locked with the same hashlock can be claimed too.
    """

    swap_id: str
    preimage: str


class SwapRefunded(BaseModel):
    """Published after the sender got the escrow back."""

    swap_id: str
