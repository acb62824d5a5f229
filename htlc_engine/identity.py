"""
Swap identifier derivation and hashlock helpers.

The identifier is recomputable by anyone who knows the swap terms, so
initiators and observers agree on it without asking the engine. Each field
is encoded at a fixed width or behind a length prefix; plain concatenation
would let ("ab", "c") and ("a", "bc") produce the same identifier.
"""

import hashlib
import hmac
import secrets

HASH_SIZE = 32
MAX_TIMELOCK = 2**64 - 1


def _encode_identity(identity: str) -> bytes:
    raw = identity.encode("utf-8")
    return len(raw).to_bytes(4, "big") + raw


def as_bytes32(value: bytes | str, name: str = "value") -> bytes:
    """
    Normalize a 32-byte value given either raw or as hex.

    Args:
        value: Raw bytes or a 64-character hex string (``0x`` prefix allowed)
        name: Field name used in the error message

    Returns:
        bytes: The 32 raw bytes
    """
    if isinstance(value, str):
        text = value[2:] if value.startswith("0x") else value
        try:
            value = bytes.fromhex(text)
        except ValueError:
            raise ValueError(f"{name} is not valid hex") from None
    if not isinstance(value, (bytes, bytearray)):
        raise ValueError(f"{name} must be bytes or hex")
    if len(value) != HASH_SIZE:
        raise ValueError(f"{name} must be {HASH_SIZE} bytes, got {len(value)}")
    return bytes(value)


def derive_swap_id(sender: str, receiver: str, hashlock: bytes, timelock: int) -> bytes:
    """
    Derive the 32-byte swap identifier.

    The input is sender, receiver, hashlock and timelock, in that order.
    Amount and asset are not part of it: two swaps agreeing on these four
    terms share an identifier, and the engine refuses the second one.

    Args:
        sender: Identity funding the swap
        receiver: Identity allowed to claim
        hashlock: 32-byte SHA-256 commitment
        timelock: Absolute expiry timestamp (unsigned 64-bit)

    Returns:
        bytes: SHA-256 digest of the encoded terms
    """
    if len(hashlock) != HASH_SIZE:
        raise ValueError(f"hashlock must be {HASH_SIZE} bytes")
    if not 0 <= timelock <= MAX_TIMELOCK:
        raise ValueError("timelock does not fit in 64 bits")

    payload = b"".join(
        [
            _encode_identity(sender),
            _encode_identity(receiver),
            bytes(hashlock),
            timelock.to_bytes(8, "big"),
        ]
    )
    return hashlib.sha256(payload).digest()


def hash_preimage(preimage: bytes) -> bytes:
    """SHA-256 of a secret, the value a hashlock commits to."""
    return hashlib.sha256(preimage).digest()


def preimage_matches(preimage: bytes, hashlock: bytes) -> bool:
    """Compare a preimage against a hashlock in constant time."""
    return hmac.compare_digest(hash_preimage(preimage), hashlock)


def new_secret() -> tuple[bytes, bytes]:
    """Generate a random 32-byte preimage and its hashlock."""
    preimage = secrets.token_bytes(HASH_SIZE)
    return preimage, hash_preimage(preimage)
