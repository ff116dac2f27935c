"""SHA-256 helpers shared by the identifier hasher and result digests."""

import hashlib


def sha256_digest(data: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def sha256_int(data: bytes) -> int:
    """Return the SHA-256 digest of ``data`` as an unsigned big-endian integer."""
    return int.from_bytes(hashlib.sha256(data).digest(), "big")


def prefixed_digest(data: bytes) -> str:
    """Return ``"sha256:" + hex digest`` for audit-style references."""
    return f"sha256:{sha256_digest(data)}"
