"""
Identifier hashing: usernames to on-chain integer identifiers.

A username is normalized (trimmed, lower-cased), hashed with SHA-256, and
the digest is read as an unsigned big-endian integer. The mapping is
deterministic so any party can re-derive the identifier from the alias.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from evvm_signer.errors import InvalidInput
from evvm_signer.integrity import sha256_int

if TYPE_CHECKING:
    from evvm_signer.messages import Recipient


def normalize_username(username: object) -> str:
    """Trim and lower-case a username.

    Raises:
        InvalidInput: If username is not a string or is blank.
    """
    if not isinstance(username, str):
        raise InvalidInput("username must be a non-empty string")
    clean = username.strip().lower()
    if not clean:
        raise InvalidInput("username must be a non-empty string")
    return clean


def hash_username(username: object) -> int:
    """Map a username to its 256-bit on-chain identifier.

    ``hash_username("Alice ") == hash_username("alice")``.

    Raises:
        InvalidInput: If username is not a string or is blank.
    """
    return sha256_int(normalize_username(username).encode("utf-8"))


def hash_recipients(recipients: Sequence[Recipient]) -> int:
    """Order-independent fingerprint of a disperse recipient list.

    Recipients are sorted by address (or username), rendered as
    ``address:username:amount`` and joined with ``|`` before hashing.
    Used as a compact reference to a disperse batch in signing results.

    Raises:
        InvalidInput: If recipients is empty.
    """
    if not recipients:
        raise InvalidInput("recipients must be a non-empty sequence")

    def key(r: Recipient) -> str:
        return r.address or r.username or ""

    rendered = "|".join(
        f"{r.address or ''}:{r.username or ''}:{format(r.amount, 'f')}"
        for r in sorted(recipients, key=key)
    )
    return sha256_int(rendered.encode("utf-8"))
