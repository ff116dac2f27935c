"""
Input validators for user-supplied step values.

Every validator takes a raw value (usually the text a user typed) and
returns a ``ValidationResult``. Validators are pure: no I/O, no session
access, no exceptions for bad input. The state machine stores
``result.value`` (the normalized form) only when ``result.ok`` is True.

Normalization:
    - addresses → EIP-55 checksum form (input is checksum-insensitive)
    - decimals → ``Decimal``
    - nonces and counts → ``int``
    - enumerated choices → lower-case ``str``
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from eth_account import Account
from eth_utils import to_checksum_address

from evvm_signer.config import NETWORK_CHAIN_IDS
from evvm_signer.messages import MAX_UINT256, UINT256_DIGITS, to_base_units

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,20}$")
_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_INTEGER_RE = re.compile(r"^[0-9]+$")

# Amounts are scaled to 18-decimal base units when a message is built.
MAX_DECIMAL_PLACES = 18

PRIORITIES = ("low", "high")
ACTIONS = ("stake", "unstake")
RECIPIENT_TYPES = ("address", "username")
SIGNATURE_MODES = ("single", "dual")
MIN_RECIPIENTS = 2
MAX_RECIPIENTS = 5


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one raw input.

    Attributes:
        ok: Whether the input is acceptable.
        value: Normalized value when ok, otherwise None.
        reason: Human-readable reason when not ok.
    """

    ok: bool
    value: Any = None
    reason: str | None = None


def _ok(value: Any) -> ValidationResult:
    return ValidationResult(ok=True, value=value)


def _fail(reason: str) -> ValidationResult:
    return ValidationResult(ok=False, reason=reason)


def _text(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    return raw.strip()


# =========================================================================
# Addresses and identifiers
# =========================================================================


def is_valid_address(raw: Any) -> bool:
    """True for exactly ``0x`` + 40 hex digits, any letter case."""
    return isinstance(raw, str) and bool(_ADDRESS_RE.match(raw))


def validate_address(raw: Any) -> ValidationResult:
    text = _text(raw)
    if text is None or not is_valid_address(text):
        return _fail("Please enter a valid address (42 characters starting with 0x).")
    return _ok(to_checksum_address(text))


def validate_token_address(raw: Any) -> ValidationResult:
    """Token contract address. The zero address denotes the native coin."""
    result = validate_address(raw)
    if not result.ok:
        return _fail(
            "Please enter a valid token address "
            "(use 0x0000000000000000000000000000000000000000 for the native coin)."
        )
    return result


def validate_optional_address(raw: Any) -> ValidationResult:
    """Address or empty input. Empty normalizes to None (use the default)."""
    text = _text(raw)
    if text == "" or text == "-":
        return _ok(None)
    result = validate_address(raw)
    if not result.ok:
        return _fail("Please enter a valid address, or leave empty for the default.")
    return result


def validate_username(raw: Any) -> ValidationResult:
    text = _text(raw)
    if text is None or not _USERNAME_RE.match(text):
        return _fail("Username must be 3-20 characters, alphanumeric and underscores only.")
    return _ok(text)


# =========================================================================
# Numbers
# =========================================================================


def _parse_decimal(raw: Any) -> Decimal | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, Decimal)):
        value = Decimal(raw)
    elif isinstance(raw, float):
        value = Decimal(repr(raw))
    elif isinstance(raw, str):
        try:
            value = Decimal(raw.strip())
        except InvalidOperation:
            return None
    else:
        return None
    if not value.is_finite():
        return None
    return value


def _too_precise(value: Decimal) -> bool:
    if not value:
        return False
    _, digits, exponent = value.as_tuple()
    text = "".join(map(str, digits))
    trailing_zeros = len(text) - len(text.rstrip("0"))
    return -(exponent + trailing_zeros) > MAX_DECIMAL_PLACES  # type: ignore[operator]


def _exceeds_uint256(value: Decimal) -> bool:
    """True if the 18-decimal base-unit form of value overflows uint256."""
    try:
        to_base_units(value)
    except ValueError:
        return True
    return False


def validate_amount(raw: Any) -> ValidationResult:
    """Finite decimal strictly greater than zero."""
    value = _parse_decimal(raw)
    if value is None or value <= 0:
        return _fail("Please enter a valid positive number.")
    if _too_precise(value):
        return _fail(f"Amounts support at most {MAX_DECIMAL_PLACES} decimal places.")
    if _exceeds_uint256(value):
        return _fail("That amount is too large.")
    return _ok(value)


def validate_priority_fee(raw: Any) -> ValidationResult:
    """Finite decimal greater than or equal to zero."""
    value = _parse_decimal(raw)
    if value is None or value < 0:
        return _fail("Please enter a valid non-negative number.")
    if _too_precise(value):
        return _fail(f"Fees support at most {MAX_DECIMAL_PLACES} decimal places.")
    if _exceeds_uint256(value):
        return _fail("That fee is too large.")
    return _ok(value)


def validate_nonce(raw: Any) -> ValidationResult:
    """Non-negative integer from a string, an int, or an integral number."""
    if isinstance(raw, bool):
        return _fail("Please enter a valid non-negative integer.")
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str) and _INTEGER_RE.match(raw.strip()):
        digits = raw.strip().lstrip("0")
        if len(digits) > UINT256_DIGITS:
            return _fail("That number is too large.")
        value = int(digits or "0")
    elif isinstance(raw, (float, Decimal)):
        dec = _parse_decimal(raw)
        if dec is None or dec != dec.to_integral_value():
            return _fail("Please enter a valid non-negative integer.")
        if dec and dec.adjusted() >= UINT256_DIGITS:
            return _fail("That number is too large.")
        value = int(dec)
    else:
        return _fail("Please enter a valid non-negative integer.")
    if value < 0:
        return _fail("Please enter a valid non-negative integer.")
    if value > MAX_UINT256:
        return _fail("That number is too large.")
    return _ok(value)


def validate_recipient_count(raw: Any) -> ValidationResult:
    result = validate_nonce(raw)
    if not result.ok or not MIN_RECIPIENTS <= result.value <= MAX_RECIPIENTS:
        return _fail(f"Choose between {MIN_RECIPIENTS} and {MAX_RECIPIENTS} recipients.")
    return result


# =========================================================================
# Enumerated choices
# =========================================================================


def _choice(raw: Any, allowed: Iterable[str], reason: str) -> ValidationResult:
    text = _text(raw)
    if text is None or text.lower() not in allowed:
        return _fail(reason)
    return _ok(text.lower())


def validate_priority(raw: Any) -> ValidationResult:
    return _choice(raw, PRIORITIES, "Priority must be 'low' or 'high'.")


def validate_action(raw: Any) -> ValidationResult:
    return _choice(raw, ACTIONS, "Action must be 'stake' or 'unstake'.")


def validate_network(
    raw: Any, supported: Iterable[str] = tuple(NETWORK_CHAIN_IDS)
) -> ValidationResult:
    allowed = tuple(supported)
    return _choice(raw, allowed, f"Network must be one of: {', '.join(allowed)}.")


def validate_recipient_type(raw: Any) -> ValidationResult:
    return _choice(raw, RECIPIENT_TYPES, "Recipient type must be 'address' or 'username'.")


def validate_signature_mode(raw: Any) -> ValidationResult:
    return _choice(raw, SIGNATURE_MODES, "Signature mode must be 'single' or 'dual'.")


# =========================================================================
# Key material
# =========================================================================


def validate_private_key(raw: Any) -> ValidationResult:
    """64 hex digits (optional 0x) that eth_account accepts as a key.

    The normalized value is the 0x-prefixed lower-case key. Reasons never
    echo the input.
    """
    text = _text(raw)
    if text is None or not _PRIVATE_KEY_RE.match(text):
        return _fail("Private key must be 64 hex characters, optionally prefixed with 0x.")
    key = "0x" + text.removeprefix("0x").lower()
    try:
        Account.from_key(key)
    except Exception:
        return _fail("Private key is not a valid secp256k1 key.")
    return _ok(key)
