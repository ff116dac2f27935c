"""
Canonical message builders: the exact structures that get signed.

One pure builder per message variant. Each builder:

    1. Checks required fields in a fixed order and raises
       ``MissingParameter`` naming the first absent one (None or blank).
    2. Resolves recipients: a username is hashed into the identity slot
       and the address slot is set to ZERO_ADDRESS; an address leaves the
       identity slot as "".
    3. Emits the variant's canonical structure with fixed field order and
       fixed numeric encoding. Decimal amounts and fees become integers
       in 18-decimal base units.

Variants:
    - PayMessage: ordered tuple
      (opcode, opname, to_address, token, amount, priority_fee, nonce,
      priority, executor) plus the companion ``to_identity`` slot.
    - DispersePayMessage / StakingMessage / PresaleStakingMessage: keyed
      structures ``type, network, ..., nonce, priorityFee, priority,
      timestamp``.

Invariants:
    - Key order returned by ``to_message()`` matches the EIP-712 schema
      order in typed_data.py. Changing either breaks on-chain verification.
    - Builders perform no I/O. Timestamps come from an injectable clock.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from decimal import Context, Decimal, InvalidOperation
from enum import StrEnum
from typing import Any, ClassVar

from eth_utils import to_checksum_address

from evvm_signer.errors import AmountMismatch, MissingParameter
from evvm_signer.identity import hash_username

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

BASE_UNIT_DECIMALS = 18

# Tolerance for "total equals sum of recipient amounts": 1e-6 (one part in
# AMOUNT_TOLERANCE_PARTS), applied both absolutely and relative to the
# larger operand.
AMOUNT_TOLERANCE_PARTS = 10**6

MAX_UINT256 = 2**256 - 1
UINT256_DIGITS = len(str(MAX_UINT256))

# Wide enough to add uint256-sized amounts without rounding.
_EXACT = Context(prec=2 * UINT256_DIGITS)

PAY_OPCODE = 0
PAY_OPNAME = "pay"


class MessageType(StrEnum):
    """Variant tag of a signable message."""

    PAY = "pay"
    DISPERSE_PAYMENT = "disperse_payment"
    PUBLIC_STAKING = "public_staking"
    PRESALE_STAKING = "presale_staking"


# =========================================================================
# Helpers
# =========================================================================


def _now_seconds() -> int:
    return int(time.time())


def _is_absent(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def _require(fields: Sequence[tuple[str, object]]) -> None:
    """Raise MissingParameter for the first absent field, in order."""
    for name, value in fields:
        if _is_absent(value):
            raise MissingParameter(name)


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"not a decimal amount: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"not a decimal amount: {value!r}") from None
    else:
        raise ValueError(f"not a decimal amount: {value!r}")
    if not result.is_finite():
        raise ValueError(f"amount must be finite, got: {value!r}")
    return result


def to_base_units(value: Any, decimals: int = BASE_UNIT_DECIMALS) -> int:
    """Scale a decimal amount to integer base units.

    ``to_base_units("1.5") == 1_500_000_000_000_000_000``. Scaling is done
    on the integer coefficient, so no digit the user typed is rounded.

    Raises:
        ValueError: If value is not a finite decimal, is negative, has
            more fractional digits than ``decimals``, or does not fit in
            a uint256.
    """
    amount = _as_decimal(value)
    if amount < 0:
        raise ValueError(f"amount must be non-negative, got: {value!r}")
    if not amount:
        return 0
    if amount.adjusted() + decimals >= UINT256_DIGITS:
        raise ValueError(f"amount {value!r} does not fit in uint256")
    _, digits, exponent = amount.as_tuple()
    coefficient = int("".join(map(str, digits)))
    shift = exponent + decimals  # type: ignore[operator]
    if shift >= 0:
        scaled = coefficient * 10**shift
    elif -shift > len(digits):
        raise ValueError(f"amount {value!r} has more than {decimals} decimal places")
    else:
        scaled, remainder = divmod(coefficient, 10**-shift)
        if remainder:
            raise ValueError(f"amount {value!r} has more than {decimals} decimal places")
    if scaled > MAX_UINT256:
        raise ValueError(f"amount {value!r} does not fit in uint256")
    return scaled


def sum_amounts(amounts: Iterable[Any]) -> Decimal:
    """Sum decimal amounts without rounding."""
    total = Decimal(0)
    for amount in amounts:
        total = _EXACT.add(total, _as_decimal(amount))
    return total


def amounts_match(total: Any, amounts: Sequence[Any]) -> bool:
    """True if ``total`` equals ``sum(amounts)`` within the tolerance.

    The comparison runs on exact base units. A difference is accepted up
    to 1e-6 in absolute terms or 1e-6 relative to the larger of the two
    values, whichever is greater. Differences exactly at the boundary are
    accepted.
    """
    declared = to_base_units(total)
    summed = sum(to_base_units(a) for a in amounts)
    bound = max(declared, summed, 10**BASE_UNIT_DECIMALS)
    return abs(summed - declared) * AMOUNT_TOLERANCE_PARTS <= bound


def _priority(value: str) -> str:
    priority = value.strip().lower()
    if priority not in ("low", "high"):
        raise ValueError(f"priority must be 'low' or 'high', got: {value!r}")
    return priority


def _action(value: str) -> str:
    action = value.strip().lower()
    if action not in ("stake", "unstake"):
        raise ValueError(f"action must be 'stake' or 'unstake', got: {value!r}")
    return action


def _resolve_target(address: str | None, username: str | None) -> tuple[str, str]:
    """Return (address_slot, identity_slot) for a payment target."""
    if address and username:
        raise ValueError("exactly one of address or username may be set")
    if username:
        return ZERO_ADDRESS, str(hash_username(username))
    return to_checksum_address(address), ""  # type: ignore[arg-type]


# =========================================================================
# Message types
# =========================================================================


@dataclass(frozen=True)
class Recipient:
    """A disperse payment recipient as collected from the user.

    Exactly one of ``address`` or ``username`` is set.
    """

    amount: Decimal | None
    address: str | None = None
    username: str | None = None

    @property
    def target(self) -> str:
        return self.address or self.username or ""


@dataclass(frozen=True)
class PayMessage:
    """Canonical single payment.

    Attributes:
        to_address: Recipient address, or ZERO_ADDRESS when paying a username.
        to_identity: Hashed username as a decimal string, or "".
        token: Token contract address (ZERO_ADDRESS for the native coin).
        amount: Amount in base units.
        priority_fee: Priority fee in base units.
        nonce: Selected nonce.
        priority: True for "high" (synchronous), False for "low".
        executor: Executor address, ZERO_ADDRESS by default.
    """

    message_type: ClassVar[MessageType] = MessageType.PAY

    to_address: str
    to_identity: str
    token: str
    amount: int
    priority_fee: int
    nonce: int
    priority: bool
    executor: str

    def as_tuple(self) -> tuple[Any, ...]:
        """The ordered on-chain tuple."""
        return (
            PAY_OPCODE,
            PAY_OPNAME,
            self.to_address,
            self.token,
            self.amount,
            self.priority_fee,
            self.nonce,
            self.priority,
            self.executor,
        )

    def to_message(self) -> dict[str, Any]:
        return {
            "opcode": PAY_OPCODE,
            "opname": PAY_OPNAME,
            "to_address": self.to_address,
            "to_identity": self.to_identity,
            "token": self.token,
            "amount": self.amount,
            "priorityFee": self.priority_fee,
            "nonce": self.nonce,
            "priority": self.priority,
            "executor": self.executor,
        }


@dataclass(frozen=True)
class DisperseEntry:
    """One resolved recipient inside a DispersePayMessage."""

    address: str
    username: str
    amount: int

    def to_message(self) -> dict[str, Any]:
        return {"address": self.address, "username": self.username, "amount": self.amount}


@dataclass(frozen=True)
class DispersePayMessage:
    """Canonical disperse (batch) payment."""

    message_type: ClassVar[MessageType] = MessageType.DISPERSE_PAYMENT

    network: str
    recipients: tuple[DisperseEntry, ...]
    token_address: str
    total_amount: int
    priority_fee: int
    nonce: int
    priority: str
    executor_address: str
    timestamp: int

    def to_message(self) -> dict[str, Any]:
        return {
            "type": self.message_type.value,
            "network": self.network,
            "recipients": [r.to_message() for r in self.recipients],
            "tokenAddress": self.token_address,
            "totalAmount": self.total_amount,
            "priorityFee": self.priority_fee,
            "nonce": self.nonce,
            "priority": self.priority,
            "executorAddress": self.executor_address,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class StakingMessage:
    """Canonical public staking action."""

    message_type: ClassVar[MessageType] = MessageType.PUBLIC_STAKING

    network: str
    action: str
    staking_address: str
    amount: int
    nonce: int
    priority_fee: int
    priority: str
    timestamp: int

    def to_message(self) -> dict[str, Any]:
        return {
            "type": self.message_type.value,
            "network": self.network,
            "action": self.action,
            "stakingAddress": self.staking_address,
            "amount": self.amount,
            "nonce": self.nonce,
            "priorityFee": self.priority_fee,
            "priority": self.priority,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class PresaleStakingMessage(StakingMessage):
    """Canonical presale staking action, carrying the staking-domain nonce."""

    message_type: ClassVar[MessageType] = MessageType.PRESALE_STAKING

    staking_nonce: int

    def to_message(self) -> dict[str, Any]:
        message = super().to_message()
        message["stakingNonce"] = self.staking_nonce
        return message


SignableMessage = PayMessage | DispersePayMessage | StakingMessage | PresaleStakingMessage


# =========================================================================
# Builders
# =========================================================================


def build_pay_message(
    *,
    to_address: str | None = None,
    to_username: str | None = None,
    token: str | None = None,
    amount: Any = None,
    priority_fee: Any = None,
    nonce: int | None = None,
    priority: str | None = None,
    executor: str | None = None,
) -> PayMessage:
    """Build the canonical single payment.

    Required, in order: recipient (to_address or to_username), token,
    amount, priority_fee, nonce, priority.

    Raises:
        MissingParameter: First absent required field.
        ValueError: Both recipient forms given, or a malformed value.
    """
    if _is_absent(to_address) and _is_absent(to_username):
        raise MissingParameter("recipient")
    _require(
        [
            ("token", token),
            ("amount", amount),
            ("priority_fee", priority_fee),
            ("nonce", nonce),
            ("priority", priority),
        ]
    )

    address_slot, identity_slot = _resolve_target(to_address, to_username)
    return PayMessage(
        to_address=address_slot,
        to_identity=identity_slot,
        token=to_checksum_address(token),  # type: ignore[arg-type]
        amount=to_base_units(amount),
        priority_fee=to_base_units(priority_fee),
        nonce=int(nonce),  # type: ignore[arg-type]
        priority=_priority(priority) == "high",  # type: ignore[arg-type]
        executor=to_checksum_address(executor) if executor else ZERO_ADDRESS,
    )


def build_disperse_pay_message(
    *,
    recipients: Sequence[Recipient] | None = None,
    token_address: str | None = None,
    total_amount: Any = None,
    priority_fee: Any = None,
    nonce: int | None = None,
    priority: str | None = None,
    network: str | None = None,
    executor_address: str | None = None,
    timestamp: int | None = None,
    now_fn: Callable[[], int] | None = None,
) -> DispersePayMessage:
    """Build the canonical disperse payment.

    Required, in order: recipients, token_address, total_amount,
    priority_fee, nonce, priority, network; then each recipient's target
    and amount.

    Once the tolerance check passes, the signed ``totalAmount`` is the
    exact sum of the entry amounts, never the declared total.

    Raises:
        MissingParameter: First absent required field.
        AmountMismatch: total_amount differs from the sum of recipient
            amounts beyond the 1e-6 tolerance.
        ValueError: A recipient has both address and username, or a
            malformed value.
    """
    _require(
        [
            ("recipients", recipients),
            ("token_address", token_address),
            ("total_amount", total_amount),
            ("priority_fee", priority_fee),
            ("nonce", nonce),
            ("priority", priority),
            ("network", network),
        ]
    )
    recipients = list(recipients or ())

    for index, recipient in enumerate(recipients):
        if _is_absent(recipient.address) and _is_absent(recipient.username):
            raise MissingParameter(f"recipients[{index}].address")
        if _is_absent(recipient.amount):
            raise MissingParameter(f"recipients[{index}].amount")

    if not amounts_match(total_amount, [r.amount for r in recipients]):
        raise AmountMismatch(
            f"total amount {total_amount} does not match the sum of recipient amounts"
        )

    entries = []
    for recipient in recipients:
        address_slot, identity_slot = _resolve_target(recipient.address, recipient.username)
        entries.append(
            DisperseEntry(
                address=address_slot,
                username=identity_slot,
                amount=to_base_units(recipient.amount),
            )
        )
    total = sum(entry.amount for entry in entries)
    if total > MAX_UINT256:
        raise ValueError("sum of recipient amounts does not fit in uint256")

    return DispersePayMessage(
        network=network,  # type: ignore[arg-type]
        recipients=tuple(entries),
        token_address=to_checksum_address(token_address),  # type: ignore[arg-type]
        total_amount=total,
        priority_fee=to_base_units(priority_fee),
        nonce=int(nonce),  # type: ignore[arg-type]
        priority=_priority(priority),  # type: ignore[arg-type]
        executor_address=(
            to_checksum_address(executor_address) if executor_address else ZERO_ADDRESS
        ),
        timestamp=timestamp if timestamp is not None else (now_fn or _now_seconds)(),
    )


def build_public_staking_message(
    *,
    action: str | None = None,
    staking_address: str | None = None,
    amount: Any = None,
    nonce: int | None = None,
    priority_fee: Any = None,
    priority: str | None = None,
    network: str | None = None,
    timestamp: int | None = None,
    now_fn: Callable[[], int] | None = None,
) -> StakingMessage:
    """Build the canonical public staking message.

    Required, in order: action, staking_address, amount, nonce,
    priority_fee, priority, network.
    """
    _require(
        [
            ("action", action),
            ("staking_address", staking_address),
            ("amount", amount),
            ("nonce", nonce),
            ("priority_fee", priority_fee),
            ("priority", priority),
            ("network", network),
        ]
    )
    return StakingMessage(
        network=network,  # type: ignore[arg-type]
        action=_action(action),  # type: ignore[arg-type]
        staking_address=to_checksum_address(staking_address),  # type: ignore[arg-type]
        amount=to_base_units(amount),
        nonce=int(nonce),  # type: ignore[arg-type]
        priority_fee=to_base_units(priority_fee),
        priority=_priority(priority),  # type: ignore[arg-type]
        timestamp=timestamp if timestamp is not None else (now_fn or _now_seconds)(),
    )


def build_presale_staking_message(
    *,
    action: str | None = None,
    staking_address: str | None = None,
    amount: Any = None,
    nonce: int | None = None,
    staking_nonce: int | None = None,
    priority_fee: Any = None,
    priority: str | None = None,
    network: str | None = None,
    timestamp: int | None = None,
    now_fn: Callable[[], int] | None = None,
) -> PresaleStakingMessage:
    """Build the canonical presale staking message.

    Presale staking needs two independent nonces: ``nonce`` in the ledger
    domain and ``staking_nonce`` in the staking domain.

    Required, in order: action, staking_address, amount, nonce,
    staking_nonce, priority_fee, priority, network.
    """
    _require(
        [
            ("action", action),
            ("staking_address", staking_address),
            ("amount", amount),
            ("nonce", nonce),
            ("staking_nonce", staking_nonce),
            ("priority_fee", priority_fee),
            ("priority", priority),
            ("network", network),
        ]
    )
    return PresaleStakingMessage(
        network=network,  # type: ignore[arg-type]
        action=_action(action),  # type: ignore[arg-type]
        staking_address=to_checksum_address(staking_address),  # type: ignore[arg-type]
        amount=to_base_units(amount),
        nonce=int(nonce),  # type: ignore[arg-type]
        priority_fee=to_base_units(priority_fee),
        priority=_priority(priority),  # type: ignore[arg-type]
        timestamp=timestamp if timestamp is not None else (now_fn or _now_seconds)(),
        staking_nonce=int(staking_nonce),  # type: ignore[arg-type]
    )


def build_dual_presale_staking_messages(
    *,
    nonce: int | None = None,
    staking_nonce: int | None = None,
    timestamp: int | None = None,
    now_fn: Callable[[], int] | None = None,
    **fields: Any,
) -> tuple[PresaleStakingMessage, PresaleStakingMessage]:
    """Build the ledger-domain and staking-domain presale messages.

    The builder runs twice, once per nonce. Both messages share every
    other field, including one timestamp.

    Returns:
        (ledger_message, staking_message)
    """
    ts = timestamp if timestamp is not None else (now_fn or _now_seconds)()
    ledger_message = build_presale_staking_message(
        nonce=nonce, staking_nonce=staking_nonce, timestamp=ts, **fields
    )
    staking_message = build_presale_staking_message(
        nonce=staking_nonce, staking_nonce=staking_nonce, timestamp=ts, **fields
    )
    return ledger_message, staking_message
