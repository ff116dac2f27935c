"""
EIP-712 typed-data envelopes: build, sign, verify.

An envelope is built fresh for every signing call from a canonical
message (messages.py) and a domain, and is never persisted. The domain
binds a signature to one EVVM deployment:

    {name: "EVVM Signature Constructor", version: "1",
     chainId, verifyingContract}

Signing and recovery delegate to eth_account. Private keys cross this
module only as arguments and are never logged or stored.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import jsonschema  # type: ignore[import-untyped]
from eth_account import Account
from eth_account.messages import encode_typed_data

from evvm_signer.config import NETWORK_CHAIN_IDS
from evvm_signer.errors import SigningFailed
from evvm_signer.messages import (
    DispersePayMessage,
    MessageType,
    PayMessage,
    PresaleStakingMessage,
    SignableMessage,
    StakingMessage,
)

logger = logging.getLogger(__name__)

DOMAIN_NAME = "EVVM Signature Constructor"
DOMAIN_VERSION = "1"
PRIMARY_TYPE = "Message"
SIGNATURE_LENGTH = 65

EIP712_DOMAIN_FIELDS: list[dict[str, str]] = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]


# =========================================================================
# Schemas (field order must match messages.*.to_message)
# =========================================================================

PAY_FIELDS: list[dict[str, str]] = [
    {"name": "opcode", "type": "uint256"},
    {"name": "opname", "type": "string"},
    {"name": "to_address", "type": "address"},
    {"name": "to_identity", "type": "string"},
    {"name": "token", "type": "address"},
    {"name": "amount", "type": "uint256"},
    {"name": "priorityFee", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
    {"name": "priority", "type": "bool"},
    {"name": "executor", "type": "address"},
]

RECIPIENT_FIELDS: list[dict[str, str]] = [
    {"name": "address", "type": "address"},
    {"name": "username", "type": "string"},
    {"name": "amount", "type": "uint256"},
]

DISPERSE_FIELDS: list[dict[str, str]] = [
    {"name": "type", "type": "string"},
    {"name": "network", "type": "string"},
    {"name": "recipients", "type": "Recipient[]"},
    {"name": "tokenAddress", "type": "address"},
    {"name": "totalAmount", "type": "uint256"},
    {"name": "priorityFee", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
    {"name": "priority", "type": "string"},
    {"name": "executorAddress", "type": "address"},
    {"name": "timestamp", "type": "uint256"},
]

STAKING_FIELDS: list[dict[str, str]] = [
    {"name": "type", "type": "string"},
    {"name": "network", "type": "string"},
    {"name": "action", "type": "string"},
    {"name": "stakingAddress", "type": "address"},
    {"name": "amount", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
    {"name": "priorityFee", "type": "uint256"},
    {"name": "priority", "type": "string"},
    {"name": "timestamp", "type": "uint256"},
]

PRESALE_STAKING_FIELDS: list[dict[str, str]] = STAKING_FIELDS + [
    {"name": "stakingNonce", "type": "uint256"},
]

MESSAGE_TYPES: dict[MessageType, dict[str, list[dict[str, str]]]] = {
    MessageType.PAY: {PRIMARY_TYPE: PAY_FIELDS},
    MessageType.DISPERSE_PAYMENT: {
        "Recipient": RECIPIENT_FIELDS,
        PRIMARY_TYPE: DISPERSE_FIELDS,
    },
    MessageType.PUBLIC_STAKING: {PRIMARY_TYPE: STAKING_FIELDS},
    MessageType.PRESALE_STAKING: {PRIMARY_TYPE: PRESALE_STAKING_FIELDS},
}

# Structural shape of a serialized envelope, checked by from_dict().
ENVELOPE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["types", "primaryType", "domain", "message"],
    "properties": {
        "types": {
            "type": "object",
            "required": ["EIP712Domain"],
            "additionalProperties": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["name", "type"],
                    "properties": {
                        "name": {"type": "string"},
                        "type": {"type": "string"},
                    },
                },
            },
        },
        "primaryType": {"type": "string", "minLength": 1},
        "domain": {
            "type": "object",
            "required": ["name", "version", "chainId", "verifyingContract"],
            "properties": {
                "name": {"type": "string"},
                "version": {"type": "string"},
                "chainId": {"type": "integer", "minimum": 1},
                "verifyingContract": {"type": "string", "pattern": "^0x[0-9a-fA-F]{40}$"},
            },
        },
        "message": {"type": "object"},
    },
}


# =========================================================================
# Envelope
# =========================================================================


@dataclass(frozen=True)
class TypedDataEnvelope:
    """An EIP-712 typed-data payload ready for signing."""

    domain: dict[str, Any]
    types: dict[str, list[dict[str, str]]]
    primary_type: str
    message: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        """The ``full_message`` form accepted by eth_account."""
        return {
            "types": {"EIP712Domain": copy.deepcopy(EIP712_DOMAIN_FIELDS), **copy.deepcopy(self.types)},
            "primaryType": self.primary_type,
            "domain": copy.deepcopy(self.domain),
            "message": copy.deepcopy(self.message),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TypedDataEnvelope:
        """Rebuild an envelope from its ``to_dict()`` form.

        Raises:
            jsonschema.ValidationError: If the structure is malformed.
        """
        jsonschema.validate(instance=dict(data), schema=ENVELOPE_SCHEMA)
        types = {k: copy.deepcopy(v) for k, v in data["types"].items() if k != "EIP712Domain"}
        return cls(
            domain=copy.deepcopy(data["domain"]),
            types=types,
            primary_type=data["primaryType"],
            message=copy.deepcopy(data["message"]),
        )


@dataclass(frozen=True)
class SignatureParts:
    """A 65-byte signature split into r, s and v."""

    r: str
    s: str
    v: int
    full: str = field(repr=False)


def build_domain(
    network: str,
    contract_address: str,
    chain_ids: Mapping[str, int] | None = None,
) -> dict[str, Any]:
    """Build the EIP-712 domain for a network and contract.

    Raises:
        ValueError: If the network has no known chain id.
    """
    chains = NETWORK_CHAIN_IDS if chain_ids is None else chain_ids
    if network not in chains:
        raise ValueError(f"unsupported network: {network}")
    return {
        "name": DOMAIN_NAME,
        "version": DOMAIN_VERSION,
        "chainId": chains[network],
        "verifyingContract": contract_address,
    }


def build_envelope(message: SignableMessage, domain: Mapping[str, Any]) -> TypedDataEnvelope:
    """Wrap a canonical message in the typed-data envelope for its variant."""
    if not isinstance(
        message, (PayMessage, DispersePayMessage, StakingMessage, PresaleStakingMessage)
    ):
        raise TypeError(f"not a signable message: {type(message).__name__}")
    return TypedDataEnvelope(
        domain=dict(domain),
        types=copy.deepcopy(MESSAGE_TYPES[message.message_type]),
        primary_type=PRIMARY_TYPE,
        message=message.to_message(),
    )


# =========================================================================
# Signing and recovery
# =========================================================================


def sign_envelope(envelope: TypedDataEnvelope, private_key: str | bytes) -> bytes:
    """Sign an envelope and return the 65-byte r||s||v signature.

    Raises:
        SigningFailed: If the key is unusable or the envelope cannot be
            encoded. The key itself never appears in the error.
    """
    try:
        signed = Account.sign_typed_data(private_key, full_message=envelope.to_dict())
    except Exception as exc:
        logger.warning("typed-data signing failed: %s", type(exc).__name__)
        raise SigningFailed(f"signing failed: {type(exc).__name__}") from exc
    return bytes(signed.signature)


def recover_signer(envelope: TypedDataEnvelope, signature: bytes | str) -> str:
    """Recover the checksummed address that produced ``signature``."""
    signable = encode_typed_data(full_message=envelope.to_dict())
    return Account.recover_message(signable, signature=signature)


def verify_envelope(
    envelope: TypedDataEnvelope,
    signature: bytes | str,
    expected_address: str,
) -> bool:
    """True if ``signature`` over ``envelope`` recovers to ``expected_address``.

    Never raises. Malformed signatures or envelopes verify as False.
    """
    try:
        return recover_signer(envelope, signature).lower() == expected_address.lower()
    except Exception as exc:
        logger.debug("signature verification failed: %s", exc)
        return False


def signature_hex(signature: bytes) -> str:
    return "0x" + signature.hex()


def split_signature(signature: bytes | str) -> SignatureParts:
    """Split a 65-byte signature into its r, s and v components.

    Raises:
        ValueError: If the signature is not 65 bytes.
    """
    full = signature if isinstance(signature, str) else signature_hex(signature)
    if not full.startswith("0x"):
        full = "0x" + full
    if len(full) != 2 + SIGNATURE_LENGTH * 2:
        raise ValueError(f"signature must be {SIGNATURE_LENGTH} bytes")
    return SignatureParts(
        r=full[0:66],
        s="0x" + full[66:130],
        v=int(full[130:132], 16),
        full=full,
    )


# =========================================================================
# Signer boundary
# =========================================================================


@runtime_checkable
class TypedDataSigner(Protocol):
    """Holds key material and signs envelopes on its behalf."""

    @property
    def address(self) -> str:
        ...

    def sign_typed_data(self, envelope: TypedDataEnvelope) -> bytes:
        ...

    def recover(self, envelope: TypedDataEnvelope, signature: bytes | str) -> str:
        ...


class LocalAccountSigner:
    """TypedDataSigner backed by an in-process eth_account key.

    Raises:
        SigningFailed: At construction if the key is unusable.
    """

    def __init__(self, private_key: str | bytes) -> None:
        try:
            self._account = Account.from_key(private_key)
        except Exception as exc:
            raise SigningFailed(f"invalid private key: {type(exc).__name__}") from exc

    def __repr__(self) -> str:
        return f"LocalAccountSigner(address={self.address!r})"

    @property
    def address(self) -> str:
        return str(self._account.address)

    def sign_typed_data(self, envelope: TypedDataEnvelope) -> bytes:
        return sign_envelope(envelope, self._account.key)

    def recover(self, envelope: TypedDataEnvelope, signature: bytes | str) -> str:
        return recover_signer(envelope, signature)
