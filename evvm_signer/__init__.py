"""
evvm-signer: guided construction and EIP-712 signing of EVVM messages.

Every signature is tied to:
- a validated, step-by-step collected operation
- a nonce chosen by priority (ledger-sequential or random)
- a canonical message with fixed field order
- a typed-data domain naming the chain and contract

Nothing is broadcast. Signatures are returned to the caller.
"""

__version__ = "0.1.0"

from evvm_signer.config import Settings, load_settings
from evvm_signer.engine import SignatureEngine, SignatureRecord, SignResult, StepResult
from evvm_signer.errors import (
    AmountMismatch,
    EngineError,
    ErrorCode,
    InvalidInput,
    MissingParameter,
    NonceGenerationFailed,
    NonceQueryFailed,
    PreconditionFailed,
    SigningFailed,
    ValidationError,
)
from evvm_signer.identity import hash_recipients, hash_username
from evvm_signer.logging_config import setup_logging
from evvm_signer.messages import (
    ZERO_ADDRESS,
    DispersePayMessage,
    PayMessage,
    PresaleStakingMessage,
    Recipient,
    StakingMessage,
    build_disperse_pay_message,
    build_dual_presale_staking_messages,
    build_pay_message,
    build_presale_staking_message,
    build_public_staking_message,
)
from evvm_signer.nonce import NonceSelector, NonceSource, SelectedNonce
from evvm_signer.operations import Operation, OperationKind, Step
from evvm_signer.session import InMemorySessionStore, Session, SessionStore
from evvm_signer.typed_data import (
    LocalAccountSigner,
    TypedDataEnvelope,
    TypedDataSigner,
    build_domain,
    build_envelope,
    recover_signer,
    sign_envelope,
    verify_envelope,
)

__all__ = [
    "ZERO_ADDRESS",
    "AmountMismatch",
    "DispersePayMessage",
    "EngineError",
    "ErrorCode",
    "InMemorySessionStore",
    "InvalidInput",
    "LocalAccountSigner",
    "MissingParameter",
    "NonceGenerationFailed",
    "NonceQueryFailed",
    "NonceSelector",
    "NonceSource",
    "Operation",
    "OperationKind",
    "PayMessage",
    "PreconditionFailed",
    "PresaleStakingMessage",
    "Recipient",
    "SelectedNonce",
    "Session",
    "SessionStore",
    "Settings",
    "SignResult",
    "SignatureEngine",
    "SignatureRecord",
    "SigningFailed",
    "StakingMessage",
    "Step",
    "StepResult",
    "TypedDataEnvelope",
    "TypedDataSigner",
    "ValidationError",
    "build_disperse_pay_message",
    "build_domain",
    "build_dual_presale_staking_messages",
    "build_envelope",
    "build_pay_message",
    "build_presale_staking_message",
    "build_public_staking_message",
    "hash_recipients",
    "hash_username",
    "load_settings",
    "recover_signer",
    "setup_logging",
    "sign_envelope",
    "verify_envelope",
]
