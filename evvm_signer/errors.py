"""
Error taxonomy for the signature construction engine.

Every failure in this package is an ``EngineError`` subclass carrying a
stable, machine-readable ``ErrorCode``. Library functions raise; the
engine facade (engine.py) catches and returns tagged result objects so
that nothing here is ever fatal to the hosting process.

Categories:
    - user input: ValidationError, InvalidInput. Always recoverable,
      the same step is re-prompted.
    - builder contract: MissingParameter, AmountMismatch. A caller bug.
      Surfaced, never retried.
    - external dependency: NonceQueryFailed, NonceGenerationFailed,
      SigningFailed. Retryable; the operation stays at ``confirm``.
    - session preconditions: PreconditionFailed (no signer, no
      contract address, no active operation).
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error codes exposed to the transport layer."""

    VALIDATION = "VALIDATION"
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_PARAMETER = "MISSING_PARAMETER"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    NONCE_QUERY_FAILED = "NONCE_QUERY_FAILED"
    NONCE_GENERATION_FAILED = "NONCE_GENERATION_FAILED"
    SIGNING_FAILED = "SIGNING_FAILED"
    NO_SIGNER = "NO_SIGNER"
    NO_CONTRACT = "NO_CONTRACT"
    NO_OPERATION = "NO_OPERATION"
    UNEXPECTED_INPUT = "UNEXPECTED_INPUT"
    INTERNAL = "INTERNAL"


# Codes the user can retry without re-entering collected fields.
RETRYABLE_CODES = frozenset(
    {
        ErrorCode.NONCE_QUERY_FAILED,
        ErrorCode.NONCE_GENERATION_FAILED,
        ErrorCode.SIGNING_FAILED,
    }
)


class EngineError(Exception):
    """Base class for all engine failures."""

    code: ErrorCode = ErrorCode.INTERNAL

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES


class ValidationError(EngineError):
    """Bad user input. The state machine re-prompts the same step."""

    code = ErrorCode.VALIDATION


class InvalidInput(ValidationError):
    """The identifier hasher was given an empty or non-string value."""

    code = ErrorCode.INVALID_INPUT


class MissingParameter(EngineError):
    """A message builder was called without a required field."""

    code = ErrorCode.MISSING_PARAMETER

    def __init__(self, field: str) -> None:
        super().__init__(f"missing required parameter: {field}")
        self.field = field


class AmountMismatch(EngineError):
    """Disperse total does not equal the sum of recipient amounts."""

    code = ErrorCode.AMOUNT_MISMATCH


class NonceQueryFailed(EngineError):
    """The ledger could not supply a sequential nonce."""

    code = ErrorCode.NONCE_QUERY_FAILED


class NonceGenerationFailed(EngineError):
    """The random source failed to produce a nonce."""

    code = ErrorCode.NONCE_GENERATION_FAILED


class SigningFailed(EngineError):
    """The signing primitive rejected the key material or the envelope."""

    code = ErrorCode.SIGNING_FAILED


class PreconditionFailed(EngineError):
    """A session precondition does not hold (signer, contract, operation)."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code


def classify_error(exc: BaseException) -> ErrorCode:
    """Map any exception to an ErrorCode.

    Engine errors carry their own code. Anything else is INTERNAL rather
    than a guess.
    """
    if isinstance(exc, EngineError):
        return exc.code
    return ErrorCode.INTERNAL
