"""
Signature engine: the facade a chat or HTTP transport talks to.

Each entry point takes a session id plus the user's input and returns a
result object. Library errors are caught here and turned into results
with a stable error code, so no user input can crash the host.

Usage:
    engine = SignatureEngine(ledger=JsonRpcLedgerClient(settings.rpc_urls))

    engine.connect_wallet("user-1", private_key)
    engine.set_contract_address("user-1", "0x...")
    engine.start_operation("user-1", "single_payment")
    engine.select_option("user-1", "address")
    engine.submit_step_input("user-1", "0x...")
    ...
    result = await engine.confirm_and_sign("user-1")
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

from eth_account import Account

from evvm_signer.canonical_json import canonical_json_bytes
from evvm_signer.config import Settings
from evvm_signer.errors import EngineError, ErrorCode, PreconditionFailed, classify_error
from evvm_signer.identity import hash_recipients
from evvm_signer.integrity import prefixed_digest
from evvm_signer.ledger.client import LedgerClient
from evvm_signer.ledger.jsonrpc_client import JsonRpcLedgerClient
from evvm_signer.ledger.transport import HttpxTransport
from evvm_signer.messages import (
    SignableMessage,
    build_disperse_pay_message,
    build_dual_presale_staking_messages,
    build_pay_message,
    build_presale_staking_message,
    build_public_staking_message,
)
from evvm_signer.nonce import NonceSelector, RandomSource, SelectedNonce
from evvm_signer.operations import (
    BUTTON_STEPS,
    CompleteDispersePayment,
    CompleteOperation,
    CompletePresaleStaking,
    CompletePublicStaking,
    CompleteSinglePayment,
    Operation,
    OperationKind,
    Step,
)
from evvm_signer.session import (
    InMemorySessionStore,
    Session,
    SessionStats,
    SessionStore,
    SignerIdentity,
    run_eviction_loop,
)
from evvm_signer.typed_data import (
    LocalAccountSigner,
    build_domain,
    build_envelope,
    signature_hex,
    split_signature,
)
from evvm_signer.validation import validate_address, validate_network, validate_private_key

logger = logging.getLogger(__name__)

OPERATION_HINT = "Start one of: " + ", ".join(k.value for k in OperationKind) + "."
NO_OPERATION_GUIDANCE = "No active operation. " + OPERATION_HINT


# =========================================================================
# Results
# =========================================================================


@dataclass(frozen=True)
class StepResult:
    """Outcome of one state-machine interaction.

    On success ``prompt`` is the next thing to show the user. On failure
    ``error`` explains why and ``prompt`` repeats the current step, if any.
    """

    success: bool
    prompt: str | None = None
    step: str | None = None
    choices: tuple[str, ...] = ()
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.prompt is not None:
            result["prompt"] = self.prompt
        if self.step is not None:
            result["step"] = self.step
        if self.choices:
            result["choices"] = list(self.choices)
        if not self.success:
            result["error"] = self.error
            result["error_code"] = self.error_code
        return result


@dataclass(frozen=True)
class SignatureRecord:
    """One signed envelope."""

    domain: str
    envelope: dict[str, Any]
    message: dict[str, Any]
    signature: str
    r: str
    s: str
    v: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "envelope": self.envelope,
            "message": self.message,
            "signature": self.signature,
            "r": self.r,
            "s": self.s,
            "v": self.v,
        }


@dataclass(frozen=True)
class SignResult:
    """Outcome of confirm_and_sign.

    Attributes:
        success: Whether every required signature was produced.
        kind: Operation kind that was signed.
        signer: Address of the signing key.
        signatures: One record per signed message (two for dual presale).
        nonce: Selected ledger-domain nonce.
        nonce_source: "ledger" or "random".
        message_digest: sha256 over the canonical JSON of the messages.
        recipients_digest: Recipient list fingerprint (disperse only).
        error: Failure reason.
        error_code: Stable ErrorCode value.
        retryable: True if the operation is still at confirm and the
            user may simply confirm again.
    """

    success: bool
    kind: str | None = None
    signer: str | None = None
    signatures: tuple[SignatureRecord, ...] = ()
    nonce: int | None = None
    nonce_source: str | None = None
    message_digest: str | None = None
    recipients_digest: str | None = None
    error: str | None = None
    error_code: str | None = None
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            return {
                "success": False,
                "error": self.error,
                "error_code": self.error_code,
                "retryable": self.retryable,
            }
        result: dict[str, Any] = {
            "success": True,
            "kind": self.kind,
            "signer": self.signer,
            "signatures": [s.to_dict() for s in self.signatures],
            "nonce": self.nonce,
            "nonce_source": self.nonce_source,
            "message_digest": self.message_digest,
        }
        if self.recipients_digest is not None:
            result["recipients_digest"] = self.recipients_digest
        return result


# =========================================================================
# Engine
# =========================================================================


class SignatureEngine:
    """
    Guided construction and signing of EVVM typed-data messages.

    Args:
        ledger: Ledger client for sequential nonces. Defaults to a
            JsonRpcLedgerClient over settings.rpc_urls.
        settings: Runtime settings. Defaults to Settings().
        store: Session store. Defaults to InMemorySessionStore.
        random_source: Random source for asynchronous nonces.
        clock: Wall clock for session activity, seconds as float.
        now_fn: Clock for message timestamps, integer seconds.
    """

    def __init__(
        self,
        ledger: LedgerClient | None = None,
        *,
        settings: Settings | None = None,
        store: SessionStore | None = None,
        random_source: RandomSource | None = None,
        clock: Callable[[], float] = time.time,
        now_fn: Callable[[], int] | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self._clock = clock
        self._now_fn = now_fn or (lambda: int(self._clock()))
        if store is None:
            store = InMemorySessionStore(
                default_network=self.settings.default_network,
                max_idle=self.settings.session_max_idle,
                clock=clock,
            )
        self.store: SessionStore = store
        if ledger is None:
            ledger = JsonRpcLedgerClient(
                self.settings.rpc_urls,
                transport=HttpxTransport(timeout=self.settings.rpc_timeout),
            )
        self._nonces = NonceSelector(ledger, random_source)

    def _session(self, session_id: str) -> Session:
        session = self.store.get_or_create(session_id)
        session.touch(self._clock())
        return session

    def _prompt(self, operation: Operation) -> StepResult:
        return StepResult(
            success=True,
            prompt=operation.draft.prompt(),
            step=operation.step.value,
            choices=operation.draft.choices(),
        )

    def _reprompt(self, operation: Operation, error: str, code: ErrorCode | str) -> StepResult:
        return StepResult(
            success=False,
            prompt=operation.draft.prompt(),
            step=operation.step.value,
            choices=operation.draft.choices(),
            error=error,
            error_code=str(code),
        )

    # -----------------------------------------------------------------
    # Operation flow
    # -----------------------------------------------------------------

    def start_operation(self, session_id: str, kind: str | OperationKind) -> StepResult:
        """Begin a new operation, replacing any in-flight one."""
        try:
            op_kind = OperationKind(kind)
        except ValueError:
            return StepResult(
                success=False,
                error=f"Unknown operation {kind!r}. {OPERATION_HINT}",
                error_code=ErrorCode.VALIDATION.value,
            )

        session = self._session(session_id)
        if session.operation is not None:
            logger.info(
                "session %s replaced %s with %s", session_id, session.operation.kind, op_kind
            )
        operation = Operation.start(op_kind, self._clock())
        session.operation = operation
        self.store.save(session)
        logger.info("session %s started %s", session_id, op_kind)
        return self._prompt(operation)

    def submit_step_input(self, session_id: str, raw_text: str) -> StepResult:
        """Feed free-text input to the current step."""
        session = self._session(session_id)
        operation = session.operation
        if operation is None:
            return StepResult(
                success=False,
                error=NO_OPERATION_GUIDANCE,
                error_code=ErrorCode.NO_OPERATION.value,
            )
        step = operation.step
        if step is Step.CONFIRM:
            return self._reprompt(
                operation,
                "Please confirm to sign, or cancel the operation.",
                ErrorCode.UNEXPECTED_INPUT,
            )
        if step in BUTTON_STEPS:
            return self._reprompt(
                operation,
                "Please choose one of the options: " + ", ".join(operation.draft.choices()) + ".",
                ErrorCode.UNEXPECTED_INPUT,
            )
        return self._accept(session, operation, step, raw_text)

    def select_option(self, session_id: str, choice: str) -> StepResult:
        """Apply a button selection to the current step."""
        session = self._session(session_id)
        operation = session.operation
        if operation is None:
            return StepResult(
                success=False,
                error=NO_OPERATION_GUIDANCE,
                error_code=ErrorCode.NO_OPERATION.value,
            )
        step = operation.step
        if step not in BUTTON_STEPS:
            return self._reprompt(
                operation,
                "This step expects typed input, not an option.",
                ErrorCode.UNEXPECTED_INPUT,
            )
        return self._accept(session, operation, step, choice)

    def _accept(self, session: Session, operation: Operation, step: Step, raw: Any) -> StepResult:
        try:
            result = operation.draft.accept(step, raw)
        except EngineError as e:
            return self._reprompt(operation, e.message, e.code)
        if not result.ok:
            return self._reprompt(operation, result.reason or "Invalid input.", ErrorCode.VALIDATION)
        self.store.save(session)
        logger.debug("session %s %s accepted %s", session.session_id, operation.kind, step)
        return self._prompt(operation)

    def cancel_operation(self, session_id: str) -> StepResult:
        """Abort the in-flight operation, if any."""
        session = self._session(session_id)
        if session.operation is None:
            return StepResult(success=True, prompt="No active operation to cancel.")
        logger.info("session %s cancelled %s", session_id, session.operation.kind)
        session.clear_operation()
        self.store.save(session)
        return StepResult(success=True, prompt="Operation cancelled.")

    async def confirm_and_sign(
        self,
        session_id: str,
        private_key: str | None = None,
    ) -> SignResult:
        """
        Resolve the nonce, build the message(s), and sign.

        Uses ``private_key`` if given, otherwise the session's connected
        wallet. On success the signed operation is cleared; an operation
        started while the nonce was pending is left in place. On nonce or
        signing failure the operation stays at confirm and the result is
        retryable.
        """
        session = self._session(session_id)
        operation = session.operation
        try:
            if operation is None:
                raise PreconditionFailed(ErrorCode.NO_OPERATION, NO_OPERATION_GUIDANCE)
            if operation.step is not Step.CONFIRM:
                raise PreconditionFailed(
                    ErrorCode.UNEXPECTED_INPUT,
                    f"Operation is not ready to sign (current step: {operation.step.value}).",
                )
            key = private_key or (session.signer.private_key if session.signer else None)
            if not key:
                raise PreconditionFailed(
                    ErrorCode.NO_SIGNER, "No wallet connected. Connect a wallet first."
                )
            if not session.contract_address:
                raise PreconditionFailed(
                    ErrorCode.NO_CONTRACT, "No contract address set. Set the EVVM contract first."
                )

            signer = LocalAccountSigner(key)
            complete = operation.draft.complete()
            selected = await self._nonces.select(
                signer.address, complete.priority, session.network, session.contract_address
            )
            messages = self._build_messages(complete, selected, session.network)
            domain = build_domain(
                session.network,
                session.contract_address,
                {session.network: self.settings.chain_id(session.network)},
            )

            records = []
            for label, message in zip(_domain_labels(len(messages)), messages, strict=True):
                envelope = build_envelope(message, domain)
                signature = signer.sign_typed_data(envelope)
                parts = split_signature(signature)
                records.append(
                    SignatureRecord(
                        domain=label,
                        envelope=envelope.to_dict(),
                        message=envelope.message,
                        signature=signature_hex(signature),
                        r=parts.r,
                        s=parts.s,
                        v=parts.v,
                    )
                )
        except EngineError as e:
            logger.warning("session %s signing not completed: %s", session_id, e.code)
            return SignResult(
                success=False, error=e.message, error_code=e.code.value, retryable=e.retryable
            )
        except Exception as e:
            logger.exception("session %s unexpected signing error", session_id)
            return SignResult(
                success=False,
                error=f"Unexpected error: {e}",
                error_code=classify_error(e).value,
            )

        recipients_digest = None
        if isinstance(complete, CompleteDispersePayment):
            recipients_digest = str(hash_recipients(complete.recipients))

        # A new operation may have been started while the nonce was pending.
        if session.operation is operation:
            session.clear_operation()
            self.store.save(session)
        logger.info(
            "session %s signed %s (%d signature(s), nonce from %s)",
            session_id,
            operation.kind,
            len(records),
            selected.source,
        )
        return SignResult(
            success=True,
            kind=operation.kind.value,
            signer=signer.address,
            signatures=tuple(records),
            nonce=selected.value,
            nonce_source=selected.source.value,
            message_digest=prefixed_digest(
                canonical_json_bytes([m.to_message() for m in messages])
            ),
            recipients_digest=recipients_digest,
        )

    def _build_messages(
        self,
        complete: CompleteOperation,
        selected: SelectedNonce,
        network: str,
    ) -> list[SignableMessage]:
        if isinstance(complete, CompleteSinglePayment):
            return [
                build_pay_message(
                    to_address=complete.to_address,
                    to_username=complete.to_username,
                    token=complete.token_address,
                    amount=complete.amount,
                    priority_fee=complete.priority_fee,
                    nonce=selected.value,
                    priority=complete.priority,
                )
            ]
        if isinstance(complete, CompleteDispersePayment):
            return [
                build_disperse_pay_message(
                    recipients=complete.recipients,
                    token_address=complete.token_address,
                    total_amount=complete.total_amount,
                    priority_fee=complete.priority_fee,
                    nonce=selected.value,
                    priority=complete.priority,
                    network=network,
                    executor_address=complete.executor_address,
                    now_fn=self._now_fn,
                )
            ]
        if isinstance(complete, CompletePresaleStaking):
            fields = {
                "action": complete.action,
                "staking_address": complete.staking_address,
                "amount": complete.amount,
                "priority_fee": complete.priority_fee,
                "priority": complete.priority,
                "network": network,
                "now_fn": self._now_fn,
            }
            if complete.dual:
                return list(
                    build_dual_presale_staking_messages(
                        nonce=selected.value, staking_nonce=complete.staking_nonce, **fields
                    )
                )
            return [
                build_presale_staking_message(
                    nonce=selected.value, staking_nonce=complete.staking_nonce, **fields
                )
            ]
        if isinstance(complete, CompletePublicStaking):
            return [
                build_public_staking_message(
                    action=complete.action,
                    staking_address=complete.staking_address,
                    amount=complete.amount,
                    nonce=selected.value,
                    priority_fee=complete.priority_fee,
                    priority=complete.priority,
                    network=network,
                    now_fn=self._now_fn,
                )
            ]
        raise TypeError(f"unsupported operation record: {type(complete).__name__}")

    # -----------------------------------------------------------------
    # Session commands
    # -----------------------------------------------------------------

    def connect_wallet(self, session_id: str, private_key: str) -> StepResult:
        """Attach a signing key to the session."""
        result = validate_private_key(private_key)
        if not result.ok:
            return StepResult(
                success=False, error=result.reason, error_code=ErrorCode.VALIDATION.value
            )
        session = self._session(session_id)
        address = Account.from_key(result.value).address
        session.signer = SignerIdentity(address=address, private_key=result.value)
        self.store.save(session)
        logger.info("session %s connected wallet %s", session_id, address)
        return StepResult(success=True, prompt=f"Wallet connected: {address}")

    def disconnect_wallet(self, session_id: str) -> StepResult:
        session = self._session(session_id)
        if session.signer is None:
            return StepResult(success=True, prompt="No wallet connected.")
        session.signer = None
        self.store.save(session)
        logger.info("session %s disconnected wallet", session_id)
        return StepResult(success=True, prompt="Wallet disconnected.")

    def set_network(self, session_id: str, network: str) -> StepResult:
        result = validate_network(network, self.settings.supported_networks)
        if not result.ok:
            return StepResult(
                success=False, error=result.reason, error_code=ErrorCode.VALIDATION.value
            )
        session = self._session(session_id)
        session.network = result.value
        self.store.save(session)
        return StepResult(success=True, prompt=f"Network set to {result.value}.")

    def set_contract_address(self, session_id: str, address: str) -> StepResult:
        result = validate_address(address)
        if not result.ok:
            return StepResult(
                success=False, error=result.reason, error_code=ErrorCode.VALIDATION.value
            )
        session = self._session(session_id)
        session.contract_address = result.value
        self.store.save(session)
        return StepResult(success=True, prompt=f"Contract address set to {result.value}.")

    def status(self, session_id: str) -> dict[str, Any]:
        """Snapshot of a session. Never includes key material."""
        session = self._session(session_id)
        operation = session.operation
        return {
            "session_id": session.session_id,
            "network": session.network,
            "chain_id": self.settings.chain_id(session.network),
            "wallet": session.signer.address if session.signer else None,
            "contract_address": session.contract_address,
            "operation": operation.kind.value if operation else None,
            "step": operation.step.value if operation else None,
        }

    def stats(self) -> SessionStats:
        return self.store.stats()

    def eviction_loop(self, stop: asyncio.Event | None = None) -> Coroutine[Any, Any, None]:
        """Coroutine sweeping idle sessions every settings.sweep_interval."""
        return run_eviction_loop(self.store, self.settings.sweep_interval, stop)


def _domain_labels(count: int) -> tuple[str, ...]:
    return ("ledger", "staking")[:count]
