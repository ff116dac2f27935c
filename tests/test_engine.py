"""
End-to-end tests for SignatureEngine with fake collaborators.

Test plan:
- Single payment: address recipient, low priority, canonical fields,
  signature recovers to the wallet, operation cleared
- Disperse: username + address recipients, total tolerance, mismatch
  reported, high priority uses the ledger once
- Presale staking: dual mode yields ledger and staking signatures
- Input discipline: free text at button steps, options at text steps,
  invalid values, input at confirm
- Cancel clears the operation; later input gets guidance
- Preconditions: no wallet, no contract, not at confirm
- Retryable failures keep the operation at confirm
- A confirm in flight never clears an operation started meanwhile
- Oversized amounts are rejected at their step; long amounts sign exactly
- Session commands: wallet, network, contract, status, stats
"""

import asyncio
from typing import Any

import pytest

from evvm_signer.config import Settings
from evvm_signer.engine import SignatureEngine, SignResult, StepResult
from evvm_signer.identity import hash_username
from evvm_signer.ledger.client import LedgerRpcError
from evvm_signer.messages import ZERO_ADDRESS
from evvm_signer.operations import BUTTON_STEPS, Step
from evvm_signer.typed_data import TypedDataEnvelope, recover_signer, verify_envelope

KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
OTHER_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
OTHER_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
CONTRACT = "0x" + "1" * 40
RECIPIENT = "0x" + "a" * 40
STAKING = "0x" + "c" * 40
WEI = 10**18
SID = "user-1"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeLedger:
    """Serves canned results in order; exceptions are raised."""

    def __init__(self, *results: object) -> None:
        self._results = list(results) or [0]
        self.calls: list[tuple[str, str, str]] = []

    async def get_next_sync_nonce(self, address: str, network: str, contract_address: str) -> int:
        self.calls.append((address, network, contract_address))
        result = self._results[min(len(self.calls), len(self._results)) - 1]
        if isinstance(result, Exception):
            raise result
        return result  # type: ignore[return-value]


class GatedLedger:
    """Holds every nonce query until released."""

    def __init__(self, nonce: int = 9) -> None:
        self.nonce = nonce
        self.called = asyncio.Event()
        self.release = asyncio.Event()

    async def get_next_sync_nonce(self, address: str, network: str, contract_address: str) -> int:
        self.called.set()
        await self.release.wait()
        return self.nonce


class FakeRandom:
    def __init__(self, value: int = 555) -> None:
        self.value = value
        self.calls = 0

    def random_uint64(self) -> int:
        self.calls += 1
        return self.value


class Clock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


def make_engine(ledger: FakeLedger | None = None, rng: FakeRandom | None = None) -> SignatureEngine:
    return SignatureEngine(
        ledger or FakeLedger(),
        random_source=rng or FakeRandom(),
        clock=Clock(),
    )


def ready_engine(ledger: FakeLedger | None = None, rng: FakeRandom | None = None) -> SignatureEngine:
    engine = make_engine(ledger, rng)
    assert engine.connect_wallet(SID, KEY).success
    assert engine.set_contract_address(SID, CONTRACT).success
    return engine


def answer(engine: SignatureEngine, raw: str) -> StepResult:
    step = engine.status(SID)["step"]
    if Step(step) in BUTTON_STEPS:
        return engine.select_option(SID, raw)
    return engine.submit_step_input(SID, raw)


def answer_all(engine: SignatureEngine, inputs: list[str]) -> StepResult:
    result = StepResult(success=False)
    for raw in inputs:
        result = answer(engine, raw)
        assert result.success, (raw, result.error)
    return result


def single_payment(engine: SignatureEngine, priority: str = "low") -> StepResult:
    engine.start_operation(SID, "single_payment")
    return answer_all(engine, ["address", RECIPIENT, ZERO_ADDRESS, "1.5", "0.01", priority])


def disperse_to_total(engine: SignatureEngine) -> None:
    engine.start_operation(SID, "disperse_payment")
    answer_all(engine, ["2", "username", "bob_123", "2", "address", RECIPIENT, "3", ZERO_ADDRESS])


def envelope_of(result: SignResult, index: int = 0) -> TypedDataEnvelope:
    return TypedDataEnvelope.from_dict(result.signatures[index].envelope)


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestSinglePayment:
    @pytest.mark.asyncio
    async def test_end_to_end(self) -> None:
        ledger, rng = FakeLedger(), FakeRandom(555)
        engine = ready_engine(ledger, rng)
        confirm = single_payment(engine)
        assert confirm.step == "confirm"

        result = await engine.confirm_and_sign(SID)

        assert result.success, result.error
        assert result.kind == "single_payment"
        assert result.signer == ADDRESS
        assert result.nonce == 555
        assert result.nonce_source == "random"
        assert rng.calls == 1
        assert ledger.calls == []

        message = result.signatures[0].message
        assert message["amount"] == 1_500_000_000_000_000_000
        assert message["priorityFee"] == 10**16
        assert message["priority"] is False
        assert message["to_identity"] == ""
        assert message["executor"] == ZERO_ADDRESS
        assert message["nonce"] == 555

        record = result.signatures[0]
        assert recover_signer(envelope_of(result), record.signature) == ADDRESS
        assert record.signature == record.r + record.s[2:] + format(record.v, "02x")
        assert result.message_digest is not None
        assert result.message_digest.startswith("sha256:")
        assert engine.status(SID)["operation"] is None

    @pytest.mark.asyncio
    async def test_domain_follows_session(self) -> None:
        engine = ready_engine()
        engine.set_network(SID, "arbitrum")
        single_payment(engine)
        result = await engine.confirm_and_sign(SID)

        domain = result.signatures[0].envelope["domain"]
        assert domain["chainId"] == 421614
        assert domain["verifyingContract"] == CONTRACT

    @pytest.mark.asyncio
    async def test_explicit_key_overrides_wallet(self) -> None:
        engine = ready_engine()
        single_payment(engine)
        result = await engine.confirm_and_sign(SID, private_key=OTHER_KEY)

        assert result.signer == OTHER_ADDRESS
        assert verify_envelope(envelope_of(result), result.signatures[0].signature, OTHER_ADDRESS)


class TestDispersePayment:
    @pytest.mark.parametrize("total", ["5", "5.000002"])
    def test_total_accepted(self, total: str) -> None:
        engine = ready_engine()
        disperse_to_total(engine)
        result = engine.submit_step_input(SID, total)
        assert result.success
        assert result.step == "priority_fee"

    def test_total_mismatch(self) -> None:
        engine = ready_engine()
        disperse_to_total(engine)
        result = engine.submit_step_input(SID, "6")

        assert not result.success
        assert result.error_code == "AMOUNT_MISMATCH"
        assert result.step == "total_amount"

    @pytest.mark.asyncio
    async def test_signed_total_is_recipient_sum(self) -> None:
        engine = ready_engine()
        disperse_to_total(engine)
        answer_all(engine, ["5.000002", "0", "-", "low"])

        result = await engine.confirm_and_sign(SID)

        assert result.success, result.error
        message = result.signatures[0].message
        assert message["totalAmount"] == 5 * WEI
        assert message["totalAmount"] == sum(r["amount"] for r in message["recipients"])

    @pytest.mark.asyncio
    async def test_high_priority_signs_with_ledger_nonce(self) -> None:
        ledger, rng = FakeLedger(42), FakeRandom()
        engine = ready_engine(ledger, rng)
        disperse_to_total(engine)
        answer_all(engine, ["5", "0", "-", "high"])

        result = await engine.confirm_and_sign(SID)

        assert result.success, result.error
        assert result.nonce == 42
        assert result.nonce_source == "ledger"
        assert ledger.calls == [(ADDRESS, "ethereum", CONTRACT)]
        assert rng.calls == 0
        assert result.recipients_digest is not None

        message = result.signatures[0].message
        assert message["type"] == "disperse_payment"
        assert message["totalAmount"] == 5 * WEI
        assert message["executorAddress"] == ZERO_ADDRESS
        assert message["timestamp"] == 1_700_000_000
        by_user, by_address = message["recipients"]
        assert by_user == {
            "address": ZERO_ADDRESS,
            "username": str(hash_username("bob_123")),
            "amount": 2 * WEI,
        }
        assert by_address["username"] == ""
        assert by_address["amount"] == 3 * WEI
        assert recover_signer(envelope_of(result), result.signatures[0].signature) == ADDRESS


class TestStaking:
    @pytest.mark.asyncio
    async def test_public_staking(self) -> None:
        engine = ready_engine()
        engine.start_operation(SID, "public_staking")
        answer_all(engine, ["stake", STAKING, "10", "0", "low"])

        result = await engine.confirm_and_sign(SID)

        assert result.success, result.error
        message = result.signatures[0].message
        assert message["type"] == "public_staking"
        assert message["action"] == "stake"
        assert message["amount"] == 10 * WEI

    @pytest.mark.asyncio
    async def test_presale_dual(self) -> None:
        engine = ready_engine(FakeLedger(3))
        engine.start_operation(SID, "presale_staking")
        answer_all(engine, ["stake", STAKING, "10", "9", "0", "high", "dual"])

        result = await engine.confirm_and_sign(SID)

        assert result.success, result.error
        assert [s.domain for s in result.signatures] == ["ledger", "staking"]
        ledger_msg, staking_msg = (s.message for s in result.signatures)
        assert ledger_msg["nonce"] == 3
        assert staking_msg["nonce"] == 9
        assert ledger_msg["stakingNonce"] == staking_msg["stakingNonce"] == 9
        assert ledger_msg["timestamp"] == staking_msg["timestamp"]
        for index, record in enumerate(result.signatures):
            assert recover_signer(envelope_of(result, index), record.signature) == ADDRESS

    @pytest.mark.asyncio
    async def test_presale_single(self) -> None:
        engine = ready_engine()
        engine.start_operation(SID, "presale_staking")
        answer_all(engine, ["unstake", STAKING, "1", "0", "0", "low", "single"])

        result = await engine.confirm_and_sign(SID)
        assert len(result.signatures) == 1
        assert result.signatures[0].message["stakingNonce"] == 0


class TestInputDiscipline:
    def test_first_prompt(self) -> None:
        result = make_engine().start_operation(SID, "single_payment")
        assert result.success
        assert result.step == "recipient_type"
        assert result.choices == ("address", "username")

    def test_free_text_at_button_step(self) -> None:
        engine = make_engine()
        engine.start_operation(SID, "single_payment")
        result = engine.submit_step_input(SID, "address")

        assert not result.success
        assert result.error_code == "UNEXPECTED_INPUT"
        assert result.step == "recipient_type"
        assert "options" in (result.error or "")

    def test_option_at_text_step(self) -> None:
        engine = make_engine()
        engine.start_operation(SID, "single_payment")
        engine.select_option(SID, "address")
        result = engine.select_option(SID, "username")

        assert not result.success
        assert result.error_code == "UNEXPECTED_INPUT"
        assert result.step == "recipient"

    def test_invalid_option(self) -> None:
        engine = make_engine()
        engine.start_operation(SID, "public_staking")
        result = engine.select_option(SID, "withdraw")
        assert not result.success
        assert result.error_code == "VALIDATION"
        assert result.step == "action"

    def test_invalid_amount_reprompts(self) -> None:
        engine = make_engine()
        engine.start_operation(SID, "single_payment")
        answer_all(engine, ["address", RECIPIENT, ZERO_ADDRESS])

        result = engine.submit_step_input(SID, "abc")

        assert not result.success
        assert result.error_code == "VALIDATION"
        assert result.step == "amount"
        assert result.prompt == "Enter the amount:"
        assert engine.status(SID)["step"] == "amount"

    def test_text_at_confirm(self) -> None:
        engine = make_engine()
        single_payment(engine)
        result = engine.submit_step_input(SID, "yes")
        assert result.error_code == "UNEXPECTED_INPUT"
        assert result.step == "confirm"

    def test_unknown_kind(self) -> None:
        result = make_engine().start_operation(SID, "swap")
        assert not result.success
        assert result.error_code == "VALIDATION"
        assert "single_payment" in (result.error or "")

    def test_restart_replaces_operation(self) -> None:
        engine = make_engine()
        single_payment(engine)
        engine.start_operation(SID, "public_staking")
        assert engine.status(SID)["operation"] == "public_staking"
        assert engine.status(SID)["step"] == "action"

    @pytest.mark.parametrize("raw", ["1e70", "2e59"])
    def test_amount_beyond_uint256_reprompts(self, raw: str) -> None:
        engine = make_engine()
        engine.start_operation(SID, "single_payment")
        answer_all(engine, ["address", RECIPIENT, ZERO_ADDRESS])

        result = engine.submit_step_input(SID, raw)

        assert not result.success
        assert result.error_code == "VALIDATION"
        assert result.step == "amount"
        assert engine.status(SID)["step"] == "amount"

    @pytest.mark.asyncio
    async def test_many_digit_amount_signed_exactly(self) -> None:
        engine = ready_engine()
        engine.start_operation(SID, "single_payment")
        answer_all(
            engine,
            ["address", RECIPIENT, ZERO_ADDRESS, "10000000000.123456789012345678", "0", "low"],
        )

        result = await engine.confirm_and_sign(SID)

        assert result.success, result.error
        assert result.signatures[0].message["amount"] == 10000000000_123456789012345678


class TestCancel:
    def test_cancel_mid_flow(self) -> None:
        engine = make_engine()
        engine.start_operation(SID, "single_payment")
        engine.select_option(SID, "address")

        cancelled = engine.cancel_operation(SID)
        assert cancelled.success
        assert engine.status(SID)["operation"] is None

        result = engine.submit_step_input(SID, RECIPIENT)
        assert not result.success
        assert result.error_code == "NO_OPERATION"
        assert "No active operation" in (result.error or "")

    def test_cancel_without_operation(self) -> None:
        assert make_engine().cancel_operation(SID).success

    def test_option_without_operation(self) -> None:
        result = make_engine().select_option(SID, "low")
        assert result.error_code == "NO_OPERATION"


class TestConfirmPreconditions:
    @pytest.mark.asyncio
    async def test_no_operation(self) -> None:
        result = await ready_engine().confirm_and_sign(SID)
        assert result.error_code == "NO_OPERATION"

    @pytest.mark.asyncio
    async def test_not_ready(self) -> None:
        engine = ready_engine()
        engine.start_operation(SID, "single_payment")
        result = await engine.confirm_and_sign(SID)
        assert result.error_code == "UNEXPECTED_INPUT"
        assert engine.status(SID)["step"] == "recipient_type"

    @pytest.mark.asyncio
    async def test_no_wallet(self) -> None:
        engine = make_engine()
        engine.set_contract_address(SID, CONTRACT)
        single_payment(engine)

        result = await engine.confirm_and_sign(SID)

        assert result.error_code == "NO_SIGNER"
        assert not result.retryable
        assert engine.status(SID)["step"] == "confirm"

    @pytest.mark.asyncio
    async def test_no_contract(self) -> None:
        engine = make_engine()
        engine.connect_wallet(SID, KEY)
        single_payment(engine)
        result = await engine.confirm_and_sign(SID)
        assert result.error_code == "NO_CONTRACT"


class TestConcurrentConfirm:
    @pytest.mark.asyncio
    async def test_operation_started_during_confirm_survives(self) -> None:
        ledger = GatedLedger(nonce=9)
        engine = ready_engine(ledger)  # type: ignore[arg-type]
        single_payment(engine, priority="high")

        pending = asyncio.create_task(engine.confirm_and_sign(SID))
        await ledger.called.wait()
        engine.start_operation(SID, "public_staking")
        assert engine.select_option(SID, "stake").success
        ledger.release.set()
        result = await pending

        assert result.success, result.error
        assert result.kind == "single_payment"
        assert result.nonce == 9
        assert engine.status(SID)["operation"] == "public_staking"
        assert engine.status(SID)["step"] == "staking_address"

    @pytest.mark.asyncio
    async def test_signed_operation_cleared_without_interleaving(self) -> None:
        ledger = GatedLedger()
        engine = ready_engine(ledger)  # type: ignore[arg-type]
        single_payment(engine, priority="high")

        pending = asyncio.create_task(engine.confirm_and_sign(SID))
        await ledger.called.wait()
        ledger.release.set()
        assert (await pending).success

        assert engine.status(SID)["operation"] is None


class TestRetryableFailures:
    @pytest.mark.asyncio
    async def test_nonce_query_failure_then_retry(self) -> None:
        ledger = FakeLedger(LedgerRpcError("node down"), 8)
        engine = ready_engine(ledger)
        single_payment(engine, priority="high")

        failed = await engine.confirm_and_sign(SID)
        assert not failed.success
        assert failed.error_code == "NONCE_QUERY_FAILED"
        assert failed.retryable
        assert engine.status(SID)["step"] == "confirm"

        retried = await engine.confirm_and_sign(SID)
        assert retried.success
        assert retried.nonce == 8
        assert len(ledger.calls) == 2

    @pytest.mark.asyncio
    async def test_bad_key_keeps_operation(self) -> None:
        engine = ready_engine()
        single_payment(engine)

        result = await engine.confirm_and_sign(SID, private_key="0xdeadbeef")

        assert result.error_code == "SIGNING_FAILED"
        assert result.retryable
        assert "deadbeef" not in (result.error or "")
        assert engine.status(SID)["step"] == "confirm"


class TestSessionCommands:
    def test_connect_wallet(self) -> None:
        engine = make_engine()
        result = engine.connect_wallet(SID, KEY[2:])
        assert result.success
        assert ADDRESS in (result.prompt or "")
        assert engine.status(SID)["wallet"] == ADDRESS

    def test_connect_wallet_invalid(self) -> None:
        result = make_engine().connect_wallet(SID, "nope")
        assert result.error_code == "VALIDATION"

    def test_disconnect(self) -> None:
        engine = ready_engine()
        assert engine.disconnect_wallet(SID).success
        assert engine.status(SID)["wallet"] is None

    def test_network(self) -> None:
        engine = make_engine()
        assert engine.set_network(SID, "ARBITRUM").success
        status = engine.status(SID)
        assert status["network"] == "arbitrum"
        assert status["chain_id"] == 421614
        assert not engine.set_network(SID, "solana").success

    def test_network_restricted_by_settings(self) -> None:
        engine = SignatureEngine(
            FakeLedger(), settings=Settings(supported_networks=("ethereum",))
        )
        assert not engine.set_network(SID, "arbitrum").success

    def test_contract_address(self) -> None:
        engine = make_engine()
        assert not engine.set_contract_address(SID, "0x123").success
        assert engine.set_contract_address(SID, CONTRACT).success
        assert engine.status(SID)["contract_address"] == CONTRACT

    def test_status_never_contains_key(self) -> None:
        engine = ready_engine()
        assert KEY not in repr(engine.status(SID))
        assert KEY[2:] not in repr(engine.status(SID))

    def test_stats(self) -> None:
        engine = ready_engine()
        engine.start_operation(SID, "single_payment")
        stats = engine.stats()
        assert stats.total == 1
        assert stats.with_wallet == 1
        assert stats.current_operations == 1

    @pytest.mark.asyncio
    async def test_eviction_loop_stops(self) -> None:
        engine = make_engine()
        stop = asyncio.Event()
        stop.set()
        await engine.eviction_loop(stop)
        assert engine.stats().total == 0

    def test_idle_session_swept(self) -> None:
        clock = Clock()
        engine = SignatureEngine(FakeLedger(), clock=clock)
        engine.start_operation(SID, "single_payment")
        clock.now += engine.settings.session_max_idle + 1

        assert engine.store.sweep() == 1
        assert engine.stats().total == 0


class TestResultSerialization:
    def test_step_result_to_dict(self) -> None:
        ok = StepResult(success=True, prompt="p", step="amount")
        assert ok.to_dict() == {"success": True, "prompt": "p", "step": "amount"}
        err = StepResult(success=False, error="bad", error_code="VALIDATION")
        assert err.to_dict() == {"success": False, "error": "bad", "error_code": "VALIDATION"}

    @pytest.mark.asyncio
    async def test_sign_result_to_dict(self) -> None:
        engine = ready_engine()
        single_payment(engine)
        data: dict[str, Any] = (await engine.confirm_and_sign(SID)).to_dict()

        assert data["success"] is True
        assert data["nonce_source"] == "random"
        assert "recipients_digest" not in data
        assert data["signatures"][0]["signature"].startswith("0x")

    def test_failure_to_dict(self) -> None:
        data = SignResult(success=False, error="x", error_code="NO_SIGNER").to_dict()
        assert data == {
            "success": False,
            "error": "x",
            "error_code": "NO_SIGNER",
            "retryable": False,
        }
