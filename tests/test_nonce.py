"""
Tests for NonceSelector: fake ledger and random source, no network.

Test plan:
- high → ledger called exactly once, random never
- low → random called exactly once, ledger never
- Failures map to NonceQueryFailed / NonceGenerationFailed
- Invalid ledger values rejected
- No caching between selections
"""

import pytest

from evvm_signer.errors import NonceGenerationFailed, NonceQueryFailed
from evvm_signer.ledger.client import LedgerClient, LedgerRpcError
from evvm_signer.nonce import (
    NonceSelector,
    NonceSource,
    RandomSource,
    SecretsRandomSource,
)

SIGNER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
CONTRACT = "0x" + "1" * 40


class FakeLedger:
    """Returns a sequence of canned nonces and records calls."""

    def __init__(self, *values: object) -> None:
        self._values = list(values) or [0]
        self.calls: list[tuple[str, str, str]] = []

    async def get_next_sync_nonce(self, address: str, network: str, contract_address: str) -> int:
        self.calls.append((address, network, contract_address))
        value = self._values[min(len(self.calls), len(self._values)) - 1]
        if isinstance(value, Exception):
            raise value
        return value  # type: ignore[return-value]


class FakeRandom:
    def __init__(self, value: int = 12345, exc: Exception | None = None) -> None:
        self._value = value
        self._exc = exc
        self.calls = 0

    def random_uint64(self) -> int:
        self.calls += 1
        if self._exc is not None:
            raise self._exc
        return self._value


class TestProtocols:
    def test_fakes_satisfy_protocols(self) -> None:
        assert isinstance(FakeLedger(), LedgerClient)
        assert isinstance(FakeRandom(), RandomSource)
        assert isinstance(SecretsRandomSource(), RandomSource)

    def test_secrets_source_range(self) -> None:
        values = {SecretsRandomSource().random_uint64() for _ in range(20)}
        assert all(0 <= v < 2**64 for v in values)
        assert len(values) > 1


class TestHighPriority:
    @pytest.mark.asyncio
    async def test_ledger_once_random_never(self) -> None:
        ledger, rng = FakeLedger(17), FakeRandom()
        selected = await NonceSelector(ledger, rng).select(SIGNER, "high", "ethereum", CONTRACT)

        assert selected.value == 17
        assert selected.source is NonceSource.LEDGER
        assert ledger.calls == [(SIGNER, "ethereum", CONTRACT)]
        assert rng.calls == 0

    @pytest.mark.asyncio
    async def test_priority_case_insensitive(self) -> None:
        ledger = FakeLedger(1)
        await NonceSelector(ledger, FakeRandom()).select(SIGNER, "HIGH", "ethereum", CONTRACT)
        assert len(ledger.calls) == 1

    @pytest.mark.asyncio
    async def test_zero_is_valid(self) -> None:
        selected = await NonceSelector(FakeLedger(0)).select(SIGNER, "high", "ethereum", CONTRACT)
        assert selected.value == 0

    @pytest.mark.asyncio
    async def test_not_cached(self) -> None:
        ledger = FakeLedger(5, 6)
        selector = NonceSelector(ledger, FakeRandom())
        first = await selector.select(SIGNER, "high", "ethereum", CONTRACT)
        second = await selector.select(SIGNER, "high", "ethereum", CONTRACT)

        assert (first.value, second.value) == (5, 6)
        assert len(ledger.calls) == 2

    @pytest.mark.asyncio
    async def test_ledger_error_maps_to_query_failed(self) -> None:
        selector = NonceSelector(FakeLedger(LedgerRpcError("execution reverted")))
        with pytest.raises(NonceQueryFailed, match="execution reverted") as excinfo:
            await selector.select(SIGNER, "high", "ethereum", CONTRACT)
        assert excinfo.value.retryable

    @pytest.mark.asyncio
    async def test_transport_error_maps_to_query_failed(self) -> None:
        selector = NonceSelector(FakeLedger(TimeoutError("timed out")))
        with pytest.raises(NonceQueryFailed):
            await selector.select(SIGNER, "high", "ethereum", CONTRACT)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", [None, -1, "7", True, 1.5])
    async def test_invalid_ledger_value(self, bad: object) -> None:
        selector = NonceSelector(FakeLedger(bad))
        with pytest.raises(NonceQueryFailed):
            await selector.select(SIGNER, "high", "ethereum", CONTRACT)


class TestLowPriority:
    @pytest.mark.asyncio
    async def test_random_once_ledger_never(self) -> None:
        ledger, rng = FakeLedger(17), FakeRandom(987654321)
        selected = await NonceSelector(ledger, rng).select(SIGNER, "low", "ethereum", CONTRACT)

        assert selected.value == 987654321
        assert selected.source is NonceSource.RANDOM
        assert rng.calls == 1
        assert ledger.calls == []

    @pytest.mark.asyncio
    async def test_random_failure(self) -> None:
        rng = FakeRandom(exc=OSError("entropy unavailable"))
        with pytest.raises(NonceGenerationFailed):
            await NonceSelector(FakeLedger(), rng).select(SIGNER, "low", "ethereum", CONTRACT)

    @pytest.mark.asyncio
    async def test_default_source(self) -> None:
        selected = await NonceSelector(FakeLedger()).select(SIGNER, "low", "ethereum", CONTRACT)
        assert 0 <= selected.value < 2**64


class TestUnknownPriority:
    @pytest.mark.asyncio
    async def test_rejected_without_calls(self) -> None:
        ledger, rng = FakeLedger(), FakeRandom()
        with pytest.raises(ValueError):
            await NonceSelector(ledger, rng).select(SIGNER, "urgent", "ethereum", CONTRACT)
        assert ledger.calls == []
        assert rng.calls == 0
