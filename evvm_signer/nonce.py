"""
Nonce selection by declared priority.

    - "high" (synchronous): the ledger's next sequential nonce for the
      signer. Orders this transaction relative to the signer's other
      synchronous transactions.
    - "low" (asynchronous): a uniformly random 64-bit nonce from a
      cryptographically secure source. Collisions are tolerated because
      asynchronous transactions are order-independent.

Each selection calls exactly one collaborator and nothing is cached.
Reserving a sequential nonce until it is consumed on-chain is the
caller's concern and is not enforced here.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol, runtime_checkable

from evvm_signer.errors import NonceGenerationFailed, NonceQueryFailed
from evvm_signer.ledger.client import LedgerClient

logger = logging.getLogger(__name__)

UINT64_BITS = 64


class NonceSource(StrEnum):
    """Where a selected nonce came from."""

    LEDGER = "ledger"
    RANDOM = "random"


@runtime_checkable
class RandomSource(Protocol):
    """Source of uniformly distributed unsigned 64-bit integers."""

    def random_uint64(self) -> int:
        ...


class SecretsRandomSource:
    """RandomSource backed by the operating system CSPRNG."""

    def random_uint64(self) -> int:
        return secrets.randbits(UINT64_BITS)


@dataclass(frozen=True)
class SelectedNonce:
    """A nonce together with its provenance.

    Attributes:
        value: The nonce.
        source: LEDGER for priority "high", RANDOM for priority "low".
    """

    value: int
    source: NonceSource


class NonceSelector:
    """Chooses a nonce for a signing attempt.

    Sequential nonces are read from the ledger on every call and never
    reserved, so two attempts signed before either is broadcast can share
    the same value.

    Args:
        ledger: Ledger client used for sequential nonces.
        random_source: Random source for asynchronous nonces. Defaults to
            SecretsRandomSource.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        random_source: RandomSource | None = None,
    ) -> None:
        self._ledger = ledger
        self._random = random_source or SecretsRandomSource()

    async def select(
        self,
        signer_address: str,
        priority: str,
        network: str,
        contract_address: str,
    ) -> SelectedNonce:
        """Return a fresh nonce for ``priority``.

        Raises:
            NonceQueryFailed: Ledger call raised or returned no usable value.
            NonceGenerationFailed: The random source raised.
            ValueError: If priority is not "low" or "high".
        """
        priority = priority.lower()
        if priority == "high":
            return SelectedNonce(
                value=await self._query_ledger(signer_address, network, contract_address),
                source=NonceSource.LEDGER,
            )
        if priority == "low":
            return SelectedNonce(value=self._generate_random(), source=NonceSource.RANDOM)
        raise ValueError(f"priority must be 'low' or 'high', got: {priority!r}")

    async def _query_ledger(self, address: str, network: str, contract_address: str) -> int:
        logger.info("querying sync nonce for %s on %s", address, network)
        try:
            nonce = await self._ledger.get_next_sync_nonce(address, network, contract_address)
        except Exception as exc:
            logger.warning("sync nonce query failed for %s: %s", address, exc)
            raise NonceQueryFailed(f"sync nonce query failed: {exc}") from exc

        if nonce is None or isinstance(nonce, bool) or not isinstance(nonce, int) or nonce < 0:
            raise NonceQueryFailed(f"ledger returned invalid nonce: {nonce!r}")
        return nonce

    def _generate_random(self) -> int:
        try:
            nonce = self._random.random_uint64()
        except Exception as exc:
            logger.error("random nonce generation failed: %s", exc)
            raise NonceGenerationFailed(f"random nonce generation failed: {exc}") from exc
        return nonce
