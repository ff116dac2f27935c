"""
Ledger client protocol: the network boundary for nonce queries.

The nonce selector depends on this interface, not on a concrete RPC
implementation, which keeps ``httpx`` out of the selection logic and
lets tests supply a fake.

Concrete implementations:
    - JsonRpcLedgerClient (eth_call over JSON-RPC)
    - FakeLedger (tests)
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


class LedgerRpcError(Exception):
    """The ledger node returned an error or an unparseable result."""


@runtime_checkable
class LedgerClient(Protocol):
    """Interface for ledger reads needed by the engine."""

    async def get_next_sync_nonce(
        self,
        address: str,
        network: str,
        contract_address: str,
    ) -> int:
        """Return the signer's next sequential (synchronous) nonce.

        Args:
            address: Signer address.
            network: Network key (e.g. "ethereum").
            contract_address: EVVM contract that tracks the nonce.

        Raises:
            LedgerRpcError: On RPC-level errors or malformed results.
            Exception: Transport failures propagate unchanged.
        """
        ...
