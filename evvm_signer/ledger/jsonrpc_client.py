"""
Ledger JSON-RPC client: real network implementation of LedgerClient.

Reads the signer's next synchronous nonce from the EVVM contract with a
single ``eth_call`` to ``getNextCurrentSyncNonce(address)``. Uses an
injectable transport (JsonRpcTransport) so the HTTP layer can be swapped
for test fakes without changing encoding or parsing logic.

No retry loops. No secrets. No broadcasting.

Response parsing targets standard Ethereum JSON-RPC conventions:
    - Success: {"jsonrpc": "2.0", "id": n, "result": "0x<32-byte word>"}
    - Error:   {"jsonrpc": "2.0", "id": n, "error": {"code": c, "message": m}}
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Mapping
from typing import Any

from eth_abi import decode, encode
from eth_utils import keccak, to_checksum_address

from evvm_signer.ledger.client import LedgerRpcError
from evvm_signer.ledger.transport import HttpxTransport, JsonRpcTransport

logger = logging.getLogger(__name__)

SYNC_NONCE_SIGNATURE = "getNextCurrentSyncNonce(address)"
SYNC_NONCE_SELECTOR = keccak(text=SYNC_NONCE_SIGNATURE)[:4]

# JSON-RPC request ids (single event loop, no locking needed)
_request_ids = itertools.count(1)


def encode_sync_nonce_call(address: str) -> str:
    """ABI-encode the ``getNextCurrentSyncNonce(address)`` call data as 0x hex."""
    data = SYNC_NONCE_SELECTOR + encode(["address"], [to_checksum_address(address)])
    return "0x" + data.hex()


class JsonRpcLedgerClient:
    """EVVM ledger client implementing the LedgerClient protocol.

    Args:
        rpc_urls: JSON-RPC endpoint per network key.
        transport: Injectable transport for HTTP POST. Defaults to
            HttpxTransport. Pass a FakeTransport for testing.
    """

    def __init__(
        self,
        rpc_urls: Mapping[str, str],
        transport: JsonRpcTransport | None = None,
    ) -> None:
        self._rpc_urls = dict(rpc_urls)
        self._transport = transport or HttpxTransport()

    def url_for(self, network: str) -> str:
        """The JSON-RPC endpoint for a network key."""
        try:
            return self._rpc_urls[network]
        except KeyError:
            raise LedgerRpcError(f"no RPC URL configured for network: {network}") from None

    async def get_next_sync_nonce(
        self,
        address: str,
        network: str,
        contract_address: str,
    ) -> int:
        """Query the contract for the signer's next sequential nonce.

        Transport exceptions propagate to the caller (the nonce selector
        maps them to NonceQueryFailed).
        """
        payload = {
            "jsonrpc": "2.0",
            "method": "eth_call",
            "params": [
                {
                    "to": to_checksum_address(contract_address),
                    "data": encode_sync_nonce_call(address),
                },
                "latest",
            ],
            "id": next(_request_ids),
        }
        logger.debug("eth_call %s on %s for %s", SYNC_NONCE_SIGNATURE, network, address)
        response = await self._transport.post_json(self.url_for(network), payload)
        return _parse_uint256_response(response)


# =====================================================================
# Response parsing (pure functions, no I/O)
# =====================================================================


def _parse_uint256_response(response: dict[str, Any]) -> int:
    """Parse an eth_call response carrying a single uint256 return value.

    Raises:
        LedgerRpcError: On JSON-RPC errors, a missing result, or a result
            that is not a 32-byte ABI word.
    """
    error = response.get("error")
    if error is not None:
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise LedgerRpcError(f"eth_call failed: {message or 'unknown error'}")

    result = response.get("result")
    if not isinstance(result, str) or not result.startswith("0x"):
        raise LedgerRpcError(f"eth_call returned no result: {result!r}")

    try:
        data = bytes.fromhex(result[2:])
    except ValueError:
        raise LedgerRpcError("eth_call result is not valid hex") from None

    # An empty result means no contract code at the target address.
    if len(data) < 32:
        raise LedgerRpcError(f"eth_call result too short ({len(data)} bytes)")

    (value,) = decode(["uint256"], data[:32])
    return int(value)
