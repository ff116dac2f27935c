"""
Ledger backend for the signature engine.

Public API:

    Protocols (for dependency injection):
        - ``LedgerClient``: network boundary (next sequential nonce).
        - ``JsonRpcTransport``: injectable transport for JSON-RPC.

    Concrete client:
        - ``JsonRpcLedgerClient``: eth_call implementation of LedgerClient.
        - ``HttpxTransport``: default httpx-based transport.

    Errors:
        - ``LedgerRpcError``: RPC-level error or malformed result.
"""

from evvm_signer.ledger.client import LedgerClient, LedgerRpcError
from evvm_signer.ledger.jsonrpc_client import (
    SYNC_NONCE_SIGNATURE,
    JsonRpcLedgerClient,
    encode_sync_nonce_call,
)
from evvm_signer.ledger.transport import HttpxTransport, JsonRpcTransport

__all__ = [
    "HttpxTransport",
    "JsonRpcLedgerClient",
    "JsonRpcTransport",
    "LedgerClient",
    "LedgerRpcError",
    "SYNC_NONCE_SIGNATURE",
    "encode_sync_nonce_call",
]
