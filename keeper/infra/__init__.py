"""
Infrastructure package.

Logging setup, per-signer nonce leasing, ledger and price HTTP clients.
"""

from keeper.infra.ledger import (
    LedgerCall,
    LedgerClient,
    LedgerReceipt,
    SubmissionHandle,
    Web3Ledger,
    encode_call,
)
from keeper.infra.logging_cfg import build_logger, log_event
from keeper.infra.nonce import NonceLease, NonceManager
from keeper.infra.price_client import HermesClient

__all__ = [
    "LedgerCall",
    "LedgerClient",
    "LedgerReceipt",
    "SubmissionHandle",
    "Web3Ledger",
    "encode_call",
    "build_logger",
    "log_event",
    "NonceLease",
    "NonceManager",
    "HermesClient",
]
