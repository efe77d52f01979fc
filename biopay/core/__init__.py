"""Core settlement logic."""
from .accounts import AccountRef, SqlAccountDirectory
from .enrollment import FaceEnrollment
from .orchestrator import PaymentOrchestrator
from .platform_report import PlatformReport
from .token_store import PaymentTokenStore
from .transaction_ledger import TransactionLedger

__all__ = [
    "AccountRef",
    "FaceEnrollment",
    "PaymentOrchestrator",
    "PaymentTokenStore",
    "PlatformReport",
    "SqlAccountDirectory",
    "TransactionLedger",
]
