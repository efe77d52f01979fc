"""Database package for the settlement service."""
from .connection import close_db, get_session_factory, init_db, session_scope
from .models import (
    Account,
    AccountKind,
    Base,
    SettlementToken,
    Transaction,
    TransactionEvent,
    TransactionKind,
    TransactionStatus,
)

__all__ = [
    "Base",
    "Account",
    "AccountKind",
    "SettlementToken",
    "Transaction",
    "TransactionEvent",
    "TransactionKind",
    "TransactionStatus",
    "close_db",
    "get_session_factory",
    "init_db",
    "session_scope",
]
