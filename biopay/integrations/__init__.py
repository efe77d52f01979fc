"""Clients for the banking system, the biometric service and the audit relay."""
from .audit_relay_client import AuditReceipt, AuditRelayClient, AuditRelayError
from .identity_client import IdentityClient, IdentityGatewayError
from .ledger_client import LedgerClient, TransferReceipt

__all__ = [
    "AuditReceipt",
    "AuditRelayClient",
    "AuditRelayError",
    "IdentityClient",
    "IdentityGatewayError",
    "LedgerClient",
    "TransferReceipt",
]
