"""
Exception taxonomy for the settlement workflow.

Precondition and sequencing failures are raised to the caller. Declined
transfers are not exceptions: they end as a FAILED transaction returned
as a normal result.
"""


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    pass


class PaymentValidationError(PaymentError):
    """Raised when payment input validation fails."""

    pass


class NotReadyError(PaymentError):
    """Raised when a funding or identity prerequisite is missing."""

    pass


class IdentificationFailedError(PaymentError):
    """Raised when the biometric sample matches no enrolled account."""

    pass


class InvalidStateError(PaymentError):
    """Raised when an operation is invoked against the wrong transaction status."""

    def __init__(self, message: str, status: str | None = None):
        super().__init__(message)
        self.status = status


class PaymentProcessingError(PaymentError):
    """Raised on an unexpected failure during settlement or refund."""

    pass


class TransactionNotFoundError(PaymentError):
    """Raised when no transaction exists for the given id."""

    pass


class AccountNotFoundError(PaymentError):
    """Raised when the account directory has no such account."""

    pass


class TokenNotFoundError(PaymentError):
    """Raised when an account has no usable settlement token."""

    pass


class TokenAlreadyLinkedError(PaymentError):
    """Raised when a settlement token is already linked to an account."""

    pass


class CardVerificationError(PaymentError):
    """Raised when the banking system refuses to tokenize a card."""

    pass
