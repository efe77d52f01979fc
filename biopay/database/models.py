"""SQLAlchemy database models for the settlement service."""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from biopay.exceptions import InvalidStateError, PaymentValidationError

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
JSONDocument = JSON().with_variant(JSONB, "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class AccountKind(str, Enum):
    """Kinds of account that can own settlement tokens."""

    USER = "USER"
    MERCHANT = "MERCHANT"


class TransactionStatus(str, Enum):
    """Transaction lifecycle states."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class TransactionKind(str, Enum):
    """Transaction kinds."""

    PAYMENT = "PAYMENT"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"


# Allowed status transitions; nothing ever returns to PENDING
TRANSITIONS: Dict[TransactionStatus, frozenset] = {
    TransactionStatus.PENDING: frozenset(
        {TransactionStatus.PROCESSING, TransactionStatus.FAILED, TransactionStatus.CANCELLED}
    ),
    TransactionStatus.PROCESSING: frozenset(
        {TransactionStatus.COMPLETED, TransactionStatus.FAILED}
    ),
    TransactionStatus.COMPLETED: frozenset({TransactionStatus.REFUNDED}),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
}

# States in which the payer is guaranteed to be known
PAYER_KNOWN_STATES = frozenset(
    {TransactionStatus.PROCESSING, TransactionStatus.COMPLETED, TransactionStatus.REFUNDED}
)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Account(Base):
    """
    Local projection of the account directory.

    Only the fields the settlement workflow needs: whether the account can
    pay or be paid (funding_ready) and whether a face profile is enrolled.
    """

    __tablename__ = "accounts"

    kind: Mapped[str] = mapped_column(String(20), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")
    funding_ready: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    face_enrolled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    face_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("kind IN ('USER', 'MERCHANT')", name="valid_account_kind"),
    )

    def __repr__(self) -> str:
        """String representation of Account."""
        return f"<Account(kind={self.kind}, id={self.account_id}, ready={self.funding_ready})>"


class SettlementToken(Base):
    """
    Settlement tokens linked to accounts.

    A token is an opaque credential issued by the banking system for one
    funding instrument. Tokens are never hard-deleted; retiring one clears
    is_active and is_default. The partial unique index guarantees at most
    one default token per owner.
    """

    __tablename__ = "settlement_tokens"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    owner_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    card_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    nickname: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("NOT is_default OR is_active", name="default_token_active"),
        Index("idx_settlement_tokens_owner", "owner_kind", "owner_id", "is_active"),
        Index(
            "uq_settlement_tokens_owner_default",
            "owner_kind",
            "owner_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of SettlementToken."""
        return (
            f"<SettlementToken(id={self.id}, owner={self.owner_kind}:{self.owner_id}, "
            f"default={self.is_default}, active={self.is_active})>"
        )


class Transaction(Base):
    """
    Transaction records table.

    The authoritative record of every payment. The payer is unknown when the
    row is created and is assigned exactly once during biometric
    verification; it is only readable through ``require_payer`` once the
    transaction has left PENDING. Amount, currency, payee and transaction_id
    are immutable, and status changes go through ``transition_to``.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    _payer_id: Mapped[Optional[str]] = mapped_column(
        "payer_id", String(64), nullable=True, index=True
    )
    payee_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default=TransactionKind.PAYMENT.value)
    biometric_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    ledger_reference: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    platform_fee: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    merchant_net: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    fee_collected: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    fee_reversed: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'CANCELLED', 'REFUNDED')",
            name="valid_status",
        ),
        CheckConstraint(
            "kind IN ('PAYMENT', 'REFUND', 'ADJUSTMENT')",
            name="valid_kind",
        ),
        CheckConstraint(
            "(status IN ('PENDING', 'CANCELLED') AND payer_id IS NULL)"
            " OR status = 'FAILED'"
            " OR (status IN ('PROCESSING', 'COMPLETED', 'REFUNDED') AND payer_id IS NOT NULL)",
            name="payer_matches_status",
        ),
        CheckConstraint(
            "status != 'COMPLETED' OR completed_at IS NOT NULL",
            name="completed_has_timestamp",
        ),
        Index("idx_transactions_status_created", "status", "created_at"),
        Index("idx_transactions_payer_created", "payer_id", "created_at"),
        Index("idx_transactions_payee_created", "payee_id", "created_at"),
    )

    # UPDATEs match on the version that was read; a row changed by another
    # session fails the flush with StaleDataError
    __mapper_args__ = {"version_id_col": version}

    @validates("transaction_id", "payee_id", "currency")
    def _validate_immutable(self, key: str, value: Any) -> Any:
        current = getattr(self, key)
        if current is not None and current != value:
            raise InvalidStateError(f"{key} is immutable")
        return value

    @validates("amount")
    def _validate_amount(self, key: str, value: Any) -> Decimal:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if amount <= 0:
            raise PaymentValidationError("Amount must be positive")
        if self.amount is not None and self.amount != amount:
            raise InvalidStateError("amount is immutable")
        return amount

    @validates("_payer_id")
    def _validate_payer(self, key: str, value: Optional[str]) -> Optional[str]:
        if self._payer_id is not None and self._payer_id != value:
            raise InvalidStateError("payer is already assigned")
        return value

    @hybrid_property
    def payer_id(self) -> Optional[str]:
        """Payer account id, None while the payer is unknown."""
        if self.status in (TransactionStatus.PENDING, TransactionStatus.CANCELLED):
            return None
        return self._payer_id

    @payer_id.inplace.expression
    @classmethod
    def _payer_id_expression(cls) -> Any:
        return cls._payer_id

    def require_payer(self) -> str:
        """
        Return the payer of a transaction that has passed identification.

        Raises:
            InvalidStateError: If the transaction has not reached PROCESSING
        """
        if TransactionStatus(self.status) not in PAYER_KNOWN_STATES or self._payer_id is None:
            raise InvalidStateError(
                f"Payer is not known for a {self.status} transaction", status=self.status
            )
        return self._payer_id

    def assign_payer(self, payer_id: str) -> None:
        """Record the identified payer. Only allowed once, while PENDING."""
        if self.status != TransactionStatus.PENDING:
            raise InvalidStateError(
                "Payer can only be assigned to a pending transaction", status=self.status
            )
        self._payer_id = payer_id

    def transition_to(
        self, new_status: TransactionStatus, reason: Optional[str] = None
    ) -> None:
        """
        Move the transaction to a new status.

        Args:
            new_status: Target status
            reason: Failure reason or refund annotation

        Raises:
            InvalidStateError: If the state machine does not allow the move
        """
        current = TransactionStatus(self.status)
        if new_status not in TRANSITIONS[current]:
            raise InvalidStateError(
                f"Cannot move transaction from {current.value} to {new_status.value}",
                status=current.value,
            )
        if new_status in PAYER_KNOWN_STATES and self._payer_id is None:
            raise InvalidStateError(f"{new_status.value} requires an identified payer")

        self.status = new_status.value
        if reason is not None:
            self.failure_reason = reason
        if new_status == TransactionStatus.COMPLETED and self.completed_at is None:
            self.completed_at = utcnow()
        self.updated_at = utcnow()

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(transaction_id={self.transaction_id}, payee={self.payee_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class TransactionEvent(Base):
    """
    Transaction events audit trail table.

    Local, append-only history of every state change, one row per event.
    Complements the external audit relay, which only sees settlements.
    """

    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        """String representation of TransactionEvent."""
        return (
            f"<TransactionEvent(id={self.id}, transaction_id={self.transaction_id}, "
            f"type={self.event_type})>"
        )
