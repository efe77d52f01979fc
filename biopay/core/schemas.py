"""
Pydantic models for orchestrator results.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from biopay.database.models import Transaction


class InitiateResult(BaseModel):
    """Result of initiating a payment."""

    transaction_id: str = Field(..., description="Transaction ID to scan against")
    status: str = Field(..., description="Transaction status (PENDING)")
    payee_id: str = Field(..., description="Merchant account id")
    amount: Decimal = Field(..., description="Amount in major currency units")
    currency: str = Field(..., description="Currency code")
    message: str = Field(
        default="Please scan customer's face to complete payment",
        description="Next step for the merchant",
    )


class ChargeResult(BaseModel):
    """Result of a biometric verification and charge."""

    transaction_id: str = Field(..., description="Transaction ID")
    status: str = Field(..., description="Transaction status (COMPLETED or FAILED)")
    verified: bool = Field(..., description="Whether the payer was biometrically identified")
    amount: Decimal = Field(..., description="Amount in major currency units")
    currency: str = Field(..., description="Currency code")
    payer_id: Optional[str] = Field(default=None, description="Identified payer account id")
    merchant_net: Optional[Decimal] = Field(default=None, description="Amount kept by the merchant")
    platform_fee: Optional[Decimal] = Field(default=None, description="Platform commission")
    fee_collected: Optional[bool] = Field(
        default=None, description="Whether the fee transfer succeeded"
    )
    message: str = Field(..., description="Human-readable outcome")


class RefundResult(BaseModel):
    """Result of a refund."""

    transaction_id: str = Field(..., description="Transaction ID")
    status: str = Field(..., description="Transaction status (REFUNDED)")
    amount: Decimal = Field(..., description="Refunded amount")
    currency: str = Field(..., description="Currency code")
    fee_reversed: bool = Field(..., description="Whether the platform fee was returned")
    reason: str = Field(..., description="Refund reason")


class TransactionView(BaseModel):
    """Read model of a transaction."""

    transaction_id: str
    payer_id: Optional[str] = None
    payee_id: str
    amount: Decimal
    currency: str
    status: str
    kind: str
    biometric_verified: bool
    failure_reason: Optional[str] = None
    description: Optional[str] = None
    ledger_reference: Optional[str] = None
    platform_fee: Optional[Decimal] = None
    merchant_net: Optional[Decimal] = None
    fee_collected: Optional[bool] = None
    fee_reversed: Optional[bool] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> "TransactionView":
        return cls(
            transaction_id=transaction.transaction_id,
            payer_id=transaction.payer_id,
            payee_id=transaction.payee_id,
            amount=transaction.amount,
            currency=transaction.currency,
            status=transaction.status,
            kind=transaction.kind,
            biometric_verified=transaction.biometric_verified,
            failure_reason=transaction.failure_reason,
            description=transaction.description,
            ledger_reference=transaction.ledger_reference,
            platform_fee=transaction.platform_fee,
            merchant_net=transaction.merchant_net,
            fee_collected=transaction.fee_collected,
            fee_reversed=transaction.fee_reversed,
            created_at=transaction.created_at,
            completed_at=transaction.completed_at,
        )


class PlatformBalance(BaseModel):
    """Platform earnings over completed transactions."""

    total_fees: Decimal = Field(..., description="Fees owed to the platform")
    collected_fees: Decimal = Field(..., description="Fees actually transferred")
    total_volume: Decimal = Field(..., description="Total settled volume")
    transaction_count: int = Field(..., description="Number of completed transactions")
    average_transaction: Decimal = Field(..., description="Average settled amount")
    start: Optional[datetime] = Field(default=None, description="Range start, inclusive")
    end: Optional[datetime] = Field(default=None, description="Range end, exclusive")
