"""
Transaction ledger: persistence and queries for transaction records.

The ledger never commits; the orchestrator decides where the durable
checkpoints of a workflow are.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from biopay.core.fees import to_money
from biopay.database.models import (
    Transaction,
    TransactionEvent,
    TransactionKind,
    TransactionStatus,
    utcnow,
)
from biopay.exceptions import TransactionNotFoundError


class TransactionLedger:
    """Data access for ``Transaction`` and ``TransactionEvent`` rows."""

    async def create(
        self,
        payee_id: str,
        amount: Decimal,
        currency: str,
        db: AsyncSession,
        description: Optional[str] = None,
        kind: TransactionKind = TransactionKind.PAYMENT,
    ) -> Transaction:
        """
        Add a new PENDING transaction with no payer.

        Args:
            payee_id: Merchant account id
            amount: Amount in major currency units
            currency: 3-letter currency code
            db: Database session
            description: Optional free-text description
            kind: Transaction kind

        Returns:
            Transaction: The flushed (uncommitted) transaction
        """
        now = utcnow()
        transaction = Transaction(
            transaction_id=str(uuid.uuid4()),
            payee_id=payee_id,
            amount=to_money(amount),
            currency=currency.upper(),
            status=TransactionStatus.PENDING.value,
            kind=kind.value,
            biometric_verified=False,
            description=description,
            created_at=now,
            updated_at=now,
        )
        db.add(transaction)
        await db.flush()
        return transaction

    async def find(
        self, transaction_id: str, db: AsyncSession, for_update: bool = False
    ) -> Optional[Transaction]:
        stmt = select(Transaction).where(Transaction.transaction_id == transaction_id)
        if for_update:
            # A locking read must see the committed row, not an older copy in the session
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get(
        self, transaction_id: str, db: AsyncSession, for_update: bool = False
    ) -> Transaction:
        """
        Get a transaction by id.

        Raises:
            TransactionNotFoundError: If no such transaction exists
        """
        transaction = await self.find(transaction_id, db, for_update=for_update)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    async def find_by_ledger_reference(
        self, reference: str, db: AsyncSession
    ) -> Optional[Transaction]:
        """Look a transaction up by the banking system's transfer reference."""
        stmt = select(Transaction).where(Transaction.ledger_reference == reference)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_payer(
        self, payer_id: str, db: AsyncSession, limit: int = 20, offset: int = 0
    ) -> List[Transaction]:
        """A payer's transactions, newest first."""
        stmt = (
            select(Transaction)
            .where(Transaction.payer_id == payer_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def list_for_payee(
        self, payee_id: str, db: AsyncSession, limit: int = 20, offset: int = 0
    ) -> List[Transaction]:
        """A merchant's transactions, newest first."""
        stmt = (
            select(Transaction)
            .where(Transaction.payee_id == payee_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def find_stale(
        self, status: TransactionStatus, before: datetime, db: AsyncSession
    ) -> List[Transaction]:
        """
        Transactions still in ``status`` that were created before ``before``.

        Rows locked by another session (a verification in progress) are
        skipped rather than waited for.
        """
        stmt = (
            select(Transaction)
            .where(Transaction.status == status.value, Transaction.created_at < before)
            .order_by(Transaction.created_at)
            .with_for_update(skip_locked=True)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def total_spent(self, payer_id: str, db: AsyncSession) -> Decimal:
        """Sum of a payer's completed payments."""
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.payer_id == payer_id,
            Transaction.status == TransactionStatus.COMPLETED.value,
        )
        result = await db.execute(stmt)
        return to_money(result.scalar_one())

    async def record_event(
        self,
        db: AsyncSession,
        transaction_id: str,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: str,
    ) -> None:
        """
        Record a transaction event for the local audit trail.

        Args:
            db: Database session
            transaction_id: Transaction id
            event_type: Event type, e.g. ``transaction.completed``
            event_data: Event data
            correlation_id: Correlation ID of the orchestrator call
        """
        db.add(
            TransactionEvent(
                transaction_id=transaction_id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=correlation_id,
                created_at=utcnow(),
            )
        )

    async def events_for(
        self, transaction_id: str, db: AsyncSession
    ) -> List[TransactionEvent]:
        stmt = (
            select(TransactionEvent)
            .where(TransactionEvent.transaction_id == transaction_id)
            .order_by(TransactionEvent.id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())
