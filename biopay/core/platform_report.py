"""
Platform earnings reporting and fee reconciliation.

Fees are reported from the split recorded at settlement time. A fee leg
that failed leaves ``fee_collected = False`` on the transaction; those rows
are what ``uncollected_fees`` returns for out-of-band collection.
Collected fees leave out those already paid back by a refund attempt.
"""
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

import structlog
from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from biopay.core.fees import MINOR_UNIT, to_money
from biopay.core.schemas import PlatformBalance
from biopay.database.models import Transaction, TransactionStatus
from biopay.exceptions import PaymentValidationError

logger = structlog.get_logger(__name__)


class PlatformReport:
    """Aggregates over COMPLETED transactions."""

    async def _aggregate(
        self,
        db: AsyncSession,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> PlatformBalance:
        # A fee paid back by a refund that has not completed yet is no longer held
        held = and_(Transaction.fee_collected.is_(True), Transaction.fee_reversed.isnot(True))
        collected = case((held, Transaction.platform_fee), else_=0)
        stmt = select(
            func.count(Transaction.id),
            func.coalesce(func.sum(Transaction.amount), 0),
            func.coalesce(func.sum(Transaction.platform_fee), 0),
            func.coalesce(func.sum(collected), 0),
        ).where(Transaction.status == TransactionStatus.COMPLETED.value)
        if start is not None:
            stmt = stmt.where(Transaction.created_at >= start)
        if end is not None:
            stmt = stmt.where(Transaction.created_at < end)

        result = await db.execute(stmt)
        count, volume, fees, collected_fees = result.one()

        total_volume = to_money(volume)
        average = (
            (total_volume / count).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)
            if count
            else Decimal("0.00")
        )
        return PlatformBalance(
            total_fees=to_money(fees),
            collected_fees=to_money(collected_fees),
            total_volume=total_volume,
            transaction_count=count,
            average_transaction=average,
            start=start,
            end=end,
        )

    async def platform_balance(self, db: AsyncSession) -> PlatformBalance:
        """Platform earnings over all completed transactions."""
        balance = await self._aggregate(db)
        logger.info(
            "platform_balance_computed",
            total_fees=str(balance.total_fees),
            transaction_count=balance.transaction_count,
        )
        return balance

    async def fee_summary(
        self, start: datetime, end: datetime, db: AsyncSession
    ) -> PlatformBalance:
        """Platform earnings for transactions created in ``[start, end)``."""
        if end <= start:
            raise PaymentValidationError("end must be after start")
        return await self._aggregate(db, start=start, end=end)

    async def uncollected_fees(self, db: AsyncSession) -> List[Transaction]:
        """Completed transactions whose fee transfer did not go through."""
        stmt = (
            select(Transaction)
            .where(
                Transaction.status == TransactionStatus.COMPLETED.value,
                Transaction.fee_collected.is_(False),
            )
            .order_by(Transaction.completed_at)
        )
        result = await db.execute(stmt)
        transactions = list(result.scalars().all())
        if transactions:
            logger.warning("uncollected_platform_fees_found", count=len(transactions))
        return transactions
