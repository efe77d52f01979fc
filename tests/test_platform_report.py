"""
Tests for platform earnings reporting.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any

import pytest

from biopay.core.platform_report import PlatformReport
from biopay.database.models import utcnow
from biopay.exceptions import PaymentProcessingError, PaymentValidationError
from biopay.integrations.ledger_client import TransferReceipt


async def _settle(orchestrator: Any, db: Any, amount: str) -> str:
    initiated = await orchestrator.initiate("7", Decimal(amount), db)
    await orchestrator.verify_and_charge(initiated.transaction_id, "face", db)
    return initiated.transaction_id


class TestPlatformReport:
    """Test suite for platform balance and fee reconciliation."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_empty_balance(self, test_db: Any) -> None:
        balance = await PlatformReport().platform_balance(test_db)

        assert balance.transaction_count == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fee_returned_by_failed_refund_not_collected(
        self, orchestrator: Any, test_db: Any, funded_accounts: None, ledger_client: Any
    ) -> None:
        """Test a fee already paid back counts as owed but not as collected."""
        tx_id = await _settle(orchestrator, test_db, "50.00")
        ledger_client.submit_transfer.side_effect = [
            TransferReceipt(success=True),
            TransferReceipt(success=False, message="Merchant balance too low"),
        ]
        with pytest.raises(PaymentProcessingError):
            await orchestrator.refund(tx_id, "customer request", test_db)

        balance = await PlatformReport().platform_balance(test_db)

        assert balance.transaction_count == 1
        assert balance.total_fees == Decimal("1.50")
        assert balance.collected_fees == Decimal("0.00")
        assert balance.total_fees == Decimal("0.00")
        assert balance.average_transaction == Decimal("0.00")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_balance_over_completed_transactions(
        self, orchestrator: Any, test_db: Any, funded_accounts: None, ledger_client: Any
    ) -> None:
        """Test only completed transactions count and uncollected fees are separated."""
        await _settle(orchestrator, test_db, "50.00")
        ledger_client.submit_transfer.side_effect = [
            TransferReceipt(success=True),
            TransferReceipt(success=False, message="fee declined"),
        ]
        uncollected = await _settle(orchestrator, test_db, "100.00")
        ledger_client.submit_transfer.side_effect = None
        await orchestrator.initiate("7", Decimal("999.00"), test_db)  # still pending

        report = PlatformReport()
        balance = await report.platform_balance(test_db)

        assert balance.transaction_count == 2
        assert balance.total_volume == Decimal("150.00")
        assert balance.total_fees == Decimal("4.50")
        assert balance.collected_fees == Decimal("1.50")
        assert balance.average_transaction == Decimal("75.00")

        missing = await report.uncollected_fees(test_db)
        assert [t.transaction_id for t in missing] == [uncollected]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refunded_transactions_excluded(
        self, orchestrator: Any, test_db: Any, funded_accounts: None
    ) -> None:
        tx_id = await _settle(orchestrator, test_db, "50.00")
        await orchestrator.refund(tx_id, "customer request", test_db)

        balance = await PlatformReport().platform_balance(test_db)

        assert balance.transaction_count == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fee_summary_range(
        self, orchestrator: Any, test_db: Any, funded_accounts: None
    ) -> None:
        """Test the summary covers transactions created in the range."""
        await _settle(orchestrator, test_db, "20.00")
        now = utcnow()

        inside = await PlatformReport().fee_summary(
            now - timedelta(hours=1), now + timedelta(hours=1), test_db
        )
        before = await PlatformReport().fee_summary(
            now - timedelta(days=2), now - timedelta(days=1), test_db
        )

        assert inside.transaction_count == 1
        assert inside.total_fees == Decimal("0.60")
        assert before.transaction_count == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fee_summary_rejects_empty_range(self, test_db: Any) -> None:
        now = utcnow()

        with pytest.raises(PaymentValidationError):
            await PlatformReport().fee_summary(now, now, test_db)
