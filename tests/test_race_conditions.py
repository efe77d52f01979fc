"""
Race condition tests for concurrent settlement and token changes.

Tests that a transaction settles at most once, that an expiry sweep and a
verification never both win, and that an account never ends up with more
than one default token under concurrent requests.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal
from typing import Any

import pytest

from biopay.core.orchestrator import PaymentOrchestrator
from biopay.core.schemas import ChargeResult
from biopay.core.transaction_ledger import TransactionLedger
from biopay.database.models import TransactionStatus, utcnow
from biopay.exceptions import InvalidStateError

from tests.conftest import PAYER


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_verify_settles_once(
        self,
        orchestrator: Any,
        session_factory: Any,
        test_db: Any,
        funded_accounts: None,
        ledger_client: Any,
        audit_client: Any,
    ) -> None:
        """
        Test concurrent verification of one transaction.

        Exactly one call settles; every other call is rejected.
        """
        initiated = await orchestrator.initiate("7", Decimal("50.00"), test_db)
        sessions = [session_factory() for _ in range(5)]

        try:
            results = await asyncio.gather(
                *(
                    orchestrator.verify_and_charge(initiated.transaction_id, "face", session)
                    for session in sessions
                ),
                return_exceptions=True,
            )
        finally:
            for session in sessions:
                await session.close()

        settled = [r for r in results if isinstance(r, ChargeResult)]
        rejected = [r for r in results if isinstance(r, InvalidStateError)]

        assert len(settled) == 1
        assert settled[0].status == "COMPLETED"
        assert len(rejected) == 4

        principal_calls = [
            c for c in ledger_client.submit_transfer.await_args_list
            if c.kwargs.get("leg") == "principal"
        ]
        assert len(principal_calls) == 1
        assert audit_client.record_async.call_count == 2

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_set_default_keeps_single_default(
        self,
        token_store: Any,
        session_factory: Any,
        test_db: Any,
        funded_accounts: None,
    ) -> None:
        """
        Test concurrent default changes on one account.

        Whatever order they apply in, exactly one default remains.
        """
        second = await token_store.link_token(PAYER, "tok_user_0042_b", test_db)
        third = await token_store.link_token(PAYER, "tok_user_0042_c", test_db)
        first = await token_store.get_default_token(PAYER, test_db)
        targets = [second.id, third.id, first.id, third.id, second.id, first.id]
        sessions = [session_factory() for _ in targets]

        try:
            await asyncio.gather(
                *(
                    token_store.set_default(PAYER, token_id, session)
                    for token_id, session in zip(targets, sessions)
                )
            )
        finally:
            for session in sessions:
                await session.close()

        async with session_factory() as check:
            tokens = await token_store.list_active_tokens(PAYER, check)

        assert len(tokens) == 3
        assert sum(1 for t in tokens if t.is_default) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_expiry_during_identification_wins(
        self,
        orchestrator: Any,
        session_factory: Any,
        test_db: Any,
        test_settings: Any,
        funded_accounts: None,
        identity_client: Any,
        ledger_client: Any,
        audit_client: Any,
    ) -> None:
        """
        Test an expiry sweep from another worker while the face search runs.

        The sweep cancels the transaction first; the verification must not
        overwrite CANCELLED with PROCESSING or COMPLETED, and no money moves.
        """
        initiated = await orchestrator.initiate("7", Decimal("50.00"), test_db)
        transaction = await TransactionLedger().get(initiated.transaction_id, test_db)
        transaction.created_at = utcnow() - timedelta(hours=1)
        await test_db.commit()

        other_worker = PaymentOrchestrator(
            ledger_client=ledger_client,
            identity_client=identity_client,
            audit_client=audit_client,
            settings=test_settings,
        )
        swept = []

        async def search_while_expiring(sample: str) -> str:
            async with session_factory() as session:
                swept.append(await other_worker.expire_stale_pending(session))
            return PAYER.account_id

        identity_client.search_face.side_effect = search_while_expiring

        with pytest.raises(InvalidStateError):
            await orchestrator.verify_and_charge(initiated.transaction_id, "face", test_db)

        assert swept == [1]
        async with session_factory() as check:
            stored = await TransactionLedger().get(initiated.transaction_id, check)
            events = await TransactionLedger().events_for(initiated.transaction_id, check)

        assert stored.status == TransactionStatus.CANCELLED
        assert stored.biometric_verified is False
        assert [e.event_type for e in events] == [
            "transaction.initiated",
            "transaction.cancelled",
        ]
        ledger_client.submit_transfer.assert_not_awaited()
        audit_client.record_async.assert_not_called()
