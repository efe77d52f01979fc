"""
Tests for the settlement token store.
"""
import gc
from typing import Any

import pytest

from biopay.core.accounts import AccountRef
from biopay.exceptions import (
    AccountNotFoundError,
    CardVerificationError,
    TokenAlreadyLinkedError,
    TokenNotFoundError,
)

from tests.conftest import MERCHANT, MERCHANT_TOKEN, PAYER, PAYER_TOKEN


class TestLinkToken:
    """Test suite for linking settlement tokens."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_token_becomes_default(
        self, token_store: Any, accounts: Any, test_db: Any
    ) -> None:
        """Test the first linked token is the default and the account becomes ready."""
        await accounts.register(PAYER, test_db)
        await test_db.commit()

        token = await token_store.link_token(PAYER, PAYER_TOKEN, test_db, card_last4="4242")

        assert token.is_default is True
        assert token.is_active is True
        assert token.card_last4 == "4242"
        account = await accounts.get(PAYER, test_db)
        assert account.funding_ready is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_token_is_not_default(
        self, token_store: Any, test_db: Any, funded_accounts: None
    ) -> None:
        """Test later tokens do not displace the default unless asked."""
        second = await token_store.link_token(PAYER, "tok_user_0042_b", test_db)

        assert second.is_default is False
        default = await token_store.get_default_token(PAYER, test_db)
        assert default.token == PAYER_TOKEN

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_link_as_default(
        self, token_store: Any, test_db: Any, funded_accounts: None
    ) -> None:
        """Test linking with set_as_default replaces the default."""
        await token_store.link_token(PAYER, "tok_user_0042_b", test_db, set_as_default=True)

        default = await token_store.get_default_token(PAYER, test_db)
        assert default.token == "tok_user_0042_b"
        tokens = await token_store.list_active_tokens(PAYER, test_db)
        assert sum(1 for t in tokens if t.is_default) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_token_same_account(
        self, token_store: Any, test_db: Any, funded_accounts: None
    ) -> None:
        """Test relinking the same card to the same account."""
        with pytest.raises(TokenAlreadyLinkedError, match="your account"):
            await token_store.link_token(PAYER, PAYER_TOKEN, test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_token_other_account(
        self, token_store: Any, test_db: Any, funded_accounts: None
    ) -> None:
        """Test linking a card that belongs to another account."""
        with pytest.raises(TokenAlreadyLinkedError, match="another account"):
            await token_store.link_token(MERCHANT, PAYER_TOKEN, test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_link_unknown_account(self, token_store: Any, test_db: Any) -> None:
        """Test linking to an account the directory does not know."""
        with pytest.raises(AccountNotFoundError):
            await token_store.link_token(AccountRef.user(999), "tok_x", test_db)


class TestLinkCard:
    """Test suite for card verification."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_link_verified_card(
        self, token_store: Any, accounts: Any, ledger_client: Any, test_db: Any
    ) -> None:
        """Test a card the bank verifies is linked with its last four digits."""
        await accounts.register(PAYER, test_db)
        await test_db.commit()
        ledger_client.verify_card.return_value = "tok_from_bank"

        token = await token_store.link_card(
            PAYER, "4111111111111111", "123", "12/30", test_db, nickname="Visa"
        )

        ledger_client.verify_card.assert_awaited_once_with("4111111111111111", "123", "12/30")
        assert token.token == "tok_from_bank"
        assert token.card_last4 == "1111"
        assert token.nickname == "Visa"
        assert token.is_default is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refused_card(
        self, token_store: Any, accounts: Any, ledger_client: Any, test_db: Any
    ) -> None:
        """Test a refused card is not linked."""
        await accounts.register(PAYER, test_db)
        await test_db.commit()
        ledger_client.verify_card.return_value = None

        with pytest.raises(CardVerificationError):
            await token_store.link_card(PAYER, "4000000000000002", "123", "12/30", test_db)

        assert await token_store.list_active_tokens(PAYER, test_db) == []


class TestDefaultToken:
    """Test suite for default token resolution and changes."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_default_token(self, token_store: Any, test_db: Any) -> None:
        """Test resolving an account with no tokens."""
        assert await token_store.find_default_token(PAYER, test_db) is None
        with pytest.raises(TokenNotFoundError):
            await token_store.get_default_token(PAYER, test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_default(
        self, token_store: Any, test_db: Any, funded_accounts: None
    ) -> None:
        """Test switching the default leaves exactly one default."""
        second = await token_store.link_token(PAYER, "tok_user_0042_b", test_db)

        await token_store.set_default(PAYER, second.id, test_db)

        tokens = await token_store.list_active_tokens(PAYER, test_db)
        defaults = [t.token for t in tokens if t.is_default]
        assert defaults == ["tok_user_0042_b"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_default_foreign_token(
        self, token_store: Any, test_db: Any, funded_accounts: None
    ) -> None:
        """Test an account cannot make another account's token its default."""
        merchant_token = await token_store.get_default_token(MERCHANT, test_db)

        with pytest.raises(TokenNotFoundError):
            await token_store.set_default(PAYER, merchant_token.id, test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_touch_last_used(
        self, token_store: Any, test_db: Any, funded_accounts: None
    ) -> None:
        """Test the last-used time is stamped."""
        await token_store.touch_last_used(PAYER_TOKEN, test_db)
        await test_db.commit()

        test_db.expire_all()
        token = await token_store.get_default_token(PAYER, test_db)
        assert token.last_used_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_account_locks_are_released(
        self, token_store: Any, test_db: Any, funded_accounts: None
    ) -> None:
        """Test the per-account lock map does not keep an entry per account forever."""
        second = await token_store.link_token(PAYER, "tok_user_0042_b", test_db)
        await token_store.set_default(PAYER, second.id, test_db)
        await token_store.retire(PAYER, second.id, test_db)

        gc.collect()
        assert PAYER not in token_store._locks
        assert MERCHANT not in token_store._locks


class TestRetire:
    """Test suite for removing tokens."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retire_default_promotes_oldest(
        self, token_store: Any, test_db: Any, funded_accounts: None
    ) -> None:
        """Test removing the default promotes the oldest remaining token."""
        default = await token_store.get_default_token(PAYER, test_db)
        second = await token_store.link_token(PAYER, "tok_user_0042_b", test_db)
        await token_store.link_token(PAYER, "tok_user_0042_c", test_db)

        promoted = await token_store.retire(PAYER, default.id, test_db)

        assert promoted is not None
        assert promoted.id == second.id
        assert (await token_store.get_default_token(PAYER, test_db)).id == second.id
        assert len(await token_store.list_active_tokens(PAYER, test_db)) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retire_last_token_clears_funding(
        self, token_store: Any, accounts: Any, test_db: Any, funded_accounts: None
    ) -> None:
        """Test removing the only token makes the account not funding ready."""
        default = await token_store.get_default_token(MERCHANT, test_db)

        promoted = await token_store.retire(MERCHANT, default.id, test_db)

        assert promoted is None
        account = await accounts.get(MERCHANT, test_db)
        assert account.funding_ready is False
        with pytest.raises(TokenNotFoundError):
            await token_store.get_default_token(MERCHANT, test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retire_non_default(
        self, token_store: Any, test_db: Any, funded_accounts: None
    ) -> None:
        """Test removing a non-default token leaves the default alone."""
        second = await token_store.link_token(PAYER, "tok_user_0042_b", test_db)

        promoted = await token_store.retire(PAYER, second.id, test_db)

        assert promoted is None
        assert (await token_store.get_default_token(PAYER, test_db)).token == PAYER_TOKEN

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retired_token_cannot_be_default(
        self, token_store: Any, test_db: Any, funded_accounts: None
    ) -> None:
        """Test a retired token cannot be made default again."""
        second = await token_store.link_token(PAYER, "tok_user_0042_b", test_db)
        await token_store.retire(PAYER, second.id, test_db)

        with pytest.raises(TokenNotFoundError):
            await token_store.set_default(PAYER, second.id, test_db)
