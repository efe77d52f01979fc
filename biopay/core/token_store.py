"""
Settlement token store.

Owns the rule that an account has at most one default settlement token.
Every change to an account's tokens runs under that account's lock and
reads the token rows with ``SELECT ... FOR UPDATE``, so two concurrent
default changes are applied one after the other. The partial unique index
on ``settlement_tokens`` is the last line if anything else writes the table.
"""
import asyncio
import weakref
from typing import List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from biopay.core.accounts import AccountDirectory, AccountRef, SqlAccountDirectory
from biopay.database.models import SettlementToken, utcnow
from biopay.exceptions import (
    AccountNotFoundError,
    CardVerificationError,
    TokenAlreadyLinkedError,
    TokenNotFoundError,
)
from biopay.integrations.ledger_client import LedgerClient
from biopay.monitoring.logging import mask_token
from biopay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PaymentTokenStore:
    """
    Resolves accounts to settlement tokens and manages their lifecycle.

    Args:
        accounts: Account directory used for the funding-ready flag
        ledger_client: Banking client used to verify cards
    """

    def __init__(
        self,
        accounts: Optional[AccountDirectory] = None,
        ledger_client: Optional[LedgerClient] = None,
    ) -> None:
        self.accounts = accounts or SqlAccountDirectory()
        self.ledger_client = ledger_client or LedgerClient()
        # An entry lives only while some call holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[AccountRef, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, ref: AccountRef) -> asyncio.Lock:
        lock = self._locks.get(ref)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[ref] = lock
        return lock

    @staticmethod
    def _owned_by(ref: AccountRef) -> tuple:
        return (
            SettlementToken.owner_kind == ref.kind.value,
            SettlementToken.owner_id == ref.account_id,
        )

    async def _active_tokens(
        self, ref: AccountRef, db: AsyncSession, for_update: bool = False
    ) -> List[SettlementToken]:
        stmt = (
            select(SettlementToken)
            .where(*self._owned_by(ref), SettlementToken.is_active.is_(True))
            .order_by(SettlementToken.created_at, SettlementToken.id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def find_default_token(
        self, ref: AccountRef, db: AsyncSession
    ) -> Optional[SettlementToken]:
        stmt = select(SettlementToken).where(
            *self._owned_by(ref),
            SettlementToken.is_default.is_(True),
            SettlementToken.is_active.is_(True),
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_default_token(self, ref: AccountRef, db: AsyncSession) -> SettlementToken:
        """
        Get the token an account settles with.

        Raises:
            TokenNotFoundError: If the account has no default token
        """
        token = await self.find_default_token(ref, db)
        if token is None:
            raise TokenNotFoundError(f"No default settlement token for {ref}")
        return token

    async def list_active_tokens(
        self, ref: AccountRef, db: AsyncSession
    ) -> List[SettlementToken]:
        return await self._active_tokens(ref, db)

    async def set_default(
        self, ref: AccountRef, token_id: int, db: AsyncSession
    ) -> SettlementToken:
        """
        Make one of the account's active tokens its default.

        The previous default is cleared and flushed before the new one is
        set, and the change is committed before the account lock is released.

        Raises:
            TokenNotFoundError: If the token is not an active token of the account
        """
        async with self._lock_for(ref):
            tokens = await self._active_tokens(ref, db, for_update=True)
            target = next((t for t in tokens if t.id == token_id), None)
            if target is None:
                metrics.record_token_operation("set_default", "not_found")
                raise TokenNotFoundError(f"Token {token_id} is not an active token of {ref}")

            for token in tokens:
                if token.is_default and token.id != token_id:
                    token.is_default = False
            await db.flush()

            target.is_default = True
            await db.commit()

        logger.info("settlement_token_default_set", account=str(ref), token_id=token_id)
        metrics.record_token_operation("set_default", "success")
        return target

    async def link_token(
        self,
        ref: AccountRef,
        verified_token: str,
        db: AsyncSession,
        card_last4: Optional[str] = None,
        nickname: Optional[str] = None,
        set_as_default: bool = False,
    ) -> SettlementToken:
        """
        Link a bank-verified token to an account.

        The account's first active token becomes its default, as does any
        token linked with ``set_as_default``. Linking marks the account
        funding ready.

        Raises:
            TokenAlreadyLinkedError: If the token is linked to any account already
            AccountNotFoundError: If the account is unknown
        """
        async with self._lock_for(ref):
            result = await db.execute(
                select(SettlementToken).where(SettlementToken.token == verified_token)
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                metrics.record_token_operation("link", "duplicate")
                if (existing.owner_kind, existing.owner_id) == (ref.kind.value, ref.account_id):
                    raise TokenAlreadyLinkedError("This card is already linked to your account")
                raise TokenAlreadyLinkedError("This card is already linked to another account")

            if await self.accounts.get(ref, db) is None:
                raise AccountNotFoundError(f"Account {ref} not found")

            tokens = await self._active_tokens(ref, db, for_update=True)
            make_default = set_as_default or not any(t.is_default for t in tokens)
            if make_default:
                for token in tokens:
                    token.is_default = False
                await db.flush()

            linked = SettlementToken(
                token=verified_token,
                owner_kind=ref.kind.value,
                owner_id=ref.account_id,
                card_last4=card_last4,
                nickname=nickname,
                is_default=make_default,
                is_active=True,
            )
            db.add(linked)
            await self.accounts.set_funding_ready(ref, True, db)
            await db.commit()

        logger.info(
            "settlement_token_linked",
            account=str(ref),
            token=mask_token(verified_token),
            is_default=make_default,
        )
        metrics.record_token_operation("link", "success")
        return linked

    async def link_card(
        self,
        ref: AccountRef,
        card_number: str,
        cvv: str,
        expiry: str,
        db: AsyncSession,
        nickname: Optional[str] = None,
        set_as_default: bool = False,
    ) -> SettlementToken:
        """
        Verify a card with the bank and link the token it issues.

        Raises:
            CardVerificationError: If the bank refuses the card
        """
        token = await self.ledger_client.verify_card(card_number, cvv, expiry)
        if token is None:
            metrics.record_token_operation("link", "card_refused")
            raise CardVerificationError("Card verification failed")

        return await self.link_token(
            ref,
            token,
            db,
            card_last4=card_number[-4:],
            nickname=nickname,
            set_as_default=set_as_default,
        )

    async def retire(
        self, ref: AccountRef, token_id: int, db: AsyncSession
    ) -> Optional[SettlementToken]:
        """
        Soft-delete a token.

        If it was the default, the oldest remaining active token is promoted.
        If no active token remains, the account is no longer funding ready.

        Returns:
            Optional[SettlementToken]: The newly promoted default, if any
        """
        async with self._lock_for(ref):
            tokens = await self._active_tokens(ref, db, for_update=True)
            target = next((t for t in tokens if t.id == token_id), None)
            if target is None:
                metrics.record_token_operation("retire", "not_found")
                raise TokenNotFoundError(f"Token {token_id} is not an active token of {ref}")

            was_default = target.is_default
            target.is_active = False
            target.is_default = False
            await db.flush()

            remaining = [t for t in tokens if t.id != token_id]
            promoted: Optional[SettlementToken] = None
            if was_default and remaining:
                promoted = remaining[0]
                promoted.is_default = True
            if not remaining:
                await self.accounts.set_funding_ready(ref, False, db)
            await db.commit()

        logger.info(
            "settlement_token_retired",
            account=str(ref),
            token_id=token_id,
            was_default=was_default,
            promoted_token_id=promoted.id if promoted else None,
            remaining=len(remaining),
        )
        metrics.record_token_operation("retire", "success")
        return promoted

    async def touch_last_used(self, token: str, db: AsyncSession) -> None:
        """Stamp a token's last-used time. Flushed, not committed."""
        await db.execute(
            update(SettlementToken)
            .where(SettlementToken.token == token)
            .values(last_used_at=utcnow())
        )
