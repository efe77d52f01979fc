"""
Account directory seam.

User and merchant records are owned by an external directory service. The
settlement workflow only needs to look an account up and flip its
funding-ready flag, which is what ``AccountDirectory`` describes.
``SqlAccountDirectory`` implements it over the local ``accounts`` table.
"""
from dataclasses import dataclass
from typing import Optional, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from biopay.database.models import Account, AccountKind
from biopay.exceptions import AccountNotFoundError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AccountRef:
    """Reference to a user or merchant account."""

    kind: AccountKind
    account_id: str

    @classmethod
    def user(cls, account_id: str | int) -> "AccountRef":
        return cls(AccountKind.USER, str(account_id))

    @classmethod
    def merchant(cls, account_id: str | int) -> "AccountRef":
        return cls(AccountKind.MERCHANT, str(account_id))

    def __str__(self) -> str:
        return f"{self.kind.value.lower()}:{self.account_id}"


class AccountDirectory(Protocol):
    """What the settlement workflow needs from the account directory."""

    async def get(self, ref: AccountRef, db: AsyncSession) -> Optional[Account]:
        ...

    async def set_funding_ready(self, ref: AccountRef, ready: bool, db: AsyncSession) -> None:
        ...


class SqlAccountDirectory:
    """Account directory backed by the ``accounts`` table."""

    async def get(self, ref: AccountRef, db: AsyncSession) -> Optional[Account]:
        return await db.get(Account, (ref.kind.value, ref.account_id))

    async def require(self, ref: AccountRef, db: AsyncSession) -> Account:
        account = await self.get(ref, db)
        if account is None:
            raise AccountNotFoundError(f"Account {ref} not found")
        return account

    async def register(
        self,
        ref: AccountRef,
        db: AsyncSession,
        display_name: Optional[str] = None,
        face_id: Optional[str] = None,
    ) -> Account:
        """Create the local record of a directory account."""
        account = Account(
            kind=ref.kind.value,
            account_id=ref.account_id,
            display_name=display_name,
            funding_ready=False,
            face_enrolled=face_id is not None,
            face_id=face_id,
        )
        db.add(account)
        await db.flush()

        logger.info("account_registered", account=str(ref), face_enrolled=account.face_enrolled)
        return account

    async def set_funding_ready(self, ref: AccountRef, ready: bool, db: AsyncSession) -> None:
        account = await self.require(ref, db)
        if account.funding_ready != ready:
            account.funding_ready = ready
            logger.info("account_funding_ready_changed", account=str(ref), funding_ready=ready)

    async def set_face_enrolled(
        self, ref: AccountRef, face_id: Optional[str], db: AsyncSession
    ) -> None:
        """Record (or clear, with ``face_id=None``) the account's face profile."""
        account = await self.require(ref, db)
        account.face_id = face_id
        account.face_enrolled = face_id is not None
