"""Face profile enrollment for payer accounts."""
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from biopay.core.accounts import AccountRef, SqlAccountDirectory
from biopay.integrations.identity_client import IdentityClient

logger = structlog.get_logger(__name__)


class FaceEnrollment:
    """Keeps the biometric service and the account's face flag in step."""

    def __init__(
        self,
        identity_client: Optional[IdentityClient] = None,
        accounts: Optional[SqlAccountDirectory] = None,
    ) -> None:
        self.identity_client = identity_client or IdentityClient()
        self.accounts = accounts or SqlAccountDirectory()

    async def link_face(self, ref: AccountRef, face_id: str, db: AsyncSession) -> bool:
        """
        Attach an enrolled face to an account.

        The account is only marked enrolled once the biometric service
        confirms the link.
        """
        await self.accounts.require(ref, db)
        if not await self.identity_client.link_face(ref.account_id, face_id):
            logger.warning("face_link_failed", account=str(ref))
            return False

        await self.accounts.set_face_enrolled(ref, face_id, db)
        await db.commit()
        logger.info("face_linked", account=str(ref))
        return True

    async def remove_face(self, ref: AccountRef, db: AsyncSession) -> bool:
        """Delete an account's face profile; the account can no longer pay by face."""
        await self.accounts.require(ref, db)
        if not await self.identity_client.delete_face(ref.account_id):
            logger.warning("face_delete_failed", account=str(ref))
            return False

        await self.accounts.set_face_enrolled(ref, None, db)
        await db.commit()
        logger.info("face_removed", account=str(ref))
        return True
