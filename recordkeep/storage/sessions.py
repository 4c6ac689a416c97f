from __future__ import annotations

from datetime import datetime
from typing import Optional

from recordkeep.identity import get_current_user_id
from recordkeep.logging import get_logger
from recordkeep.storage.collection import Collection
from recordkeep.storage.models import RefreshSession, utcnow
from recordkeep.storage.repository import SoftDeleteStore

logger = get_logger(__name__)


class RefreshSessionStore(SoftDeleteStore[RefreshSession]):
    """Refresh sessions keyed by their opaque token value.

    A session is consumed by tombstoning it. On rotation the tombstone also
    records ``replaced_by_token`` so a caller that loses a rotation race can
    be handed the winner's replacement instead of an error.
    """

    def __init__(self, collection: Collection) -> None:
        super().__init__(collection, RefreshSession)

    async def create(self, owner_user_id: str, token: str, expiry: datetime) -> RefreshSession:
        session = RefreshSession(
            token=token,
            owner_user_id=owner_user_id,
            expiry_date_utc=expiry,
            created_by_id=owner_user_id,
        )
        return await self.insert(session)

    async def find_live(self, token: str, owner_user_id: str) -> Optional[RefreshSession]:
        if not token or not owner_user_id:
            return None
        return await self.find_one({"token": token, "owner_user_id": owner_user_id})

    async def rotate(
        self, session: RefreshSession, new_token: str, expiry: datetime
    ) -> Optional[RefreshSession]:
        """Consume ``session`` and return the session that replaces it.

        Exactly one concurrent caller wins the tombstone swap; every other
        caller receives the winner's replacement. Returns None when the
        session was consumed without a replacement (logout or ban).
        """
        # Insert first so the winner's replacement exists before its tombstone
        # points at it
        replacement = await self.create(session.owner_user_id, new_token, expiry)
        claimed = await self.collection.find_one_and_update(
            {"_id": session.id, "is_deleted": False},
            {
                "is_deleted": True,
                "replaced_by_token": new_token,
                "last_modified_date_utc": utcnow(),
                "last_modified_by_id": get_current_user_id() or session.owner_user_id,
            },
        )
        if claimed is None:
            await self.soft_delete(replacement)
            tombstone = await self.find_by_id_including_deleted(session.id)
            if tombstone is None or not tombstone.replaced_by_token:
                return None
            winner = await self.find_one({"token": tombstone.replaced_by_token})
            if winner:
                logger.info(
                    "refresh_rotation_lost_race",
                    session_id=session.id,
                    user_id=session.owner_user_id,
                )
            return winner
        logger.info(
            "refresh_session_rotated",
            session_id=session.id,
            replacement_id=replacement.id,
            user_id=session.owner_user_id,
        )
        return replacement

    async def revoke(self, session: RefreshSession) -> Optional[RefreshSession]:
        return await self.soft_delete(session)

    async def revoke_all_for_user(self, owner_user_id: str) -> int:
        revoked = 0
        for session in await self.find_all({"owner_user_id": owner_user_id}):
            result = await self.soft_delete(session)
            if result is not None:
                revoked += 1
        if revoked:
            logger.info("refresh_sessions_revoked", user_id=owner_user_id, count=revoked)
        return revoked


__all__ = ["RefreshSessionStore"]
