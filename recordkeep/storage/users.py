from __future__ import annotations

from typing import Any, Iterable, List, Optional

from recordkeep.identity import get_current_user_id
from recordkeep.logging import get_logger
from recordkeep.storage.collection import Collection, Query
from recordkeep.storage.errors import ConstraintViolation
from recordkeep.storage.models import Claim, Role, User, utcnow
from recordkeep.storage.repository import SoftDeleteStore

logger = get_logger(__name__)


def _generation_matches(generation: int) -> Any:
    # Documents written before generations existed have no field; they read as 0
    if generation == 0:
        return {"$in": [0, None]}
    return generation


def _excluding(field_name: str, value: str, exclude_user_id: Optional[str]) -> Query:
    query: Query = {field_name: value}
    if exclude_user_id:
        query["_id"] = {"$ne": exclude_user_id}
    return query


class UserDirectory(SoftDeleteStore[User]):
    """Live-user lookups layered over the soft-delete store.

    Banning a user tombstones the record, so banned users drop out of every
    lookup here and their email and phone become available again.
    """

    def __init__(self, collection: Collection) -> None:
        super().__init__(collection, User)

    async def find_by_email(self, email: str) -> Optional[User]:
        if not email:
            return None
        return await self.find_one({"email": email})

    async def email_taken(self, email: Optional[str], *, exclude_user_id: Optional[str] = None) -> bool:
        if not email:
            return False
        return await self.exists(_excluding("email", email, exclude_user_id))

    async def phone_taken(self, phone: Optional[str], *, exclude_user_id: Optional[str] = None) -> bool:
        if not phone:
            return False
        return await self.exists(_excluding("phone", phone, exclude_user_id))

    def _write_guard(self, user: User) -> Query:
        # A copy read before a ban must not roll back the generation bump
        return {
            **super()._write_guard(user),
            "credential_generation": _generation_matches(user.credential_generation),
        }

    async def ban(self, user: User) -> Optional[User]:
        """Tombstone ``user`` and bump its credential generation in one write.

        Banning an already banned user returns the stored tombstone unchanged.
        """
        while True:
            doc = await self.collection.find_one_and_update(
                {
                    "_id": user.id,
                    "is_deleted": False,
                    "credential_generation": _generation_matches(user.credential_generation),
                },
                {
                    "is_deleted": True,
                    "credential_generation": user.credential_generation + 1,
                    "last_modified_date_utc": utcnow(),
                    "last_modified_by_id": get_current_user_id() or user.last_modified_by_id,
                },
            )
            if doc is not None:
                return self._to_model(doc)
            current = await self.find_by_id_including_deleted(user.id)
            if current is None or current.is_deleted:
                return current
            # Modified since it was read; retry against the stored generation
            user = current

    async def unban(self, user_id: str) -> Optional[User]:
        return await self.restore(user_id)


class RoleCatalog(SoftDeleteStore[Role]):
    def __init__(self, collection: Collection) -> None:
        super().__init__(collection, Role)

    async def find_by_name(self, name: str) -> Optional[Role]:
        if not name:
            return None
        return await self.find_one({"name": name})

    async def ensure(self, name: str, claims: Iterable[Claim] = ()) -> Role:
        """Return the live role named ``name``, creating it when absent."""
        existing = await self.find_by_name(name)
        if existing:
            return existing
        try:
            role = await self.insert(Role(name=name, claims=list(claims)))
        except ConstraintViolation:
            # Lost a creation race, or a tombstoned role holds the name
            existing = await self.find_by_name(name)
            if existing:
                return existing
            raise
        logger.info("role_created", role=name, role_id=role.id)
        return role

    async def ensure_all(self, names: Iterable[str]) -> List[Role]:
        return [await self.ensure(name) for name in names]


__all__ = ["RoleCatalog", "UserDirectory"]
