from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Generic, Iterator, List, Optional, Tuple, Type, TypeVar

from bson import ObjectId

Claim = Tuple[str, str]

E = TypeVar("E", bound="EntityBase")
T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_object_id() -> str:
    return str(ObjectId())


def is_valid_object_id(value: Any) -> bool:
    return isinstance(value, str) and ObjectId.is_valid(value)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Drivers without tz_aware hand back naive UTC datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _claims_from_raw(raw: Any) -> List[Claim]:
    return [(str(pair[0]), str(pair[1])) for pair in (raw or [])]


@dataclass
class EntityBase:
    """Audit and soft-delete fields shared by every persisted entity."""

    id: Optional[str] = None
    is_deleted: bool = False
    created_date_utc: Optional[datetime] = None
    created_by_id: Optional[str] = None
    last_modified_date_utc: Optional[datetime] = None
    last_modified_by_id: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        doc = {f.name: getattr(self, f.name) for f in fields(self)}
        doc["_id"] = doc.pop("id")
        return doc

    @classmethod
    def from_document(cls: Type[E], doc: Dict[str, Any]) -> E:
        data = dict(doc)
        data["id"] = data.pop("_id", None)
        known = {f.name for f in fields(cls)}
        entity = cls(**{k: v for k, v in data.items() if k in known})
        entity.created_date_utc = _as_utc(entity.created_date_utc)
        entity.last_modified_date_utc = _as_utc(entity.last_modified_date_utc)
        return entity


@dataclass
class Role(EntityBase):
    name: str = ""
    claims: List[Claim] = field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        doc = super().to_document()
        doc["claims"] = [list(pair) for pair in self.claims]
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Role":
        role = super().from_document(doc)
        role.claims = _claims_from_raw(role.claims)
        return role

    def snapshot(self) -> Dict[str, Any]:
        """Value copy embedded into a user's role list at assignment time."""
        return {
            "_id": self.id,
            "name": self.name,
            "claims": [list(pair) for pair in self.claims],
        }


@dataclass
class User(EntityBase):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    password_hash: Optional[str] = None
    roles: List[Role] = field(default_factory=list)
    credential_generation: int = 0

    def to_document(self) -> Dict[str, Any]:
        doc = super().to_document()
        doc["roles"] = [role.snapshot() for role in self.roles]
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "User":
        user = super().from_document(doc)
        user.roles = [Role.from_document(raw) for raw in (user.roles or [])]
        return user

    def role_names(self) -> List[str]:
        return [role.name for role in self.roles]

    def has_role(self, name: str) -> bool:
        return any(role.name == name for role in self.roles)


@dataclass
class RefreshSession(EntityBase):
    token: str = ""
    owner_user_id: Optional[str] = None
    expiry_date_utc: Optional[datetime] = None
    replaced_by_token: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "RefreshSession":
        session = super().from_document(doc)
        session.expiry_date_utc = _as_utc(session.expiry_date_utc)
        return session

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expiry_date_utc is None:
            return True
        return self.expiry_date_utc < (now or utcnow())


@dataclass
class Page(Generic[T]):
    """One page of results plus the total the page was cut from."""

    items: List[T]
    page_number: int
    page_size: int
    total_count: int

    @property
    def total_pages(self) -> int:
        if self.page_size < 1:
            return 0
        return math.ceil(self.total_count / self.page_size)

    @property
    def has_previous(self) -> bool:
        return self.page_number > 1

    @property
    def has_next(self) -> bool:
        return self.page_number < self.total_pages

    def __iter__(self) -> Iterator[T]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index: int) -> T:
        return self.items[index]
