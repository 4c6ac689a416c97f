"""Email and phone checks for signup and profile updates.

Checks run in one of two modes (see ``ValidationMode``). In advisory mode a
violation is logged and the write goes ahead; in enforce mode it is raised.
"""

from __future__ import annotations

import re
from typing import Optional

from recordkeep.config import ValidationMode
from recordkeep.logging import get_logger
from recordkeep.service.errors import AlreadyExistsError, InvalidInputError
from recordkeep.storage.users import UserDirectory

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = re.compile(r"^\+[0-9]{1,15}$")


def validate_email(value: Optional[str]) -> bool:
    return bool(value) and EMAIL_PATTERN.match(value) is not None


def validate_phone(value: Optional[str]) -> bool:
    return bool(value) and PHONE_PATTERN.match(value) is not None


class ProfileValidator:
    def __init__(self, users: UserDirectory, mode: ValidationMode) -> None:
        self.users = users
        self.mode = mode

    @property
    def enforcing(self) -> bool:
        return self.mode == ValidationMode.ENFORCE

    def _reject_format(self, field_name: str, value: str) -> None:
        if self.enforcing:
            raise InvalidInputError(
                f"invalid {field_name}",
                detail={"field": field_name},
            )
        logger.warning(f"validation_advisory_{field_name}_format", **{field_name: value})

    def _reject_taken(self, field_name: str, value: str) -> None:
        if self.enforcing:
            raise AlreadyExistsError(
                f"{field_name} already in use",
                detail={"field": field_name},
            )
        logger.warning(f"validation_advisory_{field_name}_taken", **{field_name: value})

    async def check(
        self,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        exclude_user_id: Optional[str] = None,
    ) -> None:
        """Check format and live-user uniqueness of the given values.

        ``exclude_user_id`` keeps a user's own record from counting as a
        conflict when their profile is re-validated on update.
        """
        if email:
            if not validate_email(email):
                self._reject_format("email", email)
            if await self.users.email_taken(email, exclude_user_id=exclude_user_id):
                self._reject_taken("email", email)
        if phone:
            if not validate_phone(phone):
                self._reject_format("phone", phone)
            if await self.users.phone_taken(phone, exclude_user_id=exclude_user_id):
                self._reject_taken("phone", phone)


__all__ = [
    "EMAIL_PATTERN",
    "PHONE_PATTERN",
    "ProfileValidator",
    "validate_email",
    "validate_phone",
]
