from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from recordkeep.config import Settings
from recordkeep.identity import get_current_user_id, set_current_user_id
from recordkeep.logging import get_logger
from recordkeep.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    InvalidInputError,
    NotFoundError,
    SessionExpiredError,
)
from recordkeep.service.passwords import PasswordHasher
from recordkeep.service.tokens import CredentialIssuer, claim_values, first_claim
from recordkeep.service.validation import ProfileValidator
from recordkeep.storage.models import Claim, Page, RefreshSession, User, is_valid_object_id
from recordkeep.storage.sessions import RefreshSessionStore
from recordkeep.storage.users import RoleCatalog, UserDirectory

logger = get_logger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class UserProfile:
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class UserPatch:
    """Profile changes; ``None`` leaves a field as it is.

    Blank email, phone or password also leave the stored value alone, so a
    patch cannot strip the login identifier or set an empty password.
    """

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = None


@dataclass
class ProfileUpdate:
    user: User
    tokens: TokenPair


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    claims: List[Claim] = field(default_factory=list)


def build_claims(user: User) -> List[Claim]:
    """Ordered claim list for ``user``: identity, generation, then roles."""
    claims: List[Claim] = [("sub", user.id)]
    if user.email:
        claims.append(("email", user.email))
    if user.phone:
        claims.append(("phone", user.phone))
    claims.append(("gen", str(user.credential_generation)))
    for role in user.roles:
        claims.append(("role", role.name))
        claims.extend(role.claims)
    return claims


class AuthenticationService:
    """Signup, login, token refresh, and user administration."""

    def __init__(
        self,
        settings: Settings,
        users: UserDirectory,
        roles: RoleCatalog,
        sessions: RefreshSessionStore,
        issuer: CredentialIssuer,
        hasher: PasswordHasher,
    ) -> None:
        self.settings = settings
        self.users = users
        self.roles = roles
        self.sessions = sessions
        self.issuer = issuer
        self.hasher = hasher
        self.validator = ProfileValidator(users, settings.validation_mode)
        self.logger = logger
        self._session_ttl = timedelta(days=settings.refresh_session_ttl_days)
        self._rotation_threshold = timedelta(days=settings.refresh_rotation_threshold_days)

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    async def _require_user(self, user_id: Optional[str]) -> User:
        if not is_valid_object_id(user_id):
            raise InvalidInputError("malformed user id", detail={"user_id": user_id})
        user = await self.users.find_by_id(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def _issue_tokens(self, user: User) -> TokenPair:
        session = await self.sessions.create(
            user.id, self.issuer.issue_refresh_value(), self._now() + self._session_ttl
        )
        return TokenPair(
            access_token=self.issuer.issue_access(build_claims(user)),
            refresh_token=session.token,
        )

    # -- public read surface ------------------------------------------------

    async def get_current_user(self) -> User:
        user_id = get_current_user_id()
        if not user_id:
            raise AuthenticationError("no authenticated user in this context")
        return await self._require_user(user_id)

    async def get_user(self, user_id: str) -> User:
        return await self._require_user(user_id)

    async def list_users(
        self,
        page_number: int = 1,
        page_size: Optional[int] = None,
        *,
        include_deleted: bool = True,
    ) -> Page[User]:
        """Administrative listing; banned users are included unless asked otherwise."""
        size = page_size if page_size is not None else self.settings.default_page_size
        size = min(size, self.settings.max_page_size)
        return await self.users.page(page_number, size, include_deleted=include_deleted)

    # -- credentials --------------------------------------------------------

    async def signup(self, profile: UserProfile, password: str) -> TokenPair:
        if not password:
            raise InvalidInputError("password required", detail={"field": "password"})
        await self.validator.check(email=profile.email, phone=profile.phone)
        default_role = await self.roles.find_by_name(self.settings.default_role)
        if not default_role:
            raise NotFoundError(
                "default role missing", detail={"role": self.settings.default_role}
            )
        user = await self.users.insert(
            User(
                first_name=profile.first_name,
                last_name=profile.last_name,
                email=profile.email,
                phone=profile.phone,
                password_hash=self.hasher.hash(password),
                roles=[default_role],
            )
        )
        tokens = await self._issue_tokens(user)
        self.logger.info("user_signed_up", user_id=user.id, role=default_role.name)
        return tokens

    async def login(self, email: str, password: str) -> TokenPair:
        """Authenticate by email and password and bind the caller's identity.

        Other sessions belonging to the user are left alone, so each device
        keeps its own refresh lineage.
        """
        user = await self.users.find_by_email(email)
        if not user:
            self.logger.info("login_unknown_user")
            raise NotFoundError("user not found")
        if not self.hasher.check(password, user.password_hash):
            self.logger.warning("login_failed", user_id=user.id)
            raise InvalidCredentialsError("invalid credentials")
        if self.hasher.needs_rehash(user.password_hash):
            user.password_hash = self.hasher.hash(password)
            rehashed = await self.users.update(user)
            if not rehashed:
                raise NotFoundError("user not found")
            user = rehashed
        tokens = await self._issue_tokens(user)
        set_current_user_id(user.id)
        self.logger.info("user_logged_in", user_id=user.id)
        return tokens

    async def refresh(self, access_token: str, refresh_token: str) -> TokenPair:
        """Exchange a (possibly expired) access token and a refresh token.

        The refresh session is rotated once its remaining lifetime drops
        under the rotation threshold; otherwise the presented refresh token
        is handed back unchanged.
        """
        claims = self.issuer.recover_claims(access_token)
        user_id = first_claim(claims, "sub")
        if not user_id:
            raise SessionExpiredError("access token carries no subject")
        session = await self.sessions.find_live(refresh_token, user_id)
        now = self._now()
        if not session or session.is_expired(now):
            self.logger.info("refresh_rejected", user_id=user_id, found=session is not None)
            raise SessionExpiredError("refresh session expired or revoked")
        returned: Optional[RefreshSession] = session
        if session.expiry_date_utc - self._rotation_threshold < now:
            returned = await self.sessions.rotate(
                session, self.issuer.issue_refresh_value(), now + self._session_ttl
            )
            if returned is None:
                # Revoked between lookup and rotation
                raise SessionExpiredError("refresh session expired or revoked")
        return TokenPair(
            access_token=self.issuer.issue_access(claims),
            refresh_token=returned.token,
        )

    async def authenticate(self, access_token: str) -> AuthContext:
        """Validate an unexpired access token and bind its subject to this context."""
        claims = self.issuer.decode_access(access_token)
        user_id = first_claim(claims, "sub")
        if not user_id:
            raise AuthenticationError("access token carries no subject")
        if self.settings.enforce_credential_generation:
            user = await self.users.find_by_id(user_id)
            if not user or first_claim(claims, "gen") != str(user.credential_generation):
                self.logger.info("access_token_generation_stale", user_id=user_id)
                raise SessionExpiredError("access token revoked")
        set_current_user_id(user_id)
        return AuthContext(
            user_id=user_id,
            email=first_claim(claims, "email"),
            roles=claim_values(claims, "role"),
            claims=claims,
        )

    async def logout(self, access_token: str, refresh_token: str) -> None:
        claims = self.issuer.recover_claims(access_token)
        user_id = first_claim(claims, "sub")
        session = await self.sessions.find_live(refresh_token, user_id) if user_id else None
        if not session:
            raise SessionExpiredError("refresh session expired or revoked")
        await self.sessions.revoke(session)
        self.logger.info("user_logged_out", user_id=user_id, session_id=session.id)

    # -- administration -----------------------------------------------------

    async def update_profile(self, user_id: str, patch: UserPatch) -> ProfileUpdate:
        user = await self._require_user(user_id)
        changed_email = patch.email if patch.email and patch.email != user.email else None
        changed_phone = patch.phone if patch.phone and patch.phone != user.phone else None
        await self.validator.check(
            email=changed_email, phone=changed_phone, exclude_user_id=user.id
        )
        if patch.first_name is not None:
            user.first_name = patch.first_name
        if patch.last_name is not None:
            user.last_name = patch.last_name
        if patch.email:
            user.email = patch.email
        if patch.phone:
            user.phone = patch.phone
        if patch.password:
            user.password_hash = self.hasher.hash(patch.password)
        updated = await self.users.update(user)
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        tokens = await self._issue_tokens(updated)
        self.logger.info(
            "user_profile_updated",
            user_id=updated.id,
            password_changed=bool(patch.password),
        )
        return ProfileUpdate(user=updated, tokens=tokens)

    async def ban(self, user_id: str) -> User:
        """Tombstone the user and revoke their refresh sessions.

        Access tokens already issued stay usable until they expire unless
        credential generation enforcement is switched on.
        """
        if not is_valid_object_id(user_id):
            raise InvalidInputError("malformed user id", detail={"user_id": user_id})
        user = await self.users.find_by_id_including_deleted(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        banned = await self.users.ban(user)
        revoked = await self.sessions.revoke_all_for_user(user_id)
        self.logger.info("user_banned", user_id=user_id, sessions_revoked=revoked)
        return banned

    async def unban(self, user_id: str) -> User:
        if not is_valid_object_id(user_id):
            raise InvalidInputError("malformed user id", detail={"user_id": user_id})
        user = await self.users.find_by_id_including_deleted(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if user.is_deleted:
            # Someone may have claimed the email or phone while this user was banned
            await self.validator.check(
                email=user.email, phone=user.phone, exclude_user_id=user.id
            )
        restored = await self.users.unban(user_id)
        self.logger.info("user_unbanned", user_id=user_id)
        return restored

    async def add_role(self, user_id: str, role_name: str) -> User:
        role = await self.roles.find_by_name(role_name)
        if not role:
            raise NotFoundError("role not found", detail={"role": role_name})
        user = await self._require_user(user_id)
        if user.has_role(role.name):
            return user
        user.roles.append(role)
        updated = await self.users.update(user)
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("user_role_added", user_id=user_id, role=role.name)
        return updated

    async def remove_role(self, user_id: str, role_name: str) -> User:
        role = await self.roles.find_by_name(role_name)
        if not role:
            raise NotFoundError("role not found", detail={"role": role_name})
        user = await self._require_user(user_id)
        if not user.has_role(role.name):
            return user
        user.roles = [held for held in user.roles if held.name != role.name]
        updated = await self.users.update(user)
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("user_role_removed", user_id=user_id, role=role.name)
        return updated


__all__ = [
    "AuthContext",
    "AuthenticationService",
    "ProfileUpdate",
    "TokenPair",
    "UserPatch",
    "UserProfile",
    "build_claims",
]
