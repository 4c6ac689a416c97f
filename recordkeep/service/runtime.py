from __future__ import annotations

import threading
from typing import List, Optional
from urllib.parse import urlparse, urlunparse

from pymongo import ASCENDING, IndexModel

from recordkeep.config import Settings, get_settings, reset_settings_cache
from recordkeep.logging import get_logger
from recordkeep.service.auth import AuthenticationService
from recordkeep.service.passwords import Argon2PasswordHasher
from recordkeep.service.tokens import CredentialIssuer
from recordkeep.storage.collection import Collection, MemoryCollection
from recordkeep.storage.mongo import MongoCollection, close_clients, get_database
from recordkeep.storage.sessions import RefreshSessionStore
from recordkeep.storage.users import RoleCatalog, UserDirectory

logger = get_logger(__name__)

USERS = "users"
ROLES = "roles"
REFRESH_SESSIONS = "refresh_sessions"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: mongodb://app:secret@db:27017 -> mongodb://app:***@db:27017
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.netloc.replace(f":{parsed.password}@", ":***@")
            return urlunparse(parsed._replace(netloc=netloc))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the stores and services shared by every request."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.mongo_collections: List[MongoCollection] = []
        if self.settings.use_memory_store:
            users: Collection = MemoryCollection(USERS)
            roles: Collection = MemoryCollection(ROLES, unique_fields=("name",))
            refresh_sessions: Collection = MemoryCollection(
                REFRESH_SESSIONS, unique_fields=("token",)
            )
        else:
            database = get_database(self.settings)
            users = MongoCollection(
                database[USERS],
                indexes=[
                    IndexModel([("email", ASCENDING), ("is_deleted", ASCENDING)]),
                    IndexModel([("phone", ASCENDING), ("is_deleted", ASCENDING)]),
                ],
            )
            roles = MongoCollection(
                database[ROLES], indexes=[IndexModel([("name", ASCENDING)], unique=True)]
            )
            refresh_sessions = MongoCollection(
                database[REFRESH_SESSIONS],
                indexes=[
                    IndexModel([("token", ASCENDING)], unique=True),
                    IndexModel([("owner_user_id", ASCENDING), ("is_deleted", ASCENDING)]),
                ],
            )
            self.mongo_collections = [users, roles, refresh_sessions]
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "mongo",
            mongo_uri=None if self.settings.use_memory_store else _mask_url_password(self.settings.mongo_uri),
        )

        self.users = UserDirectory(users)
        self.roles = RoleCatalog(roles)
        self.sessions = RefreshSessionStore(refresh_sessions)
        self.issuer = CredentialIssuer(self.settings)
        self.hasher = Argon2PasswordHasher()
        self.auth = AuthenticationService(
            self.settings,
            self.users,
            self.roles,
            self.sessions,
            self.issuer,
            self.hasher,
        )
        self._started = False

    async def startup(self) -> None:
        """Create indexes and seed roles; safe to call more than once."""
        if self._started:
            return
        for collection in self.mongo_collections:
            await collection.ensure_indexes()
        seeded = await self.roles.ensure_all(self.settings.seed_roles)
        self._started = True
        logger.info("runtime_started", roles=[role.name for role in seeded])

    async def close(self) -> None:
        if self.mongo_collections:
            await close_clients()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent races during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
