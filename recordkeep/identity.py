"""Identity of the authenticated caller, scoped to the current request context.

Held in a ``ContextVar``: every asyncio task (and every thread) starts from a
copy of its parent's context, so setting the identity while serving one
request is never visible to a concurrently running request.
"""

from __future__ import annotations

import contextlib
from contextvars import ContextVar, Token
from typing import Iterator, Optional

_current_user_id: ContextVar[Optional[str]] = ContextVar("current_user_id", default=None)


def get_current_user_id() -> Optional[str]:
    return _current_user_id.get()


def set_current_user_id(user_id: Optional[str]) -> Token:
    """Bind ``user_id`` to the current context; pass the token to ``reset_current_user_id``."""
    return _current_user_id.set(user_id)


def reset_current_user_id(token: Token) -> None:
    _current_user_id.reset(token)


@contextlib.contextmanager
def identity_scope(user_id: Optional[str]) -> Iterator[None]:
    """Run a block as ``user_id``, restoring the previous identity afterwards."""
    token = _current_user_id.set(user_id)
    try:
        yield
    finally:
        _current_user_id.reset(token)


__all__ = [
    "get_current_user_id",
    "identity_scope",
    "reset_current_user_id",
    "set_current_user_id",
]
