"""User lookups for assignment, cached by email and by id."""

from __future__ import annotations

import logging
from typing import Any

from core.cache import KeyedCache
from core.data.store import Store

logger = logging.getLogger(__name__)


class UserService:
    """Resolves admin users; caches are dropped by the write paths below."""

    def __init__(self, store: Store, cache: KeyedCache | None = None) -> None:
        self._store = store
        self._cache = cache or KeyedCache("users", default_ttl=600)
        self._cache.on_invalidate(
            "user.created",
            lambda email, **_: [f"id-by-email:{email.lower()}"],
        )
        self._cache.on_invalidate(
            "user.email_changed",
            lambda user_id, old_email, new_email: [
                f"id-by-email:{old_email.lower()}",
                f"id-by-email:{new_email.lower()}",
                f"user:{user_id}",
            ],
        )

    @property
    def cache(self) -> KeyedCache:
        return self._cache

    def get_user_id_by_email(self, email: str | None) -> int | None:
        if not email:
            return None
        key = f"id-by-email:{email.lower()}"
        return self._cache.get_or_load(
            key,
            lambda: self._store.fetch_value(
                "SELECT id FROM users WHERE lower(email) = ?", (email.lower(),)
            ),
        )

    def get_user_by_id(self, user_id: int) -> dict[str, Any] | None:
        return self._cache.get_or_load(
            f"user:{user_id}",
            lambda: self._store.fetch_one("SELECT id, email, name, role FROM users WHERE id = ?", (user_id,)),
        )

    def create_user(self, email: str, name: str | None = None, role: str = "admin") -> int:
        user_id = self._store.insert(
            "INSERT INTO users (email, name, role) VALUES (?, ?, ?)", (email, name, role)
        )
        # A cached miss for this email would otherwise hide the new user
        self._cache.fire("user.created", email=email)
        logger.info("Created user %d (%s)", user_id, email)
        return user_id

    def update_user_email(self, user_id: int, new_email: str) -> bool:
        old_email = self._store.fetch_value("SELECT email FROM users WHERE id = ?", (user_id,))
        if old_email is None:
            logger.warning("Cannot change email of unknown user %d", user_id)
            return False
        self._store.execute("UPDATE users SET email = ? WHERE id = ?", (new_email, user_id))
        self._cache.fire("user.email_changed", user_id=user_id, old_email=old_email, new_email=new_email)
        return True
