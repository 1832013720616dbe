"""User service: registration, sessions and profile changes.

Credentials and token handling belong to the HTTP layer; this service
only keeps the account record, the session cache and the user's cached
copies coherent.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from taskflow.db.models.users import User, UserTaskStats
from taskflow.services.cache_keys import user_key, user_task_stats_key
from taskflow.services.repository import EntityNotFoundError, entity_to_dict

if TYPE_CHECKING:
    from collections.abc import Callable
    from contextlib import AbstractAsyncContextManager

    from taskflow.services.cache import CacheService
    from taskflow.services.cache_invalidation import CacheInvalidator
    from taskflow.services.job_queue import JobQueueService
    from taskflow.services.repository import Repository

logger = logging.getLogger(__name__)


class UserServiceError(Exception):
    """Base exception for user operations."""

    pass


class EmailAlreadyRegisteredError(UserServiceError):
    """Raised when registering an email that already has an account."""

    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__(f"User with this email already exists: {email}")


class AccountInactiveError(UserServiceError):
    """Raised when opening a session for a deactivated account."""

    pass


class UserService:
    """Accounts and their caches."""

    def __init__(
        self,
        repository_scope: Callable[[], AbstractAsyncContextManager[Repository]],
        cache: CacheService,
        invalidator: CacheInvalidator,
        job_queue: JobQueueService,
    ) -> None:
        self.repository_scope = repository_scope
        self.cache = cache
        self.invalidator = invalidator
        self.job_queue = job_queue

    async def register(self, email: str, first_name: str, last_name: str) -> User:
        """Create an account, open its session and send the welcome messages.

        Raises:
            EmailAlreadyRegisteredError: If the email is taken.
        """
        email = email.strip().lower()
        now = datetime.now(UTC)
        async with self.repository_scope() as repository:
            existing = await repository.query(User, {"email": email}, limit=1)
            if existing.items:
                raise EmailAlreadyRegisteredError(email)
            user = await repository.save(
                User(
                    user_id=uuid.uuid4(),
                    created_at=now,
                    updated_at=now,
                    email=email,
                    first_name=first_name,
                    last_name=last_name,
                    is_active=True,
                    last_login_at=None,
                )
            )
            await repository.commit()

        try:
            await self.job_queue.enqueue_welcome_email(user.user_id, user.email, user.full_name)
            await self.job_queue.enqueue_in_app_notification(
                user.user_id, "welcome", f"Welcome to TaskFlow, {user.first_name}!"
            )
        finally:
            await self.invalidator.invalidate_user(user.user_id)
        await self.cache.set_user_session(user.user_id, _session_data(user, now))

        logger.info("User registered: user_id=%s", user.user_id)
        return user

    async def start_session(self, user_id: uuid.UUID) -> dict[str, Any]:
        """Record a login and cache the session and the user.

        Raises:
            EntityNotFoundError: If the user does not exist.
            AccountInactiveError: If the account is deactivated.
        """
        now = datetime.now(UTC)
        async with self.repository_scope() as repository:
            user = await repository.require(User, user_id)
            if not user.is_active:
                raise AccountInactiveError(f"Account is deactivated: {user_id}")
            user.last_login_at = now
            user = await repository.save(user)
            await repository.commit()

        await self.invalidator.invalidate_user(user_id)
        session = _session_data(user, now)
        await self.cache.set_user_session(user_id, session)
        await self.cache.set_user_cache(user_id, entity_to_dict(user))

        logger.info("Session started: user_id=%s", user_id)
        return session

    async def get_session(self, user_id: uuid.UUID) -> dict[str, Any] | None:
        return await self.cache.get_user_session(user_id)

    async def end_session(self, user_id: uuid.UUID) -> None:
        """Logout: drop the session and every cached copy of the user."""
        await self.invalidator.invalidate_session(user_id)
        await self.invalidator.invalidate_user(user_id)
        logger.info("Session ended: user_id=%s", user_id)

    async def update_profile(
        self,
        user_id: uuid.UUID,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> User:
        async with self.repository_scope() as repository:
            user = await repository.require(User, user_id)
            if first_name is not None:
                user.first_name = first_name
            if last_name is not None:
                user.last_name = last_name
            user.updated_at = datetime.now(UTC)
            user = await repository.save(user)
            await repository.commit()

        await self.invalidator.invalidate_user(user_id)
        return user

    async def deactivate(self, user_id: uuid.UUID) -> User:
        """Deactivate an account and end its session."""
        async with self.repository_scope() as repository:
            user = await repository.require(User, user_id)
            user.is_active = False
            user.updated_at = datetime.now(UTC)
            user = await repository.save(user)
            await repository.commit()

        await self.invalidator.invalidate_user(user_id)
        await self.invalidator.invalidate_session(user_id)
        logger.info("User deactivated: user_id=%s", user_id)
        return user

    async def get_user(self, user_id: uuid.UUID) -> dict[str, Any]:
        """User as a dict, served from ``user:<id>`` when cached.

        Raises:
            EntityNotFoundError: If the user does not exist.
        """

        async def load() -> dict[str, Any] | None:
            async with self.repository_scope() as repository:
                user = await repository.get(User, user_id)
                return entity_to_dict(user) if user else None

        data = await self.cache.get_or_compute(
            user_key(user_id), self.cache.settings.entity_ttl, load
        )
        if data is None:
            raise EntityNotFoundError(User, user_id)
        return data

    async def get_task_stats(self, user_id: uuid.UUID) -> dict[str, Any] | None:
        """Stored task counters of a user, cached under ``user:<id>:task-stats``.

        None until the analytics queue has computed them once.
        """

        async def load() -> dict[str, Any] | None:
            async with self.repository_scope() as repository:
                stats = await repository.get(UserTaskStats, user_id)
                return entity_to_dict(stats) if stats else None

        return await self.cache.get_or_compute(
            user_task_stats_key(user_id), self.cache.settings.list_ttl, load
        )


def _session_data(user: User, now: datetime) -> dict[str, Any]:
    return {"user": entity_to_dict(user), "login_time": now.isoformat()}
