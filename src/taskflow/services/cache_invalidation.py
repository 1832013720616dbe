"""Cache invalidation rules coupling entity mutations to cache keys.

Every mutation of a user, project or task (including membership and
relation changes) must delete every cache key that could now be stale.
The rule is coarse and conservative: a slightly larger key set is
preferred over any chance of a stale read.

Invalidation runs in the same logical operation as the mutation, after
the store commit and before the response is returned. It is never
deferred to a background job.

Session caches have their own lifetime and are dropped separately via
invalidate_session() (logout, password change, deactivation).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from taskflow.services.cache_keys import session_key

if TYPE_CHECKING:
    from collections.abc import Iterable

    from taskflow.services.cache import CacheService

logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    """Entity kinds that own cache keys."""

    USER = "user"
    PROJECT = "project"
    TASK = "task"


# Static dependency table. Templates ending in '*' are glob patterns.
INVALIDATION_TEMPLATES: dict[EntityKind, tuple[str, ...]] = {
    EntityKind.USER: (
        "user:{id}",
        "user:{id}:projects",
        "user:{id}:projects:*",
        "user:{id}:tasks",
        "user:{id}:task-stats",
    ),
    EntityKind.PROJECT: (
        "project:{id}",
        "project:{id}:tasks",
        "project:{id}:members",
        "project:{id}:stats",
    ),
    EntityKind.TASK: (
        "task:{id}",
        "task:{id}:comments",
        "task:{id}:attachments",
    ),
}


def keys_for(kind: EntityKind, entity_id: object) -> list[str]:
    """Expand the templates of ``kind`` for one entity id."""
    return [template.format(id=entity_id) for template in INVALIDATION_TEMPLATES[kind]]


class CacheInvalidator:
    """Applies the invalidation table against a CacheService."""

    def __init__(self, cache: CacheService) -> None:
        self.cache = cache

    async def invalidate(self, kind: EntityKind, entity_id: object) -> list[str]:
        """Delete every key depending on one entity.

        Returns:
            The expanded keys and patterns that were targeted.
        """
        return await self._delete(keys_for(kind, entity_id))

    async def invalidate_user(self, user_id: object) -> list[str]:
        return await self.invalidate(EntityKind.USER, user_id)

    async def invalidate_project(
        self,
        project_id: object,
        member_ids: Iterable[object] = (),
    ) -> list[str]:
        """Invalidate a project and the project lists of its members."""
        keys = keys_for(EntityKind.PROJECT, project_id)
        for user_id in _unique(member_ids):
            keys.extend(_user_project_list_keys(user_id))
        return await self._delete(keys)

    async def invalidate_membership(self, project_id: object, user_id: object) -> list[str]:
        """A member joined, left or changed role."""
        keys = keys_for(EntityKind.PROJECT, project_id)
        keys.extend(_user_project_list_keys(user_id))
        return await self._delete(keys)

    async def invalidate_task(
        self,
        task_id: object,
        project_id: object | None = None,
        user_ids: Iterable[object] = (),
    ) -> list[str]:
        """Invalidate a task, its project and the task lists of related users.

        ``user_ids`` should hold every user whose task lists could change:
        creator, previous and new assignee.
        """
        keys = keys_for(EntityKind.TASK, task_id)
        if project_id is not None:
            keys.extend(keys_for(EntityKind.PROJECT, project_id))
        for user_id in _unique(user_ids):
            keys.append(f"user:{user_id}:tasks")
            keys.append(f"user:{user_id}:task-stats")
        return await self._delete(keys)

    async def invalidate_session(self, user_id: object) -> bool:
        """Drop a user's session cache."""
        deleted = await self.cache.delete(session_key(user_id))
        logger.info("Session cache invalidated: user_id=%s, ok=%s", user_id, deleted)
        return deleted

    async def _delete(self, keys: list[str]) -> list[str]:
        exact = [k for k in keys if "*" not in k]
        patterns = [k for k in keys if "*" in k]

        ok = await self.cache.delete(*exact) if exact else True
        for pattern in patterns:
            ok = await self.cache.delete_pattern(pattern) and ok

        if ok:
            logger.debug("Cache invalidated: keys=%s", keys)
        else:
            logger.error("Cache invalidation incomplete, entries may be stale: keys=%s", keys)
        return keys


def _user_project_list_keys(user_id: object) -> list[str]:
    return [f"user:{user_id}:projects", f"user:{user_id}:projects:*"]


def _unique(ids: Iterable[object]) -> list[object]:
    seen: list[object] = []
    for value in ids:
        if value is not None and value not in seen:
            seen.append(value)
    return seen
