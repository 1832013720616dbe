"""Project service: request-path mutations and cached reads for projects.

Every mutation follows the same order:

1. change the authoritative store and commit
2. enqueue the jobs describing its side effects
3. invalidate the cache keys the change made stale

Invalidation happens before the method returns, so a read issued after
the call never sees a stale cached copy. It runs even when enqueueing
fails: the commit already happened and the cached copies are stale.
"""

from __future__ import annotations

import logging
import math
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from taskflow.db.models.base import MemberRole, ProjectStatus, TaskStatus
from taskflow.db.models.projects import Project, ProjectMember, ProjectStats
from taskflow.db.models.tasks import Task
from taskflow.db.models.users import User
from taskflow.services.cache_keys import (
    project_key,
    project_members_key,
    project_stats_key,
    user_projects_page_key,
)
from taskflow.services.repository import EntityNotFoundError, entity_to_dict

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from contextlib import AbstractAsyncContextManager

    from taskflow.services.cache import CacheService
    from taskflow.services.cache_invalidation import CacheInvalidator
    from taskflow.services.job_queue import JobQueueService
    from taskflow.services.repository import Repository

logger = logging.getLogger(__name__)

MANAGER_ROLES = frozenset({MemberRole.OWNER, MemberRole.ADMIN})
CONTRIBUTOR_ROLES = frozenset({MemberRole.OWNER, MemberRole.ADMIN, MemberRole.MEMBER})

UPDATABLE_FIELDS = ("name", "description", "color", "status")


class ProjectServiceError(Exception):
    """Base exception for project operations."""

    pass


class PermissionDeniedError(ProjectServiceError):
    """Raised when a user's project role does not allow an operation."""

    def __init__(self, user_id: object, project_id: object, action: str) -> None:
        self.user_id = user_id
        self.project_id = project_id
        self.action = action
        super().__init__(f"User {user_id} may not {action} in project {project_id}")


class MembershipError(ProjectServiceError):
    """Raised for invalid membership changes (duplicate member, removing the owner)."""

    pass


async def find_membership(
    repository: Repository, project_id: uuid.UUID, user_id: uuid.UUID
) -> ProjectMember | None:
    page = await repository.query(
        ProjectMember, {"project_id": project_id, "user_id": user_id}, limit=1
    )
    return page.items[0] if page.items else None


async def require_project_role(
    repository: Repository,
    project_id: uuid.UUID,
    user_id: uuid.UUID,
    roles: Iterable[MemberRole],
    action: str,
) -> ProjectMember:
    """Return the user's membership, or raise if its role is not in ``roles``.

    Raises:
        EntityNotFoundError: If the project does not exist.
        PermissionDeniedError: If the user is not a member with a suitable role.
    """
    await repository.require(Project, project_id)
    membership = await find_membership(repository, project_id, user_id)
    if membership is None or membership.role not in frozenset(roles):
        raise PermissionDeniedError(user_id, project_id, action)
    return membership


async def compute_project_stats(
    repository: Repository, project_id: uuid.UUID, now: datetime
) -> ProjectStats:
    """Build a fresh ProjectStats row from the project's tasks and members."""
    tasks = await repository.query_all(Task, {"project_id": project_id})
    members = await repository.query_all(ProjectMember, {"project_id": project_id})

    breakdown = dict.fromkeys((s.value for s in TaskStatus), 0)
    for task in tasks:
        breakdown[task.status.value] += 1

    total = len(tasks)
    completed = breakdown[TaskStatus.DONE.value]
    return ProjectStats(
        project_id=project_id,
        total_tasks=total,
        completed_tasks=completed,
        completion_rate=round(completed / total * 100, 2) if total else 0.0,
        member_count=len(members),
        status_breakdown=breakdown,
        computed_at=now,
    )


class ProjectService:
    """Projects and memberships.

    Attributes:
        repository_scope: Factory of repository units of work.
        cache: Cache for entity, list and stats copies.
        invalidator: Applies the invalidation table after each mutation.
        job_queue: Receives the side-effect jobs of each mutation.
    """

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

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def create_project(
        self,
        owner_id: uuid.UUID,
        name: str,
        description: str | None = None,
        color: str | None = None,
    ) -> Project:
        """Create a project with ``owner_id`` as its owner."""
        now = datetime.now(UTC)
        async with self.repository_scope() as repository:
            await repository.require(User, owner_id)
            project = Project(
                project_id=uuid.uuid4(),
                created_at=now,
                updated_at=now,
                name=name,
                description=description,
                color=color,
                status=ProjectStatus.ACTIVE,
                owner_id=owner_id,
            )
            project = await repository.save(project)
            await repository.save(
                ProjectMember(
                    membership_id=uuid.uuid4(),
                    project_id=project.project_id,
                    user_id=owner_id,
                    role=MemberRole.OWNER,
                    joined_at=now,
                )
            )
            await repository.commit()

        try:
            await self.job_queue.enqueue_in_app_notification(
                owner_id,
                "project_created",
                f"You created a new project: {project.name}",
                {"project_id": str(project.project_id)},
            )
        finally:
            await self.invalidator.invalidate_membership(project.project_id, owner_id)
        await self.cache.set_project_cache(project.project_id, entity_to_dict(project))

        logger.info("Project created: project_id=%s, owner_id=%s", project.project_id, owner_id)
        return project

    async def update_project(
        self, project_id: uuid.UUID, actor_id: uuid.UUID, **changes: Any
    ) -> Project:
        """Change name, description, color or status. Owners and admins only."""
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            msg = f"Cannot update project field(s): {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        async with self.repository_scope() as repository:
            await require_project_role(
                repository, project_id, actor_id, MANAGER_ROLES, "update the project"
            )
            project = await repository.require(Project, project_id)
            for name, value in changes.items():
                if name == "status" and not isinstance(value, ProjectStatus):
                    value = ProjectStatus(value)
                setattr(project, name, value)
            project.updated_at = datetime.now(UTC)
            project = await repository.save(project)
            member_ids = await self._member_ids(repository, project_id)
            await repository.commit()

        await self.invalidator.invalidate_project(project_id, member_ids)
        logger.info("Project updated: project_id=%s, fields=%s", project_id, sorted(changes))
        return project

    async def delete_project(self, project_id: uuid.UUID, actor_id: uuid.UUID) -> None:
        """Delete a project. Only the owner may do this.

        Each task is removed here; what hangs off the tasks is removed
        by cleanup jobs.
        """
        async with self.repository_scope() as repository:
            await require_project_role(
                repository, project_id, actor_id, {MemberRole.OWNER}, "delete the project"
            )
            tasks = await repository.query_all(Task, {"project_id": project_id})
            members = await repository.query_all(ProjectMember, {"project_id": project_id})
            for task in tasks:
                await repository.delete(Task, task.task_id)
            for member in members:
                await repository.delete(ProjectMember, member.membership_id)
            await repository.delete(ProjectStats, project_id)
            await repository.delete(Project, project_id)
            await repository.commit()

        try:
            for task in tasks:
                await self.job_queue.enqueue_task_cleanup(task.task_id, project_id, actor_id)
        finally:
            await self.invalidator.invalidate_project(project_id, [m.user_id for m in members])
            for task in tasks:
                await self.invalidator.invalidate_task(
                    task.task_id, user_ids=(task.assigned_to, task.created_by)
                )
        logger.info("Project deleted: project_id=%s, tasks=%d", project_id, len(tasks))

    async def add_member(
        self,
        project_id: uuid.UUID,
        actor_id: uuid.UUID,
        user_id: uuid.UUID,
        role: MemberRole = MemberRole.MEMBER,
    ) -> ProjectMember:
        """Add a user to a project. Owners and admins only.

        Raises:
            MembershipError: If the user is already a member or the role is owner.
        """
        if role == MemberRole.OWNER:
            raise MembershipError("A project has exactly one owner")

        async with self.repository_scope() as repository:
            await require_project_role(
                repository, project_id, actor_id, MANAGER_ROLES, "add members"
            )
            await repository.require(User, user_id)
            if await find_membership(repository, project_id, user_id) is not None:
                raise MembershipError(f"User {user_id} is already a member of {project_id}")
            project = await repository.require(Project, project_id)
            membership = await repository.save(
                ProjectMember(
                    membership_id=uuid.uuid4(),
                    project_id=project_id,
                    user_id=user_id,
                    role=role,
                    joined_at=datetime.now(UTC),
                )
            )
            await repository.commit()

        try:
            await self.job_queue.enqueue_in_app_notification(
                user_id,
                "project_invitation",
                f"You have been added to project: {project.name}",
                {"project_id": str(project_id), "role": role.value},
            )
            await self.job_queue.enqueue_project_stats(project_id)
        finally:
            await self.invalidator.invalidate_membership(project_id, user_id)

        logger.info(
            "Member added: project_id=%s, user_id=%s, role=%s", project_id, user_id, role.value
        )
        return membership

    async def remove_member(
        self, project_id: uuid.UUID, actor_id: uuid.UUID, user_id: uuid.UUID
    ) -> None:
        """Remove a member. Owners and admins only; members may remove themselves.

        Raises:
            MembershipError: If the user is the owner or not a member.
        """
        async with self.repository_scope() as repository:
            if actor_id != user_id:
                await require_project_role(
                    repository, project_id, actor_id, MANAGER_ROLES, "remove members"
                )
            membership = await find_membership(repository, project_id, user_id)
            if membership is None:
                raise MembershipError(f"User {user_id} is not a member of {project_id}")
            if membership.role == MemberRole.OWNER:
                raise MembershipError("The project owner cannot be removed")
            await repository.delete(ProjectMember, membership.membership_id)
            await repository.commit()

        try:
            await self.job_queue.enqueue_project_stats(project_id)
        finally:
            await self.invalidator.invalidate_membership(project_id, user_id)
        logger.info("Member removed: project_id=%s, user_id=%s", project_id, user_id)

    # -------------------------------------------------------------------------
    # Cached reads
    # -------------------------------------------------------------------------

    async def get_project(self, project_id: uuid.UUID) -> dict[str, Any]:
        """Project as a dict, served from ``project:<id>`` when cached.

        Raises:
            EntityNotFoundError: If the project does not exist.
        """

        async def load() -> dict[str, Any] | None:
            async with self.repository_scope() as repository:
                project = await repository.get(Project, project_id)
                return entity_to_dict(project) if project else None

        data = await self.cache.get_or_compute(
            project_key(project_id), self.cache.settings.entity_ttl, load
        )
        if data is None:
            raise EntityNotFoundError(Project, project_id)
        return data

    async def get_members(self, project_id: uuid.UUID) -> list[dict[str, Any]]:
        """Members of a project, cached under ``project:<id>:members``."""

        async def load() -> list[dict[str, Any]]:
            async with self.repository_scope() as repository:
                members = await repository.query_all(ProjectMember, {"project_id": project_id})
                return [entity_to_dict(m) for m in members]

        return await self.cache.get_or_compute(
            project_members_key(project_id), self.cache.settings.list_ttl, load
        )

    async def get_project_stats(self, project_id: uuid.UUID) -> dict[str, Any]:
        """Statistics of a project, cached under ``project:<id>:stats``.

        Served from the stored ProjectStats row. When the analytics
        queue has not produced one yet, the stats are computed on the
        spot and a recompute is enqueued.
        """

        async def load() -> dict[str, Any]:
            async with self.repository_scope() as repository:
                await repository.require(Project, project_id)
                stored = await repository.get(ProjectStats, project_id)
                if stored is not None:
                    return stored.as_dict()
                fresh = await compute_project_stats(repository, project_id, datetime.now(UTC))
            await self.job_queue.enqueue_project_stats(project_id)
            return fresh.as_dict()

        return await self.cache.get_or_compute(
            project_stats_key(project_id), self.cache.settings.list_ttl, load
        )

    async def list_user_projects(
        self,
        user_id: uuid.UUID,
        status: ProjectStatus | None = None,
        page: int = 1,
        per_page: int = 10,
    ) -> dict[str, Any]:
        """One page of the projects a user belongs to.

        Pages are cached under ``user:<id>:projects:<status>:<page>``.
        """
        if page < 1 or per_page < 1:
            msg = "page and per_page must be positive"
            raise ValueError(msg)
        status_value = status.value if status else None

        async def load() -> dict[str, Any]:
            async with self.repository_scope() as repository:
                memberships = await repository.query_all(ProjectMember, {"user_id": user_id})
                roles = {m.project_id: m.role.value for m in memberships}
                filters: dict[str, Any] = {"project_id": list(roles)}
                if status is not None:
                    filters["status"] = status
                result = await repository.query(
                    Project, filters, offset=(page - 1) * per_page, limit=per_page
                )
            return {
                "projects": [
                    {**entity_to_dict(p), "role": roles[p.project_id]} for p in result.items
                ],
                "pagination": {
                    "current_page": page,
                    "total_pages": math.ceil(result.total / per_page),
                    "total_items": result.total,
                    "items_per_page": per_page,
                },
            }

        return await self.cache.get_or_compute(
            user_projects_page_key(user_id, status_value, page),
            self.cache.settings.list_ttl,
            load,
        )

    @staticmethod
    async def _member_ids(repository: Repository, project_id: uuid.UUID) -> list[uuid.UUID]:
        members = await repository.query_all(ProjectMember, {"project_id": project_id})
        return [m.user_id for m in members]
