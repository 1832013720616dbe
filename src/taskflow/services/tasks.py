"""Task service: request-path task mutations and cached task reads.

Mutations commit, enqueue their side effects (notifications, stats
recomputation, cleanup) and invalidate the task, its project and the
task lists of every user whose lists could change.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from taskflow.db.models.base import MemberRole, TaskPriority, TaskStatus
from taskflow.db.models.tasks import Task
from taskflow.services.cache_keys import task_key, user_tasks_key
from taskflow.services.projects import CONTRIBUTOR_ROLES, require_project_role
from taskflow.services.repository import EntityNotFoundError, entity_to_dict

if TYPE_CHECKING:
    from collections.abc import Callable
    from contextlib import AbstractAsyncContextManager

    from taskflow.services.cache import CacheService
    from taskflow.services.cache_invalidation import CacheInvalidator
    from taskflow.services.job_queue import JobQueueService
    from taskflow.services.repository import Repository

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "description", "priority", "due_date")

READER_ROLES = frozenset(MemberRole)


class TaskService:
    """Tasks inside projects."""

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

    async def create_task(
        self,
        project_id: uuid.UUID,
        actor_id: uuid.UUID,
        title: str,
        description: str | None = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        assigned_to: uuid.UUID | None = None,
        due_date: datetime | None = None,
    ) -> Task:
        now = datetime.now(UTC)
        async with self.repository_scope() as repository:
            await require_project_role(
                repository, project_id, actor_id, CONTRIBUTOR_ROLES, "create tasks"
            )
            task = await repository.save(
                Task(
                    task_id=uuid.uuid4(),
                    created_at=now,
                    updated_at=now,
                    project_id=project_id,
                    title=title,
                    description=description,
                    status=TaskStatus.TODO,
                    priority=priority,
                    assigned_to=assigned_to,
                    created_by=actor_id,
                    due_date=due_date,
                    completed_at=None,
                )
            )
            await repository.commit()

        try:
            await self.job_queue.enqueue_task_notification(
                task.task_id, "task_created", actor_id, assigned_to=assigned_to
            )
            await self.job_queue.enqueue_project_stats(project_id)
            if assigned_to is not None:
                await self.job_queue.enqueue_task_stats(assigned_to, project_id)
        finally:
            await self.invalidator.invalidate_task(
                task.task_id, project_id, user_ids=(actor_id, assigned_to)
            )

        logger.info("Task created: task_id=%s, project_id=%s", task.task_id, project_id)
        return task

    async def update_task(self, task_id: uuid.UUID, actor_id: uuid.UUID, **changes: Any) -> Task:
        """Change title, description, priority or due date."""
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            msg = f"Cannot update task field(s): {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        async with self.repository_scope() as repository:
            task = await repository.require(Task, task_id)
            await require_project_role(
                repository, task.project_id, actor_id, CONTRIBUTOR_ROLES, "edit tasks"
            )
            for name, value in changes.items():
                if name == "priority" and not isinstance(value, TaskPriority):
                    value = TaskPriority(value)
                setattr(task, name, value)
            task.updated_at = datetime.now(UTC)
            task = await repository.save(task)
            await repository.commit()

        try:
            await self.job_queue.enqueue_task_notification(
                task_id, "task_updated", actor_id, assigned_to=task.assigned_to
            )
        finally:
            await self.invalidator.invalidate_task(
                task_id, task.project_id, user_ids=(task.created_by, task.assigned_to)
            )
        return task

    async def assign_task(
        self, task_id: uuid.UUID, actor_id: uuid.UUID, assigned_to: uuid.UUID | None
    ) -> Task:
        """Assign (or unassign with None) a task."""
        async with self.repository_scope() as repository:
            task = await repository.require(Task, task_id)
            await require_project_role(
                repository, task.project_id, actor_id, CONTRIBUTOR_ROLES, "assign tasks"
            )
            if assigned_to is not None:
                await require_project_role(
                    repository, task.project_id, assigned_to, READER_ROLES, "be assigned tasks"
                )
            previous = task.assigned_to
            task.assigned_to = assigned_to
            task.updated_at = datetime.now(UTC)
            task = await repository.save(task)
            await repository.commit()

        try:
            if assigned_to is not None:
                await self.job_queue.enqueue_task_notification(
                    task_id, "task_assigned", actor_id, assigned_to=assigned_to
                )
            for user_id in {previous, assigned_to} - {None}:
                await self.job_queue.enqueue_task_stats(user_id, task.project_id)
        finally:
            await self.invalidator.invalidate_task(
                task_id, task.project_id, user_ids=(task.created_by, previous, assigned_to)
            )

        logger.info("Task assigned: task_id=%s, assigned_to=%s", task_id, assigned_to)
        return task

    async def change_status(
        self, task_id: uuid.UUID, actor_id: uuid.UUID, status: TaskStatus
    ) -> Task:
        """Move a task to ``status``, stamping or clearing ``completed_at``."""
        now = datetime.now(UTC)
        async with self.repository_scope() as repository:
            task = await repository.require(Task, task_id)
            await require_project_role(
                repository, task.project_id, actor_id, CONTRIBUTOR_ROLES, "change task status"
            )
            if status == TaskStatus.DONE and task.status != TaskStatus.DONE:
                task.completed_at = now
            elif status != TaskStatus.DONE and task.status == TaskStatus.DONE:
                task.completed_at = None
            task.status = status
            task.updated_at = now
            task = await repository.save(task)
            await repository.commit()

        try:
            await self.job_queue.enqueue_task_notification(
                task_id,
                "task_status_changed",
                actor_id,
                assigned_to=task.assigned_to,
                new_status=status.value,
            )
            await self.job_queue.enqueue_project_stats(task.project_id)
            if task.assigned_to is not None:
                await self.job_queue.enqueue_task_stats(task.assigned_to, task.project_id)
        finally:
            await self.invalidator.invalidate_task(
                task_id, task.project_id, user_ids=(task.created_by, task.assigned_to)
            )

        logger.info("Task status changed: task_id=%s, status=%s", task_id, status.value)
        return task

    async def delete_task(self, task_id: uuid.UUID, actor_id: uuid.UUID) -> None:
        """Delete a task. Comments, attachments and views go through a cleanup job."""
        async with self.repository_scope() as repository:
            task = await repository.require(Task, task_id)
            await require_project_role(
                repository, task.project_id, actor_id, CONTRIBUTOR_ROLES, "delete tasks"
            )
            await repository.delete(Task, task_id)
            await repository.commit()

        try:
            await self.job_queue.enqueue_task_cleanup(task_id, task.project_id, actor_id)
            if task.assigned_to is not None:
                await self.job_queue.enqueue_task_stats(task.assigned_to, task.project_id)
        finally:
            await self.invalidator.invalidate_task(
                task_id, task.project_id, user_ids=(task.created_by, task.assigned_to)
            )
        logger.info("Task deleted: task_id=%s, deleted_by=%s", task_id, actor_id)

    async def get_task(self, task_id: uuid.UUID, viewer_id: uuid.UUID | None = None) -> dict[str, Any]:
        """Task as a dict, served from ``task:<id>`` when cached.

        When ``viewer_id`` is given the view is recorded by the analytics
        queue.

        Raises:
            EntityNotFoundError: If the task does not exist.
        """

        async def load() -> dict[str, Any] | None:
            async with self.repository_scope() as repository:
                task = await repository.get(Task, task_id)
                return entity_to_dict(task) if task else None

        data = await self.cache.get_or_compute(
            task_key(task_id), self.cache.settings.entity_ttl, load
        )
        if data is None:
            raise EntityNotFoundError(Task, task_id)
        if viewer_id is not None:
            await self.job_queue.enqueue_task_view(task_id, viewer_id)
        return data

    async def list_assigned_tasks(self, user_id: uuid.UUID) -> list[dict[str, Any]]:
        """Tasks assigned to a user, cached under ``user:<id>:tasks``."""

        async def load() -> list[dict[str, Any]]:
            async with self.repository_scope() as repository:
                tasks = await repository.query_all(Task, {"assigned_to": user_id})
                return [entity_to_dict(t) for t in tasks]

        return await self.cache.get_or_compute(
            user_tasks_key(user_id), self.cache.settings.list_ttl, load
        )
