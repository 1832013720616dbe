"""Analytics handlers (analytics queue).

Every statistic is recomputed from the tasks table and written over the
previous row. Nothing is incremented, so running a job twice stores the
same values as running it once.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from taskflow.db.models.base import TaskStatus
from taskflow.db.models.projects import Project
from taskflow.db.models.tasks import Task, TaskView
from taskflow.db.models.users import UserTaskStats
from taskflow.services.cache_keys import project_stats_key, user_task_stats_key
from taskflow.services.projects import compute_project_stats
from taskflow.worker.handlers.common import stable_id

if TYPE_CHECKING:
    from taskflow.worker.context import HandlerContext

logger = logging.getLogger(__name__)


class ProjectStatsPayload(BaseModel):
    project_id: uuid.UUID


class GenerateProjectStatsPayload(BaseModel):
    project_id: uuid.UUID
    date_range: str = Field(default="30d", pattern=r"^[1-9][0-9]{0,3}d$")


class TaskStatsPayload(BaseModel):
    user_id: uuid.UUID
    project_id: uuid.UUID | None = None


class TaskViewPayload(BaseModel):
    task_id: uuid.UUID
    user_id: uuid.UUID


async def update_project_stats(
    ctx: HandlerContext, payload: ProjectStatsPayload
) -> dict[str, Any] | None:
    """Recompute and overwrite the stored statistics of one project.

    A project deleted since the job was enqueued is skipped, so no
    statistics row outlives it.
    """
    if await ctx.repository.get(Project, payload.project_id) is None:
        logger.info("Project gone, skipping stats: project_id=%s", payload.project_id)
        return {"skipped": True, "reason": "project_not_found"}

    stats = await compute_project_stats(ctx.repository, payload.project_id, datetime.now(UTC))
    await ctx.repository.save(stats)
    await ctx.repository.commit()
    await ctx.cache.delete(project_stats_key(payload.project_id))

    logger.info(
        "Project stats updated: project_id=%s, total=%d, completed=%d",
        payload.project_id,
        stats.total_tasks,
        stats.completed_tasks,
    )
    return {"updated": True, "stats": stats.as_dict()}


async def generate_project_stats(
    ctx: HandlerContext, payload: GenerateProjectStatsPayload
) -> dict[str, Any] | None:
    """Report on the tasks created in the trailing ``date_range`` window.

    The report is the job result; nothing is written to the store.
    """
    now = datetime.now(UTC)
    since = now - timedelta(days=int(payload.date_range[:-1]))
    tasks = [
        t
        for t in await ctx.repository.query_all(Task, {"project_id": payload.project_id})
        if t.created_at is not None and t.created_at >= since
    ]
    done = [t for t in tasks if t.status == TaskStatus.DONE]
    durations = [
        (t.completed_at - t.created_at).total_seconds() / 3600
        for t in done
        if t.completed_at is not None
    ]
    return {
        "project_id": str(payload.project_id),
        "date_range": payload.date_range,
        "stats": {
            "totalTasks": len(tasks),
            "completedTasks": len(done),
            "completionRate": round(len(done) / len(tasks) * 100, 2) if tasks else 0.0,
            "averageCompletionHours": round(sum(durations) / len(durations), 2)
            if durations
            else None,
        },
    }


async def update_task_stats(
    ctx: HandlerContext, payload: TaskStatsPayload
) -> dict[str, Any] | None:
    """Recompute and overwrite a user's task counters."""
    now = datetime.now(UTC)
    tasks = await ctx.repository.query_all(Task, {"assigned_to": payload.user_id})

    stats = UserTaskStats(
        user_id=payload.user_id,
        assigned=len(tasks),
        completed=sum(1 for t in tasks if t.status == TaskStatus.DONE),
        in_progress=sum(1 for t in tasks if t.status == TaskStatus.IN_PROGRESS),
        overdue=sum(
            1
            for t in tasks
            if t.status != TaskStatus.DONE and t.due_date is not None and t.due_date < now
        ),
        computed_at=now,
    )
    await ctx.repository.save(stats)
    await ctx.repository.commit()
    await ctx.cache.delete(user_task_stats_key(payload.user_id))

    return {
        "updated": True,
        "assigned": stats.assigned,
        "completed": stats.completed,
        "in_progress": stats.in_progress,
        "overdue": stats.overdue,
    }


async def track_task_view(
    ctx: HandlerContext, payload: TaskViewPayload
) -> dict[str, Any] | None:
    """Record the latest view of a task by a user (one row per pair)."""
    view_id = stable_id("task-view", payload.task_id, payload.user_id)
    viewed_at = ctx.job.created_at or datetime.now(UTC)

    existing = await ctx.repository.get(TaskView, view_id)
    if existing is not None and existing.viewed_at >= viewed_at:
        return {"tracked": True, "viewed_at": existing.viewed_at.isoformat()}

    await ctx.repository.save(
        TaskView(
            view_id=view_id,
            task_id=payload.task_id,
            user_id=payload.user_id,
            viewed_at=viewed_at,
        )
    )
    await ctx.repository.commit()
    return {"tracked": True, "viewed_at": viewed_at.isoformat()}
