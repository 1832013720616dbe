"""Deletion cleanup handlers (cleanup queue)."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from taskflow.db.models.tasks import Attachment, Comment, TaskView

if TYPE_CHECKING:
    from taskflow.worker.context import HandlerContext

logger = logging.getLogger(__name__)


class TaskCleanupPayload(BaseModel):
    task_id: uuid.UUID
    project_id: uuid.UUID
    deleted_by: uuid.UUID


class JobHistoryCleanupPayload(BaseModel):
    queue: str | None = None


async def cleanup_task_data(
    ctx: HandlerContext, payload: TaskCleanupPayload
) -> dict[str, Any] | None:
    """Remove what hung off a deleted task and refresh the project's stats.

    Safe to re-run: a second pass finds nothing left to delete.
    """
    removed: dict[str, int] = {}
    file_paths: list[str] = []
    for model in (Comment, Attachment, TaskView):
        rows = await ctx.repository.query_all(model, {"task_id": payload.task_id})
        for row in rows:
            if isinstance(row, Attachment):
                file_paths.append(row.file_path)
            pk = getattr(row, model.__mapper__.primary_key[0].key)
            await ctx.repository.delete(model, pk)
        removed[model.__tablename__] = len(rows)
    await ctx.repository.commit()

    await ctx.invalidator.invalidate_task(payload.task_id, payload.project_id)

    if file_paths:
        await ctx.job_queue.enqueue_temp_file_cleanup(file_paths)
    await ctx.job_queue.enqueue_project_stats(payload.project_id)

    logger.info(
        "Task data cleaned: task_id=%s, deleted_by=%s, removed=%s",
        payload.task_id,
        payload.deleted_by,
        removed,
    )
    return {"cleaned": True, "task_id": str(payload.task_id), "removed": removed}


async def cleanup_job_history(
    ctx: HandlerContext, payload: JobHistoryCleanupPayload
) -> dict[str, Any] | None:
    """Apply the completed and dead history windows."""
    queues = [payload.queue] if payload.queue else None
    removed = await ctx.job_queue.trim_history(queues)
    return {"jobs_removed": removed}
