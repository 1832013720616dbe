"""Helpers for writing handlers that are safe to run twice.

Handlers are executed at least once. Store writes are made idempotent
by overwriting rows whose ids are derived from the job (stable_id);
external side effects (emails, pushes) are guarded by a marker in the
cache written after the side effect succeeded.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from taskflow.services.cache_keys import dedup_key

if TYPE_CHECKING:
    from taskflow.worker.context import HandlerContext

# Namespace for ids derived from job ids
JOB_NAMESPACE = uuid.UUID("5f0c3d1e-7a0b-4c8e-9a43-1b7f6c2d9e10")

# How long a side-effect marker is kept
DEDUP_TTL_SECONDS = 7 * 24 * 3600


def stable_id(*parts: object) -> uuid.UUID:
    """Deterministic UUID for a combination of values."""
    return uuid.uuid5(JOB_NAMESPACE, ":".join(str(p) for p in parts))


async def already_done(ctx: HandlerContext, scope: str = "") -> bool:
    """True if this job's side effect for ``scope`` was recorded as done."""
    return await ctx.cache.exists(dedup_key(ctx.job.job_id, scope))


async def mark_done(ctx: HandlerContext, scope: str = "") -> None:
    """Record that this job's side effect for ``scope`` happened."""
    await ctx.cache.set(
        dedup_key(ctx.job.job_id, scope),
        {"at": datetime.now(UTC).isoformat()},
        ttl=DEDUP_TTL_SECONDS,
    )
