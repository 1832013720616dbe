"""Uploaded file handlers (file-processing queue).

File paths in payloads are interpreted relative to the configured
storage root and are rejected if they resolve outside of it.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import mimetypes
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from taskflow.db.models.base import AttachmentStatus
from taskflow.db.models.tasks import Attachment
from taskflow.services.cache_invalidation import EntityKind

if TYPE_CHECKING:
    from taskflow.worker.context import HandlerContext

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class FileProcessingPayload(BaseModel):
    attachment_id: uuid.UUID
    file_path: str = Field(min_length=1, max_length=1000)
    file_type: str = Field(min_length=1, max_length=100)


class TempFileCleanupPayload(BaseModel):
    file_paths: list[str] = Field(min_length=1)


def resolve_stored_path(root: str | Path, path: str) -> Path:
    """Resolve ``path`` under ``root``.

    Raises:
        ValueError: If the result lies outside ``root``.
    """
    base = Path(root).resolve()
    candidate = Path(path)
    resolved = (candidate if candidate.is_absolute() else base / candidate).resolve()
    if not resolved.is_relative_to(base):
        msg = f"Path escapes storage root: {path}"
        raise ValueError(msg)
    return resolved


def _inspect_file(path: Path) -> dict[str, Any]:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    mime_type, _ = mimetypes.guess_type(path.name)
    return {
        "size_bytes": path.stat().st_size,
        "mime_type": mime_type,
        "extension": path.suffix.lstrip(".").lower() or None,
        "sha256": digest.hexdigest(),
    }


async def process_uploaded_file(
    ctx: HandlerContext, payload: FileProcessingPayload
) -> dict[str, Any] | None:
    """Extract size, MIME type and checksum of an uploaded attachment."""
    attachment = await ctx.repository.get(Attachment, payload.attachment_id)
    if attachment is None:
        return {"skipped": True, "reason": "attachment_not_found"}
    if attachment.status == AttachmentStatus.PROCESSED:
        return {"processed": True, "duplicate": True, "metadata": attachment.metadata_json}

    path = resolve_stored_path(ctx.settings.worker.storage_root, payload.file_path)
    # FileNotFoundError goes through the retry path: the upload may still be in flight
    metadata = await asyncio.to_thread(_inspect_file, path)
    metadata["declared_type"] = payload.file_type

    attachment.file_size = metadata["size_bytes"]
    attachment.metadata_json = metadata
    attachment.status = AttachmentStatus.PROCESSED
    attachment.processed_at = datetime.now(UTC)
    await ctx.repository.save(attachment)
    await ctx.repository.commit()
    await ctx.invalidator.invalidate(EntityKind.TASK, attachment.task_id)

    logger.info(
        "File processed: attachment_id=%s, size=%d", payload.attachment_id, metadata["size_bytes"]
    )
    return {"processed": True, "metadata": metadata}


async def cleanup_temp_files(
    ctx: HandlerContext, payload: TempFileCleanupPayload
) -> dict[str, Any] | None:
    """Delete files under the storage root. Missing files count as removed."""
    removed = 0
    rejected: list[str] = []
    for raw in payload.file_paths:
        try:
            path = resolve_stored_path(ctx.settings.worker.storage_root, raw)
        except ValueError:
            logger.warning("Refusing to delete path outside storage root: %s", raw)
            rejected.append(raw)
            continue
        await asyncio.to_thread(path.unlink, missing_ok=True)
        removed += 1

    logger.info("Temporary files cleaned: removed=%d, rejected=%d", removed, len(rejected))
    return {"files_removed": removed, "rejected": rejected}
