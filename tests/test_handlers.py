"""Tests for the job handlers.

Handlers are executed at least once, so most tests run a handler twice
for the same job and check that the second run changes nothing.

Tests cover:
- Registry contents and lookups
- Email handlers and their send-once markers
- In-app notifications with job-derived ids
- Task event fan-out
- Uploaded file inspection and storage root confinement
- Analytics recomputation and task views
- Deleted task cleanup and follow-up jobs
"""

import hashlib
import uuid
from datetime import UTC, datetime

import pytest

from taskflow.db.models.base import AttachmentStatus, JobStatus, TaskStatus
from taskflow.db.models.notifications import Notification
from taskflow.db.models.projects import ProjectStats
from taskflow.db.models.tasks import Attachment, Comment, TaskView
from taskflow.services.job_queue import ANALYTICS, CLEANUP, FILE_PROCESSING, UnknownJobTypeError
from taskflow.services.notification_sink import NotificationDeliveryError
from taskflow.worker.dispatcher import OutcomeStatus
from taskflow.worker.handlers import HANDLERS, build_registry
from taskflow.worker.handlers.common import stable_id
from taskflow.worker.handlers.files import resolve_stored_path
from taskflow.worker.handlers.notification import send_in_app_notification
from tests.factories import (
    create_attachment,
    create_comment,
    create_project,
    create_task,
    create_user,
)
from tests.fakes import drain


async def claim(services, job_type: str, payload: dict):
    """Enqueue and claim one job, returning it with its validated payload."""
    await services.job_queue.enqueue(job_type, payload)
    definition = services.registry.get(job_type)
    job = await services.job_queue.claim(definition.queue, "handler-test")
    return job, definition.validate(job.payload_json)


async def run(services, job, payload):
    definition = services.registry.get(job.job_type)
    async with services.worker_services().context_for(job) as ctx:
        return await definition.handler(ctx, payload)


class TestRegistry:
    """build_registry()."""

    def test_every_job_type_registered(self):
        registry = build_registry()

        assert len(registry) == len(HANDLERS) == 13
        assert "update_project_stats" in registry
        assert registry.get("process_uploaded_file").queue == FILE_PROCESSING

    def test_duplicate_registration(self):
        registry = build_registry()
        job_type, queue, model, handler = HANDLERS[0]

        with pytest.raises(ValueError, match="already registered"):
            registry.register(job_type, queue, model, handler)

    def test_unknown_job_type(self):
        with pytest.raises(UnknownJobTypeError):
            build_registry().get("send_fax")

    def test_for_queue(self):
        job_types = {d.job_type for d in build_registry().for_queue(ANALYTICS)}
        assert job_types == {
            "generate_project_stats",
            "update_project_stats",
            "update_task_stats",
            "track_task_view",
        }

    def test_stable_id_is_deterministic(self):
        job_id = uuid.uuid4()
        assert stable_id(job_id, "u1") == stable_id(job_id, "u1")
        assert stable_id(job_id, "u1") != stable_id(job_id, "u2")


class TestEmailHandlers:
    """notification-email queue."""

    @pytest.mark.asyncio
    async def test_welcome_email_rendered(self, services, sink):
        job, payload = await claim(
            services,
            "send_welcome_email",
            {"user_id": str(uuid.uuid4()), "email": "ada@example.com", "name": "Ada"},
        )

        result = await run(services, job, payload)

        assert result["email_sent"] is True
        assert len(sink.emails) == 1
        sent = sink.emails[0]
        assert sent["to"] == "ada@example.com"
        assert "Ada" in sent["subject"]
        assert "Hello Ada" in sent["body"]
        assert sent["html_body"]

    @pytest.mark.asyncio
    async def test_rerun_does_not_resend(self, services, sink):
        job, payload = await claim(
            services,
            "send_notification_email",
            {"email": "ada@example.com", "subject": "Digest", "content": "Two tasks due"},
        )

        await run(services, job, payload)
        second = await run(services, job, payload)

        assert second["duplicate"] is True
        assert len(sink.emails) == 1

    @pytest.mark.asyncio
    async def test_failed_send_leaves_no_marker(self, services, sink):
        sink.fail_emails = 1
        job, payload = await claim(
            services,
            "send_notification_email",
            {"email": "ada@example.com", "subject": "Digest", "content": "Two tasks due"},
        )

        with pytest.raises(NotificationDeliveryError):
            await run(services, job, payload)
        result = await run(services, job, payload)

        assert "duplicate" not in result
        assert len(sink.emails) == 1


class TestNotificationHandlers:
    """in-app-notification queue."""

    @pytest.mark.asyncio
    async def test_in_app_notification_stored_once(self, services, sink, repository):
        user = await create_user(repository)
        job, payload = await claim(
            services,
            "send_in_app_notification",
            {"user_id": str(user.user_id), "type": "project_invitation", "message": "Welcome"},
        )

        first = await run(services, job, payload)
        second = await run(services, job, payload)

        assert first["notification_id"] == second["notification_id"]
        assert first["notification_id"] == str(stable_id(job.job_id, user.user_id))
        page = await repository.query(Notification, {"user_id": user.user_id})
        assert page.total == 1
        assert len(sink.pushes) == 1

    @pytest.mark.asyncio
    async def test_rerun_keeps_read_state(self, services, repository):
        user = await create_user(repository)
        job, payload = await claim(
            services,
            "send_in_app_notification",
            {"user_id": str(user.user_id), "type": "mention", "message": "You were mentioned"},
        )
        result = await run(services, job, payload)
        stored = await repository.get(Notification, uuid.UUID(result["notification_id"]))
        stored.read_at = datetime(2026, 1, 16, tzinfo=UTC)

        async with services.worker_services().context_for(job) as ctx:
            await send_in_app_notification(ctx, payload)

        reloaded = await repository.get(Notification, uuid.UUID(result["notification_id"]))
        assert reloaded.read_at == datetime(2026, 1, 16, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_push_notification_once(self, services, sink):
        job, payload = await claim(
            services,
            "send_push_notification",
            {"user_id": str(uuid.uuid4()), "title": "Build green", "body": "All checks passed"},
        )

        await run(services, job, payload)
        await run(services, job, payload)

        assert len(sink.pushes) == 1
        assert sink.pushes[0]["message"] == "Build green"

    @pytest.mark.asyncio
    async def test_status_change_skips_actor(self, services, sink, repository):
        creator = await create_user(repository)
        assignee = await create_user(repository, first_name="Grace")
        project = await create_project(repository, creator)
        task = await create_task(repository, project, creator, assigned_to=assignee)

        job, payload = await claim(
            services,
            "send_task_notification",
            {
                "task_id": str(task.task_id),
                "event": "task_status_changed",
                "actor_id": str(creator.user_id),
                "new_status": "done",
            },
        )
        result = await run(services, job, payload)

        assert result["notified"] == [str(assignee.user_id)]
        assert sink.pushes[0]["user_id"] == str(assignee.user_id)
        assert "done" in sink.pushes[0]["message"]

    @pytest.mark.asyncio
    async def test_status_change_by_assignee_notifies_creator(self, services, repository):
        creator = await create_user(repository)
        assignee = await create_user(repository)
        project = await create_project(repository, creator)
        task = await create_task(repository, project, creator, assigned_to=assignee)

        job, payload = await claim(
            services,
            "send_task_notification",
            {
                "task_id": str(task.task_id),
                "event": "task_status_changed",
                "actor_id": str(assignee.user_id),
            },
        )
        result = await run(services, job, payload)

        assert result["notified"] == [str(creator.user_id)]

    @pytest.mark.asyncio
    async def test_missing_task_is_skipped(self, services, sink):
        job, payload = await claim(
            services,
            "send_task_notification",
            {"task_id": str(uuid.uuid4()), "event": "task_updated", "actor_id": str(uuid.uuid4())},
        )

        result = await run(services, job, payload)

        assert result == {"skipped": True, "reason": "task_not_found"}
        assert sink.pushes == []


class TestFileHandlers:
    """file-processing queue."""

    def test_resolve_stored_path(self, tmp_path):
        assert resolve_stored_path(tmp_path, "uploads/a.txt") == (tmp_path / "uploads/a.txt").resolve()

    @pytest.mark.parametrize("path", ["../secret.txt", "uploads/../../secret.txt", "/etc/passwd"])
    def test_resolve_rejects_escapes(self, tmp_path, path):
        with pytest.raises(ValueError, match="escapes storage root"):
            resolve_stored_path(tmp_path, path)

    @pytest.mark.asyncio
    async def test_process_uploaded_file(self, services, repository, tmp_path):
        content = b"quarterly numbers\n"
        (tmp_path / "uploads").mkdir()
        (tmp_path / "uploads" / "report.txt").write_bytes(content)
        user = await create_user(repository)
        project = await create_project(repository, user)
        task = await create_task(repository, project, user)
        attachment = await create_attachment(repository, task, user)

        job, payload = await claim(
            services,
            "process_uploaded_file",
            {
                "attachment_id": str(attachment.attachment_id),
                "file_path": "uploads/report.txt",
                "file_type": "text/plain",
            },
        )
        result = await run(services, job, payload)

        metadata = result["metadata"]
        assert metadata["size_bytes"] == len(content)
        assert metadata["mime_type"] == "text/plain"
        assert metadata["extension"] == "txt"
        assert metadata["sha256"] == hashlib.sha256(content).hexdigest()
        stored = await repository.get(Attachment, attachment.attachment_id)
        assert stored.status == AttachmentStatus.PROCESSED
        assert stored.file_size == len(content)

        again = await run(services, job, payload)
        assert again["duplicate"] is True

    @pytest.mark.asyncio
    async def test_path_outside_root_fails_job(self, services, dispatcher, repository):
        user = await create_user(repository)
        project = await create_project(repository, user)
        task = await create_task(repository, project, user)
        attachment = await create_attachment(repository, task, user)
        await services.job_queue.enqueue_file_processing(
            attachment.attachment_id, "../outside.txt", "text/plain"
        )

        outcome = await dispatcher.process_next(FILE_PROCESSING)

        assert outcome.status == OutcomeStatus.RETRYING
        assert "escapes storage root" in outcome.error

    @pytest.mark.asyncio
    async def test_missing_attachment_skipped(self, services):
        job, payload = await claim(
            services,
            "process_uploaded_file",
            {"attachment_id": str(uuid.uuid4()), "file_path": "x.txt", "file_type": "text/plain"},
        )

        assert (await run(services, job, payload))["skipped"] is True

    @pytest.mark.asyncio
    async def test_cleanup_temp_files(self, services, tmp_path):
        (tmp_path / "a.txt").write_text("a")

        job, payload = await claim(
            services,
            "cleanup_temp_files",
            {"file_paths": ["a.txt", "missing.txt", "../elsewhere.txt"]},
        )
        result = await run(services, job, payload)

        assert result == {"files_removed": 2, "rejected": ["../elsewhere.txt"]}
        assert not (tmp_path / "a.txt").exists()


class TestAnalyticsHandlers:
    """analytics queue."""

    @pytest.mark.asyncio
    async def test_update_task_stats(self, services, repository):
        user = await create_user(repository)
        project = await create_project(repository, user)
        past = datetime(2020, 1, 1, tzinfo=UTC)
        await create_task(repository, project, user, status=TaskStatus.DONE, assigned_to=user)
        await create_task(repository, project, user, status=TaskStatus.IN_PROGRESS, assigned_to=user)
        await create_task(repository, project, user, assigned_to=user, due_date=past)
        await create_task(repository, project, user)

        job, payload = await claim(services, "update_task_stats", {"user_id": str(user.user_id)})
        result = await run(services, job, payload)

        assert result == {
            "updated": True,
            "assigned": 3,
            "completed": 1,
            "in_progress": 1,
            "overdue": 1,
        }

    @pytest.mark.asyncio
    async def test_generate_project_stats_report(self, services, repository):
        user = await create_user(repository)
        project = await create_project(repository, user)
        await create_task(repository, project, user, status=TaskStatus.DONE)
        await create_task(repository, project, user)

        job, payload = await claim(
            services,
            "generate_project_stats",
            {"project_id": str(project.project_id), "date_range": "9999d"},
        )
        result = await run(services, job, payload)

        assert result["stats"]["totalTasks"] == 2
        assert result["stats"]["completedTasks"] == 1
        assert result["stats"]["completionRate"] == 50.0

    @pytest.mark.asyncio
    async def test_task_views_keep_one_row(self, services, repository, clock):
        task_id, user_id = uuid.uuid4(), uuid.uuid4()
        payload = {"task_id": str(task_id), "user_id": str(user_id)}

        job, model = await claim(services, "track_task_view", payload)
        await run(services, job, model)
        clock.advance(60)
        job, model = await claim(services, "track_task_view", payload)
        await run(services, job, model)

        page = await repository.query(TaskView, {"task_id": task_id})
        assert page.total == 1
        assert page.items[0].viewed_at == clock.current

    @pytest.mark.asyncio
    async def test_project_stats_skipped_for_deleted_project(self, services, repository):
        project_id = uuid.uuid4()

        job, payload = await claim(
            services, "update_project_stats", {"project_id": str(project_id)}
        )
        result = await run(services, job, payload)

        assert result == {"skipped": True, "reason": "project_not_found"}
        assert await repository.get(ProjectStats, project_id) is None

    @pytest.mark.asyncio
    async def test_no_stats_row_after_project_deletion(self, services, repository, dispatcher):
        owner = await create_user(repository)
        project = await create_project(repository, owner)
        await create_task(repository, project, owner)
        await services.projects.get_project_stats(project.project_id)

        await services.projects.delete_project(project.project_id, owner.user_id)
        cleanup = await drain(dispatcher, CLEANUP)
        analytics = await drain(dispatcher, ANALYTICS)

        assert [o.status for o in cleanup] == [OutcomeStatus.COMPLETED]
        assert analytics
        assert all(o.status == OutcomeStatus.COMPLETED for o in analytics)
        assert await repository.get(ProjectStats, project.project_id) is None


class TestCleanupHandlers:
    """cleanup queue."""

    @pytest.mark.asyncio
    async def test_cleanup_task_data(self, services, repository):
        user = await create_user(repository)
        project = await create_project(repository, user)
        task = await create_task(repository, project, user)
        await create_comment(repository, task, user)
        await create_attachment(repository, task, user)
        await repository.save(
            TaskView(
                view_id=uuid.uuid4(),
                task_id=task.task_id,
                user_id=user.user_id,
                viewed_at=datetime(2026, 1, 15, tzinfo=UTC),
            )
        )

        job, payload = await claim(
            services,
            "cleanup_task_data",
            {
                "task_id": str(task.task_id),
                "project_id": str(project.project_id),
                "deleted_by": str(user.user_id),
            },
        )
        result = await run(services, job, payload)

        assert result["removed"] == {"comments": 1, "attachments": 1, "task_views": 1}
        assert (await repository.query(Comment, {"task_id": task.task_id})).total == 0
        file_counts = await services.job_queue.counts(FILE_PROCESSING)
        analytics_counts = await services.job_queue.counts(ANALYTICS)
        assert file_counts[JobStatus.WAITING] == 1
        assert analytics_counts[JobStatus.WAITING] == 1

        again = await run(services, job, payload)
        assert again["removed"] == {"comments": 0, "attachments": 0, "task_views": 0}
        assert (await services.job_queue.counts(FILE_PROCESSING))[JobStatus.WAITING] == 1

    @pytest.mark.asyncio
    async def test_cleanup_job_history(self, services):
        job, payload = await claim(services, "cleanup_job_history", {})

        result = await run(services, job, payload)

        assert result == {"jobs_removed": 0}
