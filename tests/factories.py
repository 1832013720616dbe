"""Test data factories for TaskFlow.

Each factory builds a fully populated entity (transient ORM objects get
no column defaults) and saves it to the given repository.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from taskflow.db.models.base import (
    AttachmentStatus,
    MemberRole,
    ProjectStatus,
    TaskPriority,
    TaskStatus,
)
from taskflow.db.models.projects import Project, ProjectMember
from taskflow.db.models.tasks import Attachment, Comment, Task
from taskflow.db.models.users import User
from taskflow.services.repository import Repository

NOW = datetime(2026, 1, 15, 9, 0, tzinfo=UTC)


async def create_user(
    repository: Repository,
    email: str | None = None,
    first_name: str = "Ada",
    last_name: str = "Lovelace",
    is_active: bool = True,
) -> User:
    user_id = uuid.uuid4()
    return await repository.save(
        User(
            user_id=user_id,
            created_at=NOW,
            updated_at=NOW,
            email=email or f"user-{user_id.hex[:8]}@example.com",
            first_name=first_name,
            last_name=last_name,
            is_active=is_active,
            last_login_at=None,
        )
    )


async def create_project(
    repository: Repository,
    owner: User,
    name: str = "Website relaunch",
    status: ProjectStatus = ProjectStatus.ACTIVE,
) -> Project:
    """Create a project and its owner membership."""
    project = await repository.save(
        Project(
            project_id=uuid.uuid4(),
            created_at=NOW,
            updated_at=NOW,
            name=name,
            description=None,
            color=None,
            status=status,
            owner_id=owner.user_id,
        )
    )
    await add_member(repository, project, owner, MemberRole.OWNER)
    return project


async def add_member(
    repository: Repository,
    project: Project,
    user: User,
    role: MemberRole = MemberRole.MEMBER,
) -> ProjectMember:
    return await repository.save(
        ProjectMember(
            membership_id=uuid.uuid4(),
            project_id=project.project_id,
            user_id=user.user_id,
            role=role,
            joined_at=NOW,
        )
    )


async def create_task(
    repository: Repository,
    project: Project,
    creator: User,
    title: str = "Write copy",
    status: TaskStatus = TaskStatus.TODO,
    assigned_to: User | None = None,
    due_date: datetime | None = None,
) -> Task:
    return await repository.save(
        Task(
            task_id=uuid.uuid4(),
            created_at=NOW,
            updated_at=NOW,
            project_id=project.project_id,
            title=title,
            description=None,
            status=status,
            priority=TaskPriority.MEDIUM,
            assigned_to=assigned_to.user_id if assigned_to else None,
            created_by=creator.user_id,
            due_date=due_date,
            completed_at=NOW if status == TaskStatus.DONE else None,
        )
    )


async def create_comment(repository: Repository, task: Task, author: User) -> Comment:
    return await repository.save(
        Comment(
            comment_id=uuid.uuid4(),
            created_at=NOW,
            task_id=task.task_id,
            user_id=author.user_id,
            content="Looks good",
        )
    )


async def create_attachment(
    repository: Repository,
    task: Task,
    uploader: User,
    file_path: str = "uploads/report.txt",
    file_type: str = "text/plain",
) -> Attachment:
    return await repository.save(
        Attachment(
            attachment_id=uuid.uuid4(),
            created_at=NOW,
            task_id=task.task_id,
            uploaded_by=uploader.user_id,
            file_path=file_path,
            file_type=file_type,
            file_size=None,
            status=AttachmentStatus.UPLOADED,
            metadata_json=None,
            processed_at=None,
        )
    )
