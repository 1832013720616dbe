"""Tests for the repository interface.

Tests cover:
- In-memory get/save/delete/query semantics
- Equality and IN filters, pagination
- require() and entity_to_dict()
- SQL repository error translation (mocked session)
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from taskflow.db.models.base import TaskStatus
from taskflow.db.models.projects import Project
from taskflow.db.models.tasks import Task
from taskflow.db.models.users import User
from taskflow.services.repository import (
    EntityNotFoundError,
    InMemoryRepository,
    RepositoryError,
    SqlRepository,
    entity_to_dict,
    memory_repository_scope,
)
from tests.factories import create_project, create_task, create_user


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


class TestInMemoryRepository:
    """Dictionary-backed repository."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, repo):
        user = await create_user(repo, email="ada@example.com")

        loaded = await repo.get(User, user.user_id)

        assert loaded is user
        assert await repo.get(User, uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_save_overwrites_same_key(self, repo):
        user = await create_user(repo)
        replacement = User(
            user_id=user.user_id,
            created_at=user.created_at,
            updated_at=user.updated_at,
            email="new@example.com",
            first_name="New",
            last_name="Name",
            is_active=True,
            last_login_at=None,
        )

        await repo.save(replacement)

        page = await repo.query(User)
        assert page.total == 1
        assert (await repo.get(User, user.user_id)).email == "new@example.com"

    @pytest.mark.asyncio
    async def test_delete(self, repo):
        user = await create_user(repo)

        assert await repo.delete(User, user.user_id) is True
        assert await repo.delete(User, user.user_id) is False

    @pytest.mark.asyncio
    async def test_query_filters(self, repo):
        owner = await create_user(repo)
        project = await create_project(repo, owner)
        other = await create_project(repo, owner, name="Other")
        await create_task(repo, project, owner, status=TaskStatus.DONE)
        await create_task(repo, project, owner, status=TaskStatus.TODO)
        await create_task(repo, other, owner, status=TaskStatus.DONE)

        done = await repo.query(Task, {"project_id": project.project_id, "status": TaskStatus.DONE})
        both = await repo.query(Project, {"project_id": [project.project_id, other.project_id]})
        unassigned = await repo.query(Task, {"assigned_to": None})

        assert done.total == 1
        assert both.total == 2
        assert unassigned.total == 3

    @pytest.mark.asyncio
    async def test_pagination(self, repo):
        owner = await create_user(repo)
        project = await create_project(repo, owner)
        for i in range(5):
            await create_task(repo, project, owner, title=f"Task {i}")

        first = await repo.query(Task, offset=0, limit=2)
        last = await repo.query(Task, offset=4, limit=2)

        assert len(first.items) == 2
        assert first.has_more
        assert len(last.items) == 1
        assert not last.has_more

    @pytest.mark.asyncio
    async def test_query_all_walks_pages(self, repo):
        owner = await create_user(repo)
        project = await create_project(repo, owner)
        for i in range(7):
            await create_task(repo, project, owner, title=f"Task {i}")

        tasks = await repo.query_all(Task, {"project_id": project.project_id}, page_size=3)

        assert len(tasks) == 7

    @pytest.mark.asyncio
    async def test_require(self, repo):
        missing = uuid.uuid4()
        with pytest.raises(EntityNotFoundError, match="User not found"):
            await repo.require(User, missing)

    @pytest.mark.asyncio
    async def test_commit_counter(self, repo):
        await repo.commit()
        assert repo.commits == 1

    @pytest.mark.asyncio
    async def test_scope_yields_same_repository(self, repo):
        scope = memory_repository_scope(repo)
        async with scope() as first, scope() as second:
            assert first is second is repo


class TestEntityToDict:
    """Cached entity representation."""

    @pytest.mark.asyncio
    async def test_json_compatible(self, repo):
        owner = await create_user(repo)
        project = await create_project(repo, owner)
        task = await create_task(repo, project, owner)

        data = entity_to_dict(task)

        assert data["task_id"] == str(task.task_id)
        assert data["status"] == "todo"
        assert data["priority"] == "medium"
        assert data["created_at"] == task.created_at.isoformat()
        assert data["assigned_to"] is None


class TestSqlRepository:
    """Error translation on a mocked AsyncSession."""

    @pytest.fixture
    def session(self):
        session = MagicMock()
        session.get = AsyncMock()
        session.merge = AsyncMock()
        session.flush = AsyncMock()
        session.delete = AsyncMock()
        session.execute = AsyncMock()
        session.commit = AsyncMock()
        return session

    @pytest.mark.asyncio
    async def test_get_wraps_errors(self, session):
        session.get.side_effect = OperationalError("SELECT", {}, Exception("gone"))
        repo = SqlRepository(session)

        with pytest.raises(RepositoryError, match="Failed to load User"):
            await repo.get(User, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_save_merges_and_flushes(self, session):
        entity = MagicMock()
        session.merge.return_value = entity
        repo = SqlRepository(session)

        result = await repo.save(entity)

        assert result is entity
        session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delete_missing(self, session):
        session.get.return_value = None
        repo = SqlRepository(session)

        assert await repo.delete(User, uuid.uuid4()) is False
        session.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_commit_wraps_errors(self, session):
        session.commit.side_effect = OperationalError("COMMIT", {}, Exception("gone"))
        repo = SqlRepository(session)

        with pytest.raises(RepositoryError, match="Failed to commit"):
            await repo.commit()
