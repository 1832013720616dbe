"""Cache key builders.

Naming convention: {entity-kind}:{id}[:{subtype}]

Examples:
    project:<id>            -> serialized project
    project:<id>:stats      -> computed project statistics
    user:<id>:projects      -> list of a user's projects (any page/filter)
    session:<user-id>       -> session data, separate lifetime
"""

from __future__ import annotations

import json
from typing import Any


def user_key(user_id: object) -> str:
    return f"user:{user_id}"


def user_projects_key(user_id: object) -> str:
    return f"user:{user_id}:projects"


def user_projects_page_key(user_id: object, status: str | None, page: int) -> str:
    """Key for one page of a user's project list.

    Pages hang under ``user:<id>:projects`` so the ``user:<id>:projects*``
    pattern used on invalidation drops every cached page.
    """
    return f"user:{user_id}:projects:{status or 'all'}:{page}"


def user_tasks_key(user_id: object) -> str:
    return f"user:{user_id}:tasks"


def user_task_stats_key(user_id: object) -> str:
    return f"user:{user_id}:task-stats"


def session_key(user_id: object) -> str:
    return f"session:{user_id}"


def project_key(project_id: object) -> str:
    return f"project:{project_id}"


def project_tasks_key(project_id: object) -> str:
    return f"project:{project_id}:tasks"


def project_members_key(project_id: object) -> str:
    return f"project:{project_id}:members"


def project_stats_key(project_id: object) -> str:
    return f"project:{project_id}:stats"


def task_key(task_id: object) -> str:
    return f"task:{task_id}"


def task_comments_key(task_id: object) -> str:
    return f"task:{task_id}:comments"


def task_attachments_key(task_id: object) -> str:
    return f"task:{task_id}:attachments"


def api_response_key(endpoint: str, params: dict[str, Any] | None) -> str:
    """Key for a cached API response.

    Params are serialized with sorted keys so that equal parameter sets
    map to the same key regardless of insertion order.
    """
    canonical = json.dumps(params or {}, sort_keys=True, default=str, separators=(",", ":"))
    return f"api:{endpoint}:{canonical}"


def rate_limit_key(scope: str, identifier: object) -> str:
    return f"ratelimit:{scope}:{identifier}"


def dedup_key(job_id: object, scope: str = "") -> str:
    """Marker recording that a side effect of a job already happened."""
    suffix = f":{scope}" if scope else ""
    return f"job-done:{job_id}{suffix}"
