"""TaskFlow API routers.

- admin: Queue statistics and dead-job operations (admin basic auth)
"""

from taskflow.api.routers.admin import router as admin_router

__all__ = ["admin_router"]
