"""TaskFlow - task and project collaboration backend.

This package holds the background core of TaskFlow: the job queue and
worker pool that run asynchronous side effects (email, notifications,
statistics, cleanup), and the cache layer with its invalidation rules.
The HTTP CRUD surface lives elsewhere and calls into these services.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
