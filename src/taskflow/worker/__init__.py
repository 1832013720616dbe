"""TaskFlow worker service.

Runs the background jobs of the five declared queues:
- notification-email: welcome and notification emails
- in-app-notification: push and in-app notifications
- file-processing: uploaded file inspection and file deletion
- analytics: statistics recomputation and task-view tracking
- cleanup: data left behind by deleted tasks, job history

Usage:
    # Run as module
    python -m taskflow.worker

    # Or through the console script
    taskflow-worker
"""

from taskflow.worker.dispatcher import Dispatcher, JobOutcome, OutcomeStatus
from taskflow.worker.registry import JobDefinition, JobRegistry

__all__ = ["Dispatcher", "JobDefinition", "JobOutcome", "JobRegistry", "OutcomeStatus"]
