"""Job handlers for the TaskFlow worker.

Each module handles one family of side effects:
- email: welcome and notification emails
- notification: push and in-app notifications, task event fan-out
- files: uploaded file inspection and file deletion
- analytics: project/user statistics and task views
- cleanup: data left behind by deleted tasks, job history
"""

from taskflow.services.job_queue import (
    ANALYTICS,
    CLEANUP,
    FILE_PROCESSING,
    IN_APP_NOTIFICATION,
    NOTIFICATION_EMAIL,
)
from taskflow.worker.handlers import analytics, cleanup, email, files, notification
from taskflow.worker.registry import JobRegistry

# job type, queue, payload model, handler
HANDLERS = [
    ("send_welcome_email", NOTIFICATION_EMAIL, email.WelcomeEmailPayload, email.send_welcome_email),
    (
        "send_notification_email",
        NOTIFICATION_EMAIL,
        email.NotificationEmailPayload,
        email.send_notification_email,
    ),
    (
        "send_push_notification",
        IN_APP_NOTIFICATION,
        notification.PushNotificationPayload,
        notification.send_push_notification,
    ),
    (
        "send_in_app_notification",
        IN_APP_NOTIFICATION,
        notification.InAppNotificationPayload,
        notification.send_in_app_notification,
    ),
    (
        "send_task_notification",
        IN_APP_NOTIFICATION,
        notification.TaskNotificationPayload,
        notification.send_task_notification,
    ),
    (
        "process_uploaded_file",
        FILE_PROCESSING,
        files.FileProcessingPayload,
        files.process_uploaded_file,
    ),
    ("cleanup_temp_files", FILE_PROCESSING, files.TempFileCleanupPayload, files.cleanup_temp_files),
    (
        "generate_project_stats",
        ANALYTICS,
        analytics.GenerateProjectStatsPayload,
        analytics.generate_project_stats,
    ),
    (
        "update_project_stats",
        ANALYTICS,
        analytics.ProjectStatsPayload,
        analytics.update_project_stats,
    ),
    ("update_task_stats", ANALYTICS, analytics.TaskStatsPayload, analytics.update_task_stats),
    ("track_task_view", ANALYTICS, analytics.TaskViewPayload, analytics.track_task_view),
    ("cleanup_task_data", CLEANUP, cleanup.TaskCleanupPayload, cleanup.cleanup_task_data),
    (
        "cleanup_job_history",
        CLEANUP,
        cleanup.JobHistoryCleanupPayload,
        cleanup.cleanup_job_history,
    ),
]


def build_registry() -> JobRegistry:
    """Registry with every built-in job type."""
    registry = JobRegistry()
    for job_type, queue, payload_model, handler in HANDLERS:
        registry.register(job_type, queue, payload_model, handler)
    return registry


__all__ = ["HANDLERS", "build_registry"]
