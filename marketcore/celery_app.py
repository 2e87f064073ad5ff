from __future__ import annotations

import json
import os

from celery import Celery
from celery.signals import task_failure


def _redis_url(*names: str) -> str:
    for name in (*names, "REDIS_URL"):
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return "redis://localhost:6379/0"


def create_celery_app(flask_app) -> Celery:
    """Celery instance for the email queue; every task runs inside the Flask app context."""
    celery = Celery(
        flask_app.import_name,
        broker=_redis_url("CELERY_BROKER_URL"),
        backend=_redis_url("CELERY_RESULT_BACKEND", "CELERY_BROKER_URL"),
    )
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_acks_late=True,
        enable_utc=True,
        task_always_eager=bool(flask_app.config.get("CELERY_TASK_ALWAYS_EAGER", False)),
    )

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    # Retries are logged by the tasks themselves; only unexpected crashes land here.
    @task_failure.connect(weak=False, dispatch_uid="marketcore_task_failure")
    def _on_task_failure(sender=None, task_id=None, exception=None, **extra):
        flask_app.logger.error(
            json.dumps(
                {
                    "event": "task_failed",
                    "task": getattr(sender, "name", ""),
                    "task_id": str(task_id or ""),
                    "error": repr(exception),
                }
            )
        )

    celery.Task = FlaskContextTask
    celery.set_default()
    celery.autodiscover_tasks(["marketcore.tasks"], related_name="email_tasks")
    return celery
