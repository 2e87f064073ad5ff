from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from marketcore.services.email_service import send_templated_email


def _retry_countdown(retries: int) -> int:
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _task_log(task_name: str, *, status: str, started_at: float, **extra):
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": int(max(0.0, time.perf_counter() - float(started_at)) * 1000.0),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload))


@shared_task(bind=True, name="marketcore.tasks.email_tasks.send_templated_email_task", max_retries=3)
def send_templated_email_task(self, to: str, subject: str, template_name: str, variables: dict | None = None):
    started = time.perf_counter()
    result = send_templated_email(to, subject, template_name, variables or {})
    if result.ok:
        _task_log("send_templated_email", status="sent", started_at=started, template=template_name)
        return {"ok": True}
    # Disabled or misconfigured providers will not recover on retry.
    if result.code in ("EMAIL_DISABLED", "EMAIL_MISCONFIGURED", "TEMPLATE_NOT_FOUND"):
        _task_log("send_templated_email", status="skipped", started_at=started, template=template_name, code=result.code)
        return {"ok": False, "code": result.code}
    if int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log(
            "send_templated_email",
            status="retrying",
            started_at=started,
            template=template_name,
            countdown=countdown,
            code=result.code,
        )
        raise self.retry(countdown=countdown)
    _task_log("send_templated_email", status="failed", started_at=started, template=template_name, code=result.code)
    return {"ok": False, "code": result.code}
