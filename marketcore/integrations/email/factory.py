from __future__ import annotations

import os

from marketcore.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from marketcore.integrations.email.base import EmailProvider
from marketcore.integrations.email.mock_provider import MockEmailProvider
from marketcore.integrations.email.smtp_provider import SmtpEmailProvider, smtp_health


def email_mode() -> str:
    mode = (os.getenv("EMAIL_PROVIDER") or "").strip().lower()
    if mode:
        return mode
    return "smtp" if (os.getenv("SMTP_HOST") or "").strip() else "disabled"


def build_email_provider() -> EmailProvider:
    mode = email_mode()
    if mode == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:email")
    if mode == "mock":
        return MockEmailProvider()

    host = (os.getenv("SMTP_HOST") or "").strip()
    if not host:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing SMTP_HOST")
    try:
        port = int((os.getenv("SMTP_PORT") or "587").strip() or 587)
    except ValueError:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:SMTP_PORT")
    user = (os.getenv("SMTP_USER") or "").strip()
    return SmtpEmailProvider(
        host=host,
        port=port,
        user=user,
        password=(os.getenv("SMTP_PASS") or "").strip(),
        sender=(os.getenv("SMTP_FROM") or user).strip(),
        reply_to=(os.getenv("SMTP_REPLY_TO") or "").strip(),
    )


def email_health() -> dict:
    mode = email_mode()
    missing = smtp_health().get("missing", []) if mode == "smtp" else []
    if mode == "disabled":
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "mode": mode, "missing": missing}
