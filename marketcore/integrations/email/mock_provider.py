from __future__ import annotations

import os

from marketcore.integrations.email.base import EmailProvider, EmailResult


class MockEmailProvider(EmailProvider):
    """Records messages in memory; used in tests and sandbox runs."""

    name = "mock"
    outbox: list[dict] = []

    def _force_failure(self, subject: str) -> bool:
        return "[fail]" in (subject or "").lower() or (os.getenv("MOCK_EMAIL_FORCE_FAIL") or "").strip() == "1"

    def send(self, *, to: str, subject: str, html: str, text: str = "") -> EmailResult:
        if self._force_failure(subject):
            return EmailResult(ok=False, code="EMAIL_PROVIDER_DOWN", message="mock forced failure")
        MockEmailProvider.outbox.append({"to": to, "subject": subject, "html": html, "text": text})
        return EmailResult(ok=True, code="OK", message="mock_sent", raw={"to": to})

    @classmethod
    def reset(cls) -> None:
        cls.outbox.clear()
