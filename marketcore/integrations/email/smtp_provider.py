from __future__ import annotations

import os
import smtplib
from email.message import EmailMessage

from marketcore.integrations.email.base import EmailProvider, EmailResult


def smtp_health() -> dict:
    missing = [key for key in ("SMTP_HOST",) if not (os.getenv(key) or "").strip()]
    return {"missing": missing}


class SmtpEmailProvider(EmailProvider):
    name = "smtp"

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        sender: str = "",
        reply_to: str = "",
        timeout: int = 10,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.sender = sender or user or "no-reply@marketcore.local"
        self.reply_to = reply_to
        self.timeout = int(timeout)

    def _build(self, *, to: str, subject: str, html: str, text: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        if self.reply_to:
            msg["Reply-To"] = self.reply_to
        msg.set_content(text or "This message requires an HTML capable mail client.")
        if html:
            msg.add_alternative(html, subtype="html")
        return msg

    def send(self, *, to: str, subject: str, html: str, text: str = "") -> EmailResult:
        msg = self._build(to=to, subject=subject, html=html, text=text)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.ehlo()
                try:
                    server.starttls()
                except smtplib.SMTPException:
                    pass
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            return EmailResult(ok=False, code="SMTP_SEND_FAILED", message=str(e)[:240])
        return EmailResult(ok=True, code="OK", message="sent", raw={"to": to})
