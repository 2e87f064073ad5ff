from __future__ import annotations

import os

from flask import current_app, render_template
from jinja2 import TemplateNotFound

from marketcore.extensions import db
from marketcore.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from marketcore.integrations.email.base import EmailResult
from marketcore.integrations.email.factory import build_email_provider
from marketcore.models import Order, User


def _queue_enabled() -> bool:
    return (os.getenv("EMAIL_QUEUE") or "").strip().lower() in ("1", "true", "yes", "on")


def _public_base_url() -> str:
    return (os.getenv("PUBLIC_BASE_URL") or "").strip().rstrip("/")


def admin_alert_recipients() -> list[str]:
    raw = (os.getenv("ADMIN_ALERT_EMAIL") or "").strip()
    if raw:
        return [e.strip() for e in raw.split(",") if e.strip()]
    admin = User.query.filter_by(role="admin").order_by(User.id.asc()).first()
    return [admin.email] if admin and admin.email else []


def send_templated_email(to: str, subject: str, template_name: str, variables: dict | None = None) -> EmailResult:
    """Render email/<template_name>.html and hand it to the configured provider."""
    context = {"base_url": _public_base_url(), **(variables or {})}
    try:
        html = render_template(f"email/{template_name}.html", **context)
    except TemplateNotFound:
        return EmailResult(ok=False, code="TEMPLATE_NOT_FOUND", message=template_name)
    try:
        provider = build_email_provider()
    except IntegrationDisabledError:
        current_app.logger.info("email_disabled template=%s to=%s", template_name, to)
        return EmailResult(ok=False, code="EMAIL_DISABLED", message="email disabled")
    except IntegrationMisconfiguredError as e:
        current_app.logger.warning("email_misconfigured err=%s", e)
        return EmailResult(ok=False, code="EMAIL_MISCONFIGURED", message=str(e))
    result = provider.send(to=to, subject=subject, html=html)
    if result.ok:
        current_app.logger.info("email_sent template=%s to=%s provider=%s", template_name, to, provider.name)
    else:
        current_app.logger.warning(
            "email_send_failed template=%s to=%s code=%s", template_name, to, result.code
        )
    return result


def dispatch_email(to: str | None, subject: str, template_name: str, variables: dict | None = None) -> bool:
    """Fire-and-forget email. Never raises; returns whether it was sent or queued."""
    if not to:
        return False
    try:
        if _queue_enabled():
            try:
                from marketcore.tasks.email_tasks import send_templated_email_task

                send_templated_email_task.delay(to, subject, template_name, variables or {})
                return True
            except Exception as e:
                current_app.logger.warning("email_enqueue_failed template=%s err=%s", template_name, e)
        return bool(send_templated_email(to, subject, template_name, variables).ok)
    except Exception:
        current_app.logger.exception("email_dispatch_failed template=%s", template_name)
        return False


def _order_context(order: Order) -> dict:
    return {
        "order": order.to_dict(),
        "order_url": f"{_public_base_url()}/orders/{int(order.id)}",
    }


def notify_order_created(order: Order, buyer: User) -> None:
    dispatch_email(
        buyer.email,
        f"Order confirmation {order.order_number}",
        "order_confirmation",
        {**_order_context(order), "buyer_name": buyer.name or buyer.email},
    )
    for admin_email in admin_alert_recipients():
        dispatch_email(
            admin_email,
            f"New order {order.order_number}",
            "admin_new_order",
            {**_order_context(order), "buyer_name": buyer.name or buyer.email, "buyer_email": buyer.email},
        )


def notify_payment_approved(order: Order) -> None:
    buyer = db.session.get(User, int(order.buyer_id))
    if buyer is None:
        return
    dispatch_email(
        buyer.email,
        f"Payment confirmed for {order.order_number}",
        "payment_approved",
        {**_order_context(order), "buyer_name": buyer.name or buyer.email},
    )


def notify_order_delivered(order: Order) -> None:
    buyer = db.session.get(User, int(order.buyer_id))
    if buyer is None:
        return
    dispatch_email(
        buyer.email,
        f"Order {order.order_number} delivered",
        "order_delivered",
        {**_order_context(order), "buyer_name": buyer.name or buyer.email},
    )


def notify_delivery_issue(order: Order, issue: dict) -> None:
    for admin_email in admin_alert_recipients():
        dispatch_email(
            admin_email,
            f"Delivery issue on {order.order_number}",
            "admin_delivery_issue",
            {**_order_context(order), "issue": issue},
        )
