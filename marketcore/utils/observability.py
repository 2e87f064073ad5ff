from __future__ import annotations

import json
import os
import time
import uuid

from flask import g, has_request_context, request

_SECRET_HEADERS = ("authorization", "cookie", "set-cookie")
# Delivery codes release the order to whoever holds them.
_SECRET_FIELDS = ("password", "verification_code", "verificationCode", "delivery_code")


def get_request_id() -> str:
    if not has_request_context():
        return ""
    return getattr(g, "request_id", "")


def init_sentry(app) -> None:
    dsn = (os.getenv("SENTRY_DSN") or "").strip()
    if not dsn:
        app.logger.info("sentry_disabled_no_dsn")
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=dsn,
            environment=(os.getenv("MARKETCORE_ENV") or "dev"),
            integrations=[FlaskIntegration()],
            send_default_pii=False,
            before_send=_before_send_scrub,
        )
        app.logger.info("sentry_enabled")
    except Exception as e:
        app.logger.warning("sentry_init_failed err=%s", e)


def _before_send_scrub(event, hint):
    req = event.get("request") or {}
    headers = req.get("headers") or {}
    for key in list(headers.keys()):
        if key.lower() in _SECRET_HEADERS:
            headers[key] = "[REDACTED]"
    req["headers"] = headers
    data = req.get("data")
    if isinstance(data, dict):
        for key in _SECRET_FIELDS:
            if key in data:
                data[key] = "[REDACTED]"
    event["request"] = req
    return event


def init_otel(app, *, enabled: bool) -> None:
    if not enabled:
        return
    try:
        endpoint = (os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or "").strip()
        if not endpoint:
            app.logger.info("otel_disabled_no_endpoint")
            return
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.flask import FlaskInstrumentor
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        provider = TracerProvider(resource=Resource.create({"service.name": "marketcore-backend"}))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        FlaskInstrumentor().instrument_app(app)
        with app.app_context():
            from marketcore.extensions import db

            SQLAlchemyInstrumentor().instrument(engine=db.engine)
        app.logger.info("otel_enabled")
    except Exception as e:
        app.logger.warning("otel_init_failed err=%s", e)


def install_request_observers(app) -> None:
    """Tag each request with an X-Request-Id and log one access line per response."""

    @app.before_request
    def _begin_request():
        g.request_id = (request.headers.get("X-Request-Id") or "").strip()[:80] or uuid.uuid4().hex
        g.request_started_at = time.perf_counter()

    @app.after_request
    def _end_request(response):
        rid = getattr(g, "request_id", "") or uuid.uuid4().hex
        response.headers["X-Request-Id"] = rid
        started = getattr(g, "request_started_at", None)
        line = {
            "event": "request_done",
            "request_id": rid,
            "method": request.method,
            "endpoint": request.endpoint,
            "order_id": (request.view_args or {}).get("order_id"),
            "status": int(response.status_code),
            "latency_ms": round((time.perf_counter() - started) * 1000.0, 2) if started is not None else None,
            "user_id": getattr(g, "auth_user_id", None),
            "role": getattr(g, "auth_role", None),
        }
        app.logger.info(json.dumps(line))
        return response
