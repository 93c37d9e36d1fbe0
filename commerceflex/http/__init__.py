"""
HTTP — webhook intake and migration control over FastAPI.

    from commerceflex import http as H

    app = H.create_app(registry, normalizer, migrations)

Webhook status codes: 200 processed, duplicate or ignored; 400 no tenant;
401 bad signature; 404 unknown tenant; 409 concurrent duplicate; 503 tenant
misconfigured; 502 backend failure.
"""

from commerceflex.http._schemas import (
    status_for,
    ErrorOut,
    EventOut,
    WebhookOut,
    ProgressOut,
    CountOut,
    ReportOut,
)
from commerceflex.http._app import create_app, respond

__all__ = (
    "status_for",
    "ErrorOut",
    "EventOut",
    "WebhookOut",
    "ProgressOut",
    "CountOut",
    "ReportOut",
    "create_app",
    "respond",
)
