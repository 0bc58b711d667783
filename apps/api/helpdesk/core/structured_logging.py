"""Structured logging helpers."""

import logging
from typing import Any

from helpdesk.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for the API process."""
    resolved = (level or settings.LOG_LEVEL or "INFO").upper()
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=resolved, format=LOG_FORMAT)
    else:
        root.setLevel(resolved)


def build_log_context(
    *,
    user_id: str | None = None,
    ticket_id: str | None = None,
    topic: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict for ``extra=``, skipping empty fields."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = str(user_id)
    if ticket_id:
        context["ticket_id"] = str(ticket_id)
    if topic:
        context["topic"] = topic
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    return context
