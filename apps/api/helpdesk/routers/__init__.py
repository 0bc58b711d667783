"""API routers."""

from helpdesk.routers.messages import router as messages_router
from helpdesk.routers.notifications import router as notifications_router
from helpdesk.routers.presence import router as presence_router
from helpdesk.routers.tickets import router as tickets_router
from helpdesk.routers.websocket import router as websocket_router

__all__ = [
    "messages_router",
    "notifications_router",
    "presence_router",
    "tickets_router",
    "websocket_router",
]
