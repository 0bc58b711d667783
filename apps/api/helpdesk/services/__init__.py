"""Service layer modules."""

from helpdesk.services.notification_service import (
    get_unread_count,
    list_notifications,
    mark_all_read,
    mark_read,
    notify,
)
from helpdesk.services.side_effects import (
    DeadLetter,
    SideEffectQueue,
    dead_letters,
)
from helpdesk.services.ticket_service import (
    TicketNotFoundError,
    create_ticket,
    get_ticket,
    get_ticket_or_raise,
)
