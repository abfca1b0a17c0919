from __future__ import annotations

TICKET_STATUS_OPEN = "open"
TICKET_STATUS_CLAIMED = "claimed"
TICKET_STATUS_CLOSED = "closed"

TICKET_STATUSES = (TICKET_STATUS_OPEN, TICKET_STATUS_CLAIMED, TICKET_STATUS_CLOSED)
ACTIVE_STATUSES = (TICKET_STATUS_OPEN, TICKET_STATUS_CLAIMED)

PRIORITY_LEVELS = ("low", "normal", "high", "urgent")
DEFAULT_PRIORITY = "normal"

DEFAULT_PREFIX = "t?"
TICKET_ID_WIDTH = 6

ACCESS_STAFF = "staff"

CLOSE_MODE_CONFIRMED = "confirmed"
CLOSE_MODE_FORCED = "forced"

LIFECYCLE_EVENTS = {
    "ticket_create",
    "ticket_claim",
    "ticket_close",
    "staff_role_add",
    "staff_user_add",
}
