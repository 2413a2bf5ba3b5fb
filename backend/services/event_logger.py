"""
LexDesk CRM - Event Logger

Audit trail for timeline mutations and outbound messages.
Single function to call from any route/service.
"""

import uuid
import logging
from config import now_iso

logger = logging.getLogger("event_logger")


async def log_event(
    db,
    action: str,
    entity_type: str,
    entity_id: str,
    user: str = "system",
    details: dict = None,
    related: dict = None
):
    """
    Write a single event to the event_log collection.

    Args:
        action: e.g. send_whatsapp, send_email, add_interaction, edit_interaction
        entity_type: lead | whatsapp_message | email | interaction
        entity_id: ID of the primary entity
        user: name of the employee performing the action
        details: free-form dict (recipients, template, changed fields, etc.)
        related: linked entity IDs (lead_id, contact_id, etc.)

    An audit write never breaks the action it describes.
    """
    event = {
        "id": str(uuid.uuid4()),
        "action": action,
        "entity_type": entity_type,
        "entity_id": str(entity_id) if entity_id is not None else "",
        "user": user or "system",
        "details": details or {},
        "related": related or {},
        "created_at": now_iso()
    }
    try:
        await db.event_log.insert_one(dict(event))
    except Exception as e:
        logger.error(f"Event log write failed ({action} {entity_type} {entity_id}): {str(e)}")
    return event
