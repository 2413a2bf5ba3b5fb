"""
LexDesk CRM - Manual interactions

Notes typed by an employee ("Contact" drawer) and the few editable fields
of other timeline rows.

- New leads: notes live in leads.manual_interactions (array on the lead)
- Legacy leads: notes are rows of leads_leadinteractions
- Emails: only the observation is editable
- WhatsApp, calls, legacy rows: read-only
"""

import logging
from datetime import datetime, timezone

from config import LeadRef, timestamp_ms
from models import CONTACT_METHODS
from services.interaction_aggregator import LeadNotFoundError
from services import interaction_normalizers as normalizers

logger = logging.getLogger("manual_interactions")

LEGACY_KIND_CODES = {"whatsapp": "w", "call": "c", "email": "e"}

EDITABLE_FIELDS = ("date", "time", "content", "observation", "length")


class InvalidInteractionError(Exception):
    pass


class InteractionNotFoundError(Exception):
    pass


class InteractionReadOnlyError(Exception):
    pass


def _length_label(length) -> str:
    """'15', '15m' or 15 -> '15m'; empty stays empty."""
    text = str(length or "").strip().rstrip("m").strip()
    return f"{text}m" if text else ""


async def add_manual_interaction(db, lead_ref: LeadRef, data: dict, employee: str = "You") -> dict:
    method = (data.get("method") or "email").strip().lower()
    if method not in CONTACT_METHODS:
        raise InvalidInteractionError(f"Unknown contact method: {method}")

    now = datetime.now(timezone.utc)
    employee = employee or "You"

    if lead_ref.is_legacy:
        return await _add_legacy_interaction(db, lead_ref, data, method, employee, now)

    interaction = {
        "id": f"manual_{timestamp_ms()}",
        "date": data.get("date") or normalizers.format_date(now),
        "time": data.get("time") or normalizers.format_time(now),
        "raw_date": now.isoformat(),
        "employee": employee,
        "direction": "out",
        "kind": method,
        "length": _length_label(data.get("length")),
        "content": data.get("content") or "",
        "observation": data.get("observation") or "",
        "editable": True,
    }

    result = await db.leads.update_one(
        {"id": lead_ref.key},
        {"$push": {"manual_interactions": interaction}}
    )
    if result.matched_count == 0:
        raise LeadNotFoundError(f"Lead {lead_ref.raw} not found")

    logger.info(f"Manual {method} interaction added to lead {lead_ref.raw}")
    return normalizers.from_manual(interaction)


async def _add_legacy_interaction(db, lead_ref: LeadRef, data: dict, method: str, employee: str, now) -> dict:
    lead = await db.leads_lead.find_one({"id": lead_ref.key}, {"_id": 0, "id": 1, "name": 1})
    if not lead:
        raise LeadNotFoundError(f"Lead {lead_ref.raw} not found")

    last = await db.leads_leadinteractions.find({}, {"_id": 0, "id": 1}).sort("id", -1).limit(1).to_list(1)
    next_id = (int(last[0]["id"]) + 1) if last else 1

    date_value = (data.get("date") or "").strip() or now.strftime("%Y-%m-%d")
    time_value = (data.get("time") or "").strip() or now.strftime("%H:%M")
    if normalizers.parse_timestamp(f"{date_value}T{time_value}") is None:
        raise InvalidInteractionError(f"Invalid date or time: {date_value} {time_value}")

    minutes = str(data.get("length") or "").strip().rstrip("m").strip()
    row = {
        "id": next_id,
        "lead_id": lead_ref.key,
        "cdate": now.isoformat(),
        "udate": now.isoformat(),
        "kind": LEGACY_KIND_CODES.get(method, method),
        "date": date_value,
        "time": time_value,
        "minutes": int(minutes) if minutes.isdigit() else None,
        "content": data.get("content") or "",
        "description": data.get("observation") or "",
        "direction": "o",
        "creator_id": employee,
        "read": "t",
    }
    await db.leads_leadinteractions.insert_one(dict(row))

    logger.info(f"Legacy {method} interaction {next_id} added to lead {lead_ref.raw}")
    return normalizers.from_legacy(row, lead.get("name") or "")


async def update_interaction(db, lead_ref: LeadRef, interaction_id: str, changes: dict) -> dict:
    changes = {k: v for k, v in (changes or {}).items() if k in EDITABLE_FIELDS and v is not None}

    if interaction_id.startswith("manual_"):
        return await _update_manual(db, lead_ref, interaction_id, changes)

    if interaction_id.startswith("email_"):
        return await _update_email(db, lead_ref, interaction_id, changes)

    raise InteractionReadOnlyError(f"Interaction {interaction_id} is read-only")


async def _update_manual(db, lead_ref: LeadRef, interaction_id: str, changes: dict) -> dict:
    lead = await db[lead_ref.table].find_one({"id": lead_ref.key}, {"_id": 0, "manual_interactions": 1})
    if lead is None:
        raise LeadNotFoundError(f"Lead {lead_ref.raw} not found")

    entries = lead.get("manual_interactions") or []
    updated = None
    for entry in entries:
        if normalizers.from_manual(entry)["id"] == interaction_id:
            if "length" in changes:
                changes["length"] = _length_label(changes["length"])
            entry.update(changes)
            updated = entry
            break

    if updated is None:
        raise InteractionNotFoundError(f"Interaction {interaction_id} not found")

    await db[lead_ref.table].update_one(
        {"id": lead_ref.key},
        {"$set": {"manual_interactions": entries}}
    )
    return normalizers.from_manual(updated)


async def _update_email(db, lead_ref: LeadRef, interaction_id: str, changes: dict) -> dict:
    if set(changes) != {"observation"}:
        raise InteractionReadOnlyError("Only the observation of an email can be edited")

    message_id = interaction_id[len("email_"):]
    field = "legacy_id" if lead_ref.is_legacy else "client_id"
    result = await db.emails.update_one(
        {"message_id": message_id, field: lead_ref.key},
        {"$set": {"observation": changes["observation"]}}
    )
    if result.matched_count == 0:
        raise InteractionNotFoundError(f"Email {message_id} not found on lead {lead_ref.raw}")
    return {"id": interaction_id, "observation": changes["observation"]}
