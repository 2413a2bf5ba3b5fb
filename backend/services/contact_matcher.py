"""
LexDesk CRM - Lead contacts

A lead can have several contacts (lead_leadcontact -> leads_contact).
Interactions are attributed to one of them on a best-effort basis.
"""

import logging
from typing import Optional

from config import LeadRef, phone_tail

logger = logging.getLogger("contact_matcher")

MAIN_VALUES = (True, "true", "t", "True", 1)


async def fetch_lead_contacts(db, lead_ref: LeadRef) -> list:
    """Contacts of a lead, main contact first then by name. Errors -> []."""
    link_field = "lead_id" if lead_ref.is_legacy else "newlead_id"
    try:
        links = await db.lead_leadcontact.find(
            {link_field: lead_ref.key}, {"_id": 0}
        ).to_list(200)

        contact_ids = [link.get("contact_id") for link in links if link.get("contact_id") is not None]
        if not contact_ids:
            return []

        rows = await db.leads_contact.find(
            {"id": {"$in": contact_ids}}, {"_id": 0}
        ).to_list(len(contact_ids))
    except Exception as e:
        logger.error(f"Contacts fetch failed for lead {lead_ref.raw}: {str(e)}")
        return []

    by_id = {row.get("id"): row for row in rows}
    contacts = []
    for link in links:
        row = by_id.get(link.get("contact_id"))
        if not row:
            continue
        contacts.append({
            "id": str(row.get("id")),
            "name": row.get("name") or "---",
            "email": row.get("email") or None,
            "phone": row.get("phone") or None,
            "mobile": row.get("mobile") or None,
            "is_main": link.get("main") in MAIN_VALUES,
        })

    contacts.sort(key=lambda c: (not c["is_main"], (c["name"] or "").lower()))
    return contacts


class ContactMatcher:
    """contact_id first, then email, then phone (last 9 digits)."""

    def __init__(self, contacts: Optional[list] = None):
        self.contacts = contacts or []

    def match(self, contact_id=None, emails=None, phones=None) -> Optional[dict]:
        if contact_id is not None and str(contact_id).strip():
            for contact in self.contacts:
                if contact["id"] == str(contact_id).strip():
                    return contact

        if isinstance(emails, str):
            emails = [emails]
        wanted_emails = {str(e).strip().lower() for e in (emails or []) if e and str(e).strip()}
        if wanted_emails:
            for contact in self.contacts:
                if contact.get("email") and contact["email"].strip().lower() in wanted_emails:
                    return contact

        if isinstance(phones, str):
            phones = [phones]
        wanted_tails = {phone_tail(p) for p in (phones or [])} - {""}
        if wanted_tails:
            for contact in self.contacts:
                for field in ("phone", "mobile"):
                    if phone_tail(contact.get(field)) in wanted_tails:
                        return contact

        return None
