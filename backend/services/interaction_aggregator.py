"""
LexDesk CRM - Interaction Aggregator

Builds the client timeline for one lead:
  fetch (parallel) -> normalize -> attribute contacts -> dedupe -> sort.

FAIL-SOFT: a failing source is logged and contributes nothing.
CACHED: one feed per lead id in process memory, refreshed on demand
(refresh=True) or after a mutation (invalidate).
"""

import asyncio
import logging
from typing import Optional

from config import INTERACTIONS_BATCH_SIZE, INTERACTIONS_PAGE_SIZE, LeadRef, parse_lead_id
from services.contact_matcher import ContactMatcher, fetch_lead_contacts
from services.template_resolver import TemplateResolver, is_active_template
from services import interaction_normalizers as normalizers

logger = logging.getLogger("interaction_aggregator")


class LeadNotFoundError(Exception):
    pass


class InteractionCache:
    """
    Per-lead timeline cache. No eviction: entries go away on invalidate().

    Each invalidate() bumps the lead's generation; a feed read under an
    older generation is not stored.
    """

    def __init__(self):
        self._entries = {}
        self._generations = {}

    def get(self, lead_id: str) -> Optional[list]:
        return self._entries.get(lead_id)

    def generation(self, lead_id: str) -> int:
        return self._generations.get(lead_id, 0)

    def set(self, lead_id: str, interactions: list, generation: Optional[int] = None) -> bool:
        if generation is not None and generation != self.generation(lead_id):
            return False
        self._entries[lead_id] = interactions
        return True

    def invalidate(self, lead_id: str):
        self._entries.pop(lead_id, None)
        self._generations[lead_id] = self.generation(lead_id) + 1

    def clear(self):
        self._entries.clear()

    def __contains__(self, lead_id) -> bool:
        return lead_id in self._entries


# Shared by routes and dispatchers so a send invalidates the feed
interaction_cache = InteractionCache()


def invalidate_lead(lead_id, cache: Optional[InteractionCache] = None):
    """Drop the cached timeline of a lead (after a send or an edit)."""
    try:
        key = parse_lead_id(lead_id).raw
    except ValueError:
        return
    (cache or interaction_cache).invalidate(key)


async def fetch_lead(db, lead_ref: LeadRef) -> Optional[dict]:
    return await db[lead_ref.table].find_one({"id": lead_ref.key}, {"_id": 0})


def sort_and_dedupe(interactions: list) -> list:
    """Drop duplicate ids (first wins) and undated rows, newest first."""
    seen = set()
    dated = []
    for interaction in interactions:
        if interaction["id"] in seen:
            continue
        seen.add(interaction["id"])
        ts = normalizers.parse_timestamp(interaction.get("raw_date"))
        if ts is None:
            logger.debug(f"Dropping interaction {interaction['id']}: unparseable date")
            continue
        dated.append((ts, interaction))

    dated.sort(key=lambda pair: pair[0], reverse=True)
    return [interaction for _, interaction in dated]


def _split_addresses(value) -> list:
    if not value:
        return []
    if isinstance(value, list):
        return [str(v).strip() for v in value if v]
    return [part.strip() for part in str(value).replace(";", ",").split(",") if part.strip()]


def _attribute(interaction: dict, contact: Optional[dict]):
    if not contact:
        return
    interaction["contact_id"] = contact["id"]
    interaction["contact_name"] = contact["name"]
    if interaction["direction"] == "in" and contact.get("name") and contact["name"] != "---":
        interaction["employee"] = contact["name"]


class InteractionAggregator:
    """Timeline reader for one database."""

    def __init__(self, db, cache: Optional[InteractionCache] = None, batch_size: int = INTERACTIONS_BATCH_SIZE):
        self.db = db
        self.cache = cache if cache is not None else interaction_cache
        self.batch_size = batch_size

    # ==================== PUBLIC ====================

    async def get_interactions(self, lead_id, refresh: bool = False) -> list:
        lead_ref = parse_lead_id(lead_id)

        if not refresh:
            cached = self.cache.get(lead_ref.raw)
            if cached is not None:
                return cached

        generation = self.cache.generation(lead_ref.raw)
        lead = await fetch_lead(self.db, lead_ref)
        if not lead:
            raise LeadNotFoundError(f"Lead {lead_ref.raw} not found")

        interactions = await self._collect(lead_ref, lead)
        if not self.cache.set(lead_ref.raw, interactions, generation=generation):
            logger.info(f"Timeline for lead {lead_ref.raw} invalidated during fetch, not cached")
        logger.info(f"Timeline for lead {lead_ref.raw}: {len(interactions)} interactions")
        return interactions

    async def page(self, lead_id, offset: int = 0, limit: int = INTERACTIONS_PAGE_SIZE,
                   refresh: bool = False) -> dict:
        """Slice of the cached feed; never queries beyond the first fetch."""
        interactions = await self.get_interactions(lead_id, refresh=refresh)
        offset = max(0, offset)
        limit = max(1, limit)
        items = interactions[offset:offset + limit]
        return {
            "lead_id": parse_lead_id(lead_id).raw,
            "items": items,
            "total": len(interactions),
            "offset": offset,
            "limit": limit,
            "has_more": offset + limit < len(interactions),
        }

    # ==================== COLLECT ====================

    async def _safe(self, source: str, coro):
        try:
            return await coro
        except Exception as e:
            logger.warning(f"Interaction source '{source}' failed, skipping: {str(e)}")
            return []

    async def _collect(self, lead_ref: LeadRef, lead: dict) -> list:
        lead_name = lead.get("name") or ""

        legacy_rows_coro = (
            self._fetch_legacy_interactions(lead_ref) if lead_ref.is_legacy else _empty()
        )
        whatsapp_rows, call_rows, legacy_rows, email_rows, templates, contacts = await asyncio.gather(
            self._safe("whatsapp", self._fetch_whatsapp(lead_ref)),
            self._safe("call_logs", self._fetch_call_logs(lead_ref)),
            self._safe("legacy", legacy_rows_coro),
            self._safe("emails", self._fetch_emails(lead_ref)),
            self._safe("templates", self._fetch_templates()),
            fetch_lead_contacts(self.db, lead_ref),
        )

        employee_ids = set()
        for row in call_rows:
            employee_ids.add(row.get("employee_id"))
        for row in legacy_rows:
            employee_ids.add(row.get("creator_id"))
            employee_ids.add(row.get("employee_id"))
        employee_names = await self._safe("employees", self._fetch_employee_names(employee_ids))
        employee_names = employee_names or {}

        matcher = ContactMatcher(contacts)
        resolver = TemplateResolver(templates)
        interactions = []

        for entry in lead.get("manual_interactions") or []:
            interaction = normalizers.from_manual(entry)
            _attribute(interaction, matcher.match(contact_id=entry.get("contact_id")))
            interactions.append(interaction)

        for row in email_rows:
            interaction = normalizers.from_email(row, lead_name)
            addresses = [row.get("sender_email")] + _split_addresses(row.get("recipient_list"))
            _attribute(interaction, matcher.match(contact_id=row.get("contact_id"), emails=addresses))
            interactions.append(interaction)

        for row in whatsapp_rows:
            interaction = normalizers.from_whatsapp(row, lead_name, content=resolver.resolve(row))
            _attribute(interaction, matcher.match(contact_id=row.get("contact_id"), phones=[row.get("phone_number")]))
            interactions.append(interaction)

        for row in call_rows:
            interaction = normalizers.from_call_log(row, employee_names)
            _attribute(interaction, matcher.match(phones=[row.get("destination"), row.get("source")]))
            interactions.append(interaction)

        for row in legacy_rows:
            interaction = normalizers.from_legacy(row, lead_name, employee_names)
            _attribute(interaction, matcher.match(contact_id=row.get("contact_id")))
            interactions.append(interaction)

        return sort_and_dedupe(interactions)

    # ==================== FETCHERS ====================

    async def _fetch_whatsapp(self, lead_ref: LeadRef) -> list:
        field = "legacy_id" if lead_ref.is_legacy else "lead_id"
        return await self.db.whatsapp_messages.find(
            {field: lead_ref.key}, {"_id": 0}
        ).sort("sent_at", -1).limit(self.batch_size).to_list(self.batch_size)

    async def _fetch_emails(self, lead_ref: LeadRef) -> list:
        field = "legacy_id" if lead_ref.is_legacy else "client_id"
        return await self.db.emails.find(
            {field: lead_ref.key}, {"_id": 0}
        ).sort("sent_at", -1).limit(self.batch_size).to_list(self.batch_size)

    async def _fetch_call_logs(self, lead_ref: LeadRef) -> list:
        field = "lead_id" if lead_ref.is_legacy else "client_id"
        return await self.db.call_logs.find(
            {field: lead_ref.key}, {"_id": 0}
        ).sort("cdate", -1).limit(self.batch_size).to_list(self.batch_size)

    async def _fetch_legacy_interactions(self, lead_ref: LeadRef) -> list:
        return await self.db.leads_leadinteractions.find(
            {"lead_id": lead_ref.key}, {"_id": 0}
        ).sort("cdate", -1).limit(self.batch_size).to_list(self.batch_size)

    async def _fetch_templates(self) -> list:
        rows = await self.db.whatsapp_whatsapptemplate.find({}, {"_id": 0}).to_list(1000)
        return [t for t in rows if is_active_template(t)]

    async def _fetch_employee_names(self, employee_ids: set) -> dict:
        ids = {normalizers.valid_ref(i) for i in employee_ids} - {None}
        if not ids:
            return {}
        lookup = list(ids) + [int(i) for i in ids if i.isdigit()]
        rows = await self.db.tenants_employee.find(
            {"id": {"$in": lookup}}, {"_id": 0, "id": 1, "display_name": 1, "official_name": 1}
        ).to_list(len(lookup))
        return {
            str(row["id"]): row.get("display_name") or row.get("official_name") or str(row["id"])
            for row in rows
        }


async def _empty() -> list:
    return []
