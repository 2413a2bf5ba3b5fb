"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  LexDesk CRM - Interaction Aggregator Tests                                  ║
║                                                                              ║
║  1. New lead: manual + email + WhatsApp + calls, newest first                ║
║  2. Legacy lead: legacy rows, employee names                                 ║
║  3. Fail-soft sources, cache, refresh, paging                                ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import asyncio
import pytest

from services.interaction_aggregator import (
    InteractionAggregator,
    InteractionCache,
    LeadNotFoundError,
    invalidate_lead,
    sort_and_dedupe,
)


async def seed_new_lead(db):
    await db.leads.insert_one({
        "id": "lead-1",
        "name": "Moshe Cohen",
        "email": "moshe@gmail.com",
        "manual_interactions": [{
            "id": "manual_1",
            "raw_date": "2024-01-10T09:00:00Z",
            "employee": "Dana",
            "kind": "office",
            "content": "Meeting at the office",
        }],
    })
    await db.emails.insert_one({
        "message_id": "AAMk1",
        "client_id": "lead-1",
        "subject": "Birth certificate",
        "sender_email": "moshe@gmail.com",
        "sent_at": "2024-01-12T09:00:00Z",
    })
    await db.whatsapp_messages.insert_many([
        {
            "id": 1, "lead_id": "lead-1", "direction": "out", "sender_name": "Dana",
            "message": "[Template: welcome_message] Moshe", "sent_at": "2024-01-11T09:00:00Z",
            "whatsapp_status": "read", "phone_number": "972521234567",
        },
        {
            "id": 2, "lead_id": "lead-1", "direction": "in", "message": "Thanks!",
            "sent_at": "2024-01-13T09:00:00Z", "phone_number": "972521234567",
        },
        {"id": 3, "lead_id": "other-lead", "direction": "in", "message": "Not mine", "sent_at": "2024-01-13T09:00:00Z"},
    ])
    await db.call_logs.insert_one({
        "id": 77, "client_id": "lead-1", "direction": "outbound", "duration": 300,
        "status": "ANSWERED", "employee_id": 5, "cdate": "2024-01-14T09:00:00Z",
        "destination": "0521234567",
    })
    await db.tenants_employee.insert_one({"id": 5, "display_name": "Dana"})
    await db.whatsapp_whatsapptemplate.insert_one({
        "id": 1, "name360": "welcome_message", "title": "Welcome",
        "content": "Hello {{1}}, welcome!", "active": "t",
    })
    await db.lead_leadcontact.insert_one({"newlead_id": "lead-1", "contact_id": 10, "main": "t"})
    await db.leads_contact.insert_one({"id": 10, "name": "Moshe C.", "email": "moshe@gmail.com", "phone": "0521234567"})


async def seed_legacy_lead(db):
    await db.leads_lead.insert_one({"id": 42, "name": "Sara Levi"})
    await db.leads_leadinteractions.insert_many([
        {"id": 900, "lead_id": 42, "kind": "w", "direction": "o", "creator_id": "3",
         "cdate": "2019-05-02T10:00:00Z", "content": "Sent the form"},
        {"id": 901, "lead_id": 42, "kind": "e", "direction": "i",
         "cdate": "2019-05-03T10:00:00Z", "content": "Got it"},
    ])
    await db.whatsapp_messages.insert_one({
        "id": 50, "legacy_id": 42, "direction": "in", "message": "Hi", "sent_at": "2024-02-01T10:00:00Z",
    })
    await db.emails.insert_one({
        "message_id": "AAMk9", "legacy_id": 42, "subject": "Update",
        "sender_email": "avi@lawoffice.org.il", "sender_name": "Avi", "sent_at": "2024-02-02T10:00:00Z",
    })
    await db.call_logs.insert_one({
        "id": 78, "lead_id": 42, "direction": "inbound", "duration": 45, "status": "ANSWERED",
        "cdate": "2024-02-03T10:00:00Z",
    })
    await db.tenants_employee.insert_one({"id": 3, "display_name": "Avi"})


# ═══════════════════════════════════════════════════════════════
# 1. NEW LEAD
# ═══════════════════════════════════════════════════════════════

class TestNewLeadTimeline:

    @pytest.mark.asyncio
    async def test_all_sources_merged_newest_first(self, db):
        await seed_new_lead(db)
        interactions = await InteractionAggregator(db, cache=InteractionCache()).get_interactions("lead-1")

        assert [i["id"] for i in interactions] == [
            "call_77", "whatsapp_2", "email_AAMk1", "whatsapp_1", "manual_1",
        ]

    @pytest.mark.asyncio
    async def test_template_resolved_and_contacts_attributed(self, db):
        await seed_new_lead(db)
        interactions = await InteractionAggregator(db, cache=InteractionCache()).get_interactions("lead-1")
        by_id = {i["id"]: i for i in interactions}

        assert by_id["whatsapp_1"]["content"] == "Hello Moshe, welcome!"
        assert by_id["whatsapp_1"]["employee"] == "Dana"
        # incoming rows are shown under the matched contact
        assert by_id["whatsapp_2"]["contact_id"] == "10"
        assert by_id["whatsapp_2"]["employee"] == "Moshe C."
        assert by_id["email_AAMk1"]["contact_name"] == "Moshe C."
        assert by_id["call_77"]["employee"] == "Dana"
        assert by_id["call_77"]["length"] == "5 min"

    @pytest.mark.asyncio
    async def test_unknown_lead(self, db):
        with pytest.raises(LeadNotFoundError):
            await InteractionAggregator(db, cache=InteractionCache()).get_interactions("missing")

    @pytest.mark.asyncio
    async def test_invalid_lead_id(self, db):
        with pytest.raises(ValueError):
            await InteractionAggregator(db, cache=InteractionCache()).get_interactions("legacy_abc")


# ═══════════════════════════════════════════════════════════════
# 2. LEGACY LEAD
# ═══════════════════════════════════════════════════════════════

class TestLegacyLeadTimeline:

    @pytest.mark.asyncio
    async def test_legacy_sources(self, db):
        await seed_legacy_lead(db)
        interactions = await InteractionAggregator(db, cache=InteractionCache()).get_interactions("legacy_42")

        assert [i["id"] for i in interactions] == [
            "call_78", "email_AAMk9", "whatsapp_50", "legacy_901", "legacy_900",
        ]
        by_id = {i["id"]: i for i in interactions}
        assert by_id["legacy_900"]["employee"] == "Avi"
        assert by_id["legacy_901"]["employee"] == "Sara Levi"
        assert by_id["email_AAMk9"]["direction"] == "out"

    @pytest.mark.asyncio
    async def test_bare_numeric_id_is_legacy(self, db):
        await seed_legacy_lead(db)
        cache = InteractionCache()
        interactions = await InteractionAggregator(db, cache=cache).get_interactions("42")
        assert len(interactions) == 5
        assert "legacy_42" in cache


# ═══════════════════════════════════════════════════════════════
# 3. FAIL-SOFT / CACHE / PAGING
# ═══════════════════════════════════════════════════════════════

class TestFailSoftAndCache:

    @pytest.mark.asyncio
    async def test_failing_source_is_skipped(self, db):
        await seed_new_lead(db)
        aggregator = InteractionAggregator(db, cache=InteractionCache())

        async def broken(lead_ref):
            raise RuntimeError("call_logs table unavailable")

        aggregator._fetch_call_logs = broken
        interactions = await aggregator.get_interactions("lead-1")
        ids = [i["id"] for i in interactions]
        assert "call_77" not in ids
        assert len(ids) == 4

    @pytest.mark.asyncio
    async def test_cache_and_refresh(self, db):
        await seed_new_lead(db)
        cache = InteractionCache()
        aggregator = InteractionAggregator(db, cache=cache)

        first = await aggregator.get_interactions("lead-1")
        await db.whatsapp_messages.insert_one({
            "id": 4, "lead_id": "lead-1", "direction": "in", "message": "New", "sent_at": "2024-01-15T09:00:00Z",
        })

        assert len(await aggregator.get_interactions("lead-1")) == len(first)
        refreshed = await aggregator.get_interactions("lead-1", refresh=True)
        assert len(refreshed) == len(first) + 1
        assert refreshed[0]["id"] == "whatsapp_4"

    @pytest.mark.asyncio
    async def test_invalidate_lead(self, db):
        await seed_new_lead(db)
        cache = InteractionCache()
        await InteractionAggregator(db, cache=cache).get_interactions("lead-1")
        assert "lead-1" in cache
        invalidate_lead("lead-1", cache=cache)
        assert "lead-1" not in cache

    @pytest.mark.asyncio
    async def test_read_in_flight_during_invalidate_is_not_cached(self, db):
        await seed_new_lead(db)
        cache = InteractionCache()
        aggregator = InteractionAggregator(db, cache=cache)

        fetch_started = asyncio.Event()
        release = asyncio.Event()
        fetch_whatsapp = aggregator._fetch_whatsapp

        async def slow_whatsapp(lead_ref):
            rows = await fetch_whatsapp(lead_ref)
            fetch_started.set()
            await release.wait()
            return rows

        aggregator._fetch_whatsapp = slow_whatsapp
        in_flight = asyncio.create_task(aggregator.get_interactions("lead-1"))
        await fetch_started.wait()

        await db.whatsapp_messages.insert_one({
            "id": 4, "lead_id": "lead-1", "direction": "in", "message": "New", "sent_at": "2024-01-15T09:00:00Z",
        })
        invalidate_lead("lead-1", cache=cache)
        release.set()
        stale = await in_flight

        assert "whatsapp_4" not in [i["id"] for i in stale]
        assert "lead-1" not in cache

        aggregator._fetch_whatsapp = fetch_whatsapp
        fresh = await aggregator.get_interactions("lead-1")
        assert fresh[0]["id"] == "whatsapp_4"
        assert "lead-1" in cache

    @pytest.mark.asyncio
    async def test_same_timestamp_manual_note_comes_first(self, db):
        await db.leads.insert_one({"id": "lead-1", "name": "Moshe", "manual_interactions": [
            {"id": "manual_1", "raw_date": "2024-01-10T09:00:00Z", "kind": "email", "content": "Logged by hand"},
        ]})
        await db.emails.insert_one({
            "message_id": "AAMk1", "client_id": "lead-1", "subject": "Same minute",
            "sent_at": "2024-01-10T09:00:00Z",
        })

        interactions = await InteractionAggregator(db, cache=InteractionCache()).get_interactions("lead-1")
        assert [i["id"] for i in interactions] == ["manual_1", "email_AAMk1"]

    @pytest.mark.asyncio
    async def test_paging_from_cached_feed(self, db):
        await seed_new_lead(db)
        aggregator = InteractionAggregator(db, cache=InteractionCache())

        page = await aggregator.page("lead-1", offset=0, limit=2)
        assert [i["id"] for i in page["items"]] == ["call_77", "whatsapp_2"]
        assert page["total"] == 5
        assert page["has_more"] is True

        last = await aggregator.page("lead-1", offset=4, limit=2)
        assert [i["id"] for i in last["items"]] == ["manual_1"]
        assert last["has_more"] is False


class TestSortAndDedupe:

    def test_duplicates_and_undated(self):
        rows = [
            {"id": "a", "raw_date": "2024-01-01T00:00:00+00:00", "content": "first"},
            {"id": "b", "raw_date": "2024-01-03T00:00:00+00:00"},
            {"id": "a", "raw_date": "2024-01-05T00:00:00+00:00", "content": "dup"},
            {"id": "c", "raw_date": "garbage"},
        ]
        result = sort_and_dedupe(rows)
        assert [r["id"] for r in result] == ["b", "a"]
        assert result[1]["content"] == "first"

    def test_equal_timestamps_keep_input_order(self):
        rows = [
            {"id": "manual_1", "raw_date": "2024-01-10T09:00:00+00:00"},
            {"id": "email_A", "raw_date": "2024-01-10T09:00:00Z"},
            {"id": "whatsapp_1", "raw_date": "2024-01-11T09:00:00+00:00"},
            {"id": "whatsapp_2", "raw_date": "2024-01-10T09:00:00+00:00"},
        ]
        result = sort_and_dedupe(rows)
        assert [r["id"] for r in result] == ["whatsapp_1", "manual_1", "email_A", "whatsapp_2"]
