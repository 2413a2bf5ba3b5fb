"""
LexDesk CRM - Manual interaction tests
Tests: add note (new / legacy lead), edit note, edit email observation, read-only rows.
Run: cd backend && pytest tests/test_manual_interactions.py -v
"""

import pytest

from config import parse_lead_id
from services.interaction_aggregator import InteractionAggregator, InteractionCache, LeadNotFoundError
from services.manual_interactions import (
    InteractionNotFoundError,
    InteractionReadOnlyError,
    InvalidInteractionError,
    add_manual_interaction,
    update_interaction,
)


# ═══════════════════════════════════════════════════════════════
# ADD
# ═══════════════════════════════════════════════════════════════

class TestAddManualInteraction:

    @pytest.mark.asyncio
    async def test_new_lead_note_is_pushed(self, db):
        await db.leads.insert_one({"id": "lead-1", "name": "Moshe"})
        interaction = await add_manual_interaction(
            db, parse_lead_id("lead-1"),
            {"method": "call", "content": "Called about the appointment", "length": "15"},
            employee="Dana",
        )

        assert interaction["id"].startswith("manual_")
        assert interaction["kind"] == "call"
        assert interaction["length"] == "15m"
        assert interaction["editable"] is True

        lead = await db.leads.find_one({"id": "lead-1"})
        assert len(lead["manual_interactions"]) == 1
        assert lead["manual_interactions"][0]["employee"] == "Dana"

    @pytest.mark.asyncio
    async def test_note_shows_up_in_timeline(self, db):
        await db.leads.insert_one({"id": "lead-1", "name": "Moshe"})
        created = await add_manual_interaction(db, parse_lead_id("lead-1"), {"method": "office", "content": "Visit"})

        interactions = await InteractionAggregator(db, cache=InteractionCache()).get_interactions("lead-1")
        assert [i["id"] for i in interactions] == [created["id"]]

    @pytest.mark.asyncio
    async def test_legacy_lead_note_is_a_row(self, db):
        await db.leads_lead.insert_one({"id": 42, "name": "Sara"})
        await db.leads_leadinteractions.insert_one({"id": 900, "lead_id": 42, "kind": "w"})

        interaction = await add_manual_interaction(
            db, parse_lead_id("legacy_42"), {"method": "email", "content": "Sent the forms", "length": "5"},
            employee="Avi",
        )

        assert interaction["id"] == "legacy_901"
        assert interaction["kind"] == "email"
        assert interaction["direction"] == "out"
        row = await db.leads_leadinteractions.find_one({"id": 901})
        assert row["lead_id"] == 42
        assert row["kind"] == "e"
        assert row["minutes"] == 5

    @pytest.mark.asyncio
    async def test_legacy_note_keeps_given_date_and_time(self, db):
        await db.leads_lead.insert_one({"id": 42, "name": "Sara"})

        interaction = await add_manual_interaction(
            db, parse_lead_id("legacy_42"),
            {"method": "call", "content": "Follow-up", "date": "2024-03-01", "time": "14:30"},
        )

        row = await db.leads_leadinteractions.find_one({"id": 1})
        assert (row["date"], row["time"]) == ("2024-03-01", "14:30")
        assert interaction["raw_date"] == "2024-03-01T14:30:00+00:00"

    @pytest.mark.asyncio
    async def test_legacy_note_bad_date(self, db):
        await db.leads_lead.insert_one({"id": 42, "name": "Sara"})
        with pytest.raises(InvalidInteractionError):
            await add_manual_interaction(
                db, parse_lead_id("legacy_42"), {"method": "call", "date": "yesterday"}
            )
        assert await db.leads_leadinteractions.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_unknown_method(self, db):
        await db.leads.insert_one({"id": "lead-1"})
        with pytest.raises(InvalidInteractionError):
            await add_manual_interaction(db, parse_lead_id("lead-1"), {"method": "fax"})

    @pytest.mark.asyncio
    async def test_unknown_lead(self, db):
        with pytest.raises(LeadNotFoundError):
            await add_manual_interaction(db, parse_lead_id("ghost"), {"method": "call"})
        with pytest.raises(LeadNotFoundError):
            await add_manual_interaction(db, parse_lead_id("legacy_7"), {"method": "call"})


# ═══════════════════════════════════════════════════════════════
# EDIT
# ═══════════════════════════════════════════════════════════════

class TestUpdateInteraction:

    @pytest.mark.asyncio
    async def test_edit_manual_note(self, db):
        await db.leads.insert_one({"id": "lead-1", "manual_interactions": [
            {"id": "manual_1", "raw_date": "2024-01-10T09:00:00Z", "content": "old", "kind": "call"},
            {"id": "manual_2", "raw_date": "2024-01-11T09:00:00Z", "content": "other", "kind": "call"},
        ]})

        updated = await update_interaction(
            db, parse_lead_id("lead-1"), "manual_1", {"content": "new", "length": "20", "kind": "sms"}
        )
        assert updated["content"] == "new"
        assert updated["length"] == "20m"
        # kind is not an editable field
        assert updated["kind"] == "call"

        lead = await db.leads.find_one({"id": "lead-1"})
        assert lead["manual_interactions"][0]["content"] == "new"
        assert lead["manual_interactions"][1]["content"] == "other"

    @pytest.mark.asyncio
    async def test_edit_unknown_note(self, db):
        await db.leads.insert_one({"id": "lead-1", "manual_interactions": []})
        with pytest.raises(InteractionNotFoundError):
            await update_interaction(db, parse_lead_id("lead-1"), "manual_404", {"content": "x"})

    @pytest.mark.asyncio
    async def test_email_observation_only(self, db):
        await db.emails.insert_one({"message_id": "AAMk1", "client_id": "lead-1", "subject": "Hi"})

        result = await update_interaction(db, parse_lead_id("lead-1"), "email_AAMk1", {"observation": "Client confirmed"})
        assert result == {"id": "email_AAMk1", "observation": "Client confirmed"}
        row = await db.emails.find_one({"message_id": "AAMk1"})
        assert row["observation"] == "Client confirmed"

        with pytest.raises(InteractionReadOnlyError):
            await update_interaction(db, parse_lead_id("lead-1"), "email_AAMk1", {"content": "nope"})

    @pytest.mark.asyncio
    async def test_whatsapp_and_calls_are_read_only(self, db):
        for interaction_id in ("whatsapp_1", "call_77", "legacy_900"):
            with pytest.raises(InteractionReadOnlyError):
                await update_interaction(db, parse_lead_id("lead-1"), interaction_id, {"content": "x"})

    @pytest.mark.asyncio
    async def test_email_of_another_lead_is_not_found(self, db):
        await db.emails.insert_one({"message_id": "M1", "client_id": "lead-2", "subject": "Hi"})

        with pytest.raises(InteractionNotFoundError):
            await update_interaction(db, parse_lead_id("lead-1"), "email_M1", {"observation": "wrong lead"})
        row = await db.emails.find_one({"message_id": "M1"})
        assert "observation" not in row

    @pytest.mark.asyncio
    async def test_legacy_email_matched_on_legacy_id(self, db):
        await db.emails.insert_one({"message_id": "M9", "legacy_id": 42, "subject": "Update"})

        result = await update_interaction(db, parse_lead_id("legacy_42"), "email_M9", {"observation": "Filed"})
        assert result["observation"] == "Filed"
        with pytest.raises(InteractionNotFoundError):
            await update_interaction(db, parse_lead_id("legacy_43"), "email_M9", {"observation": "x"})

    @pytest.mark.asyncio
    async def test_email_edit_with_other_fields_is_rejected(self, db):
        await db.emails.insert_one({"message_id": "M1", "client_id": "lead-1", "subject": "Hi"})

        with pytest.raises(InteractionReadOnlyError):
            await update_interaction(
                db, parse_lead_id("lead-1"), "email_M1", {"observation": "o", "content": "new subject"}
            )
        row = await db.emails.find_one({"message_id": "M1"})
        assert "observation" not in row
        assert row["subject"] == "Hi"
