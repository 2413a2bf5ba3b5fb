"""
LexDesk CRM - Timeline routes

GET    /api/leads/{lead_id}/interactions            paged timeline (cached)
POST   /api/leads/{lead_id}/interactions            manual note
PATCH  /api/leads/{lead_id}/interactions/{id}       edit note / email observation
POST   /api/leads/{lead_id}/interactions/summary    AI summary of the latest 10
GET    /api/leads/{lead_id}/contacts                contacts linked to the lead
"""

import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query

from config import INTERACTIONS_PAGE_SIZE, get_db, parse_lead_id
from models import Contact, InteractionPage, InteractionUpdate, ManualInteractionCreate, TimelineSummary
from services.contact_matcher import fetch_lead_contacts
from services.event_logger import log_event
from services.interaction_aggregator import InteractionAggregator, LeadNotFoundError, invalidate_lead
from services.manual_interactions import (
    InteractionNotFoundError,
    InteractionReadOnlyError,
    InvalidInteractionError,
    add_manual_interaction,
    update_interaction,
)
from services.timeline_summary import SummaryError, TimelineSummarizer

logger = logging.getLogger("routes.interactions")

router = APIRouter(prefix="/leads", tags=["Interactions"])


def get_summarizer() -> TimelineSummarizer:
    return TimelineSummarizer()


def _lead_ref(lead_id: str):
    try:
        return parse_lead_id(lead_id)
    except ValueError as e:
        raise HTTPException(400, str(e))


# ═══════════════════════════════════════════════════
# TIMELINE
# ═══════════════════════════════════════════════════

@router.get("/{lead_id}/interactions", response_model=InteractionPage)
async def list_interactions(
    lead_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(INTERACTIONS_PAGE_SIZE, ge=1, le=100),
    refresh: bool = False,
    db=Depends(get_db),
):
    lead_ref = _lead_ref(lead_id)
    try:
        return await InteractionAggregator(db).page(lead_ref.raw, offset=offset, limit=limit, refresh=refresh)
    except LeadNotFoundError as e:
        raise HTTPException(404, str(e))


@router.post("/{lead_id}/interactions")
async def create_interaction(lead_id: str, data: ManualInteractionCreate, db=Depends(get_db)):
    lead_ref = _lead_ref(lead_id)
    employee = data.employee or "You"
    try:
        interaction = await add_manual_interaction(db, lead_ref, data.model_dump(), employee=employee)
    except InvalidInteractionError as e:
        raise HTTPException(400, str(e))
    except LeadNotFoundError as e:
        raise HTTPException(404, str(e))

    invalidate_lead(lead_ref.raw)
    await log_event(
        db, "add_interaction", "interaction", interaction["id"], user=employee,
        details={"kind": interaction["kind"]}, related={"lead_id": lead_ref.raw}
    )
    return {"success": True, "interaction": interaction}


@router.patch("/{lead_id}/interactions/{interaction_id}")
async def edit_interaction(lead_id: str, interaction_id: str, data: InteractionUpdate, db=Depends(get_db)):
    lead_ref = _lead_ref(lead_id)
    changes = data.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(400, "Nothing to update")

    try:
        interaction = await update_interaction(db, lead_ref, interaction_id, changes)
    except InteractionReadOnlyError as e:
        raise HTTPException(403, str(e))
    except (InteractionNotFoundError, LeadNotFoundError) as e:
        raise HTTPException(404, str(e))

    invalidate_lead(lead_ref.raw)
    await log_event(
        db, "edit_interaction", "interaction", interaction_id,
        details={"fields": sorted(changes)}, related={"lead_id": lead_ref.raw}
    )
    return {"success": True, "interaction": interaction}


@router.post("/{lead_id}/interactions/summary", response_model=TimelineSummary)
async def summarize_interactions(
    lead_id: str,
    db=Depends(get_db),
    summarizer: TimelineSummarizer = Depends(get_summarizer),
):
    lead_ref = _lead_ref(lead_id)
    try:
        interactions = await InteractionAggregator(db).get_interactions(lead_ref.raw)
        return await summarizer.summarize(interactions, lead_id=lead_ref.raw)
    except LeadNotFoundError as e:
        raise HTTPException(404, str(e))
    except SummaryError as e:
        raise HTTPException(400, str(e))


# ═══════════════════════════════════════════════════
# CONTACTS
# ═══════════════════════════════════════════════════

@router.get("/{lead_id}/contacts", response_model=List[Contact])
async def list_contacts(lead_id: str, db=Depends(get_db)):
    return await fetch_lead_contacts(db, _lead_ref(lead_id))
