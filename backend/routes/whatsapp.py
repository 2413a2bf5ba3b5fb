"""
LexDesk CRM - WhatsApp routes

Sends go through the relay; the answer is an optimistic "pending" record
that the thread keeps until the stored row confirms it (status polling).
"""

import logging
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from config import get_db
from models import WhatsAppMediaRequest, WhatsAppSendRequest, WhatsAppSimpleSendRequest, WhatsAppStatusUpdate
from services.dispatch_errors import DispatchError
from services.event_logger import log_event
from services.interaction_aggregator import invalidate_lead
from services.whatsapp_dispatch import WhatsAppDispatcher, apply_status_update, whatsapp_threads

logger = logging.getLogger("routes.whatsapp")

router = APIRouter(prefix="/whatsapp", tags=["WhatsApp"])


def get_dispatcher() -> WhatsAppDispatcher:
    return WhatsAppDispatcher()


def get_threads():
    return whatsapp_threads


def _http_error(e: DispatchError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


async def _after_send(db, threads, lead_id, record: dict, action: str, details: dict):
    if lead_id:
        invalidate_lead(lead_id)
        try:
            await threads.record_sent(db, lead_id, record)
        except ValueError as e:
            logger.warning(f"Sent message not tracked (bad lead id {lead_id}): {str(e)}")
    await log_event(
        db, action, "whatsapp_message", record.get("whatsapp_message_id") or record["id"],
        user=record.get("sender_name"), details=details,
        related={"lead_id": lead_id, "contact_id": record.get("contact_id")}
    )


# ═══════════════════════════════════════════════════
# SEND
# ═══════════════════════════════════════════════════

@router.post("/send-message")
async def send_message(
    data: WhatsAppSendRequest,
    db=Depends(get_db),
    dispatcher: WhatsAppDispatcher = Depends(get_dispatcher),
    threads=Depends(get_threads),
):
    try:
        record = await dispatcher.send_message(
            data.lead_id,
            data.phone_number,
            message=data.message,
            is_template=data.is_template,
            template_name=data.template_name,
            template_language=data.template_language,
            template_parameters=[p.model_dump() for p in data.template_parameters],
            template_id=data.template_id,
            contact_id=data.contact_id,
            sender_name=data.sender_name,
        )
    except DispatchError as e:
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(400, str(e))

    await _after_send(db, threads, data.lead_id, record, "send_whatsapp", {
        "phone": record["phone_number"],
        "template": data.template_name if data.is_template else None,
    })
    return {"success": True, "messageId": record["whatsapp_message_id"], "message": record}


@router.post("/send-media")
async def send_media(
    data: WhatsAppMediaRequest,
    db=Depends(get_db),
    dispatcher: WhatsAppDispatcher = Depends(get_dispatcher),
    threads=Depends(get_threads),
):
    try:
        record = await dispatcher.send_media(
            data.lead_id,
            data.phone_number,
            data.media_url,
            media_type=data.media_type,
            caption=data.caption,
            contact_id=data.contact_id,
            sender_name=data.sender_name,
        )
    except DispatchError as e:
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(400, str(e))

    await _after_send(db, threads, data.lead_id, record, "send_whatsapp_media", {
        "phone": record["phone_number"],
        "media_type": data.media_type,
    })
    return {"success": True, "messageId": record["whatsapp_message_id"], "message": record}


@router.post("/send")
async def send_simple(
    data: WhatsAppSimpleSendRequest,
    db=Depends(get_db),
    dispatcher: WhatsAppDispatcher = Depends(get_dispatcher),
):
    """Plain text to a number outside any lead (no thread, no timeline)."""
    try:
        result = await dispatcher.send_simple(data.phone_number, data.message)
    except DispatchError as e:
        raise _http_error(e)

    message_id = result.get("messageId") or result.get("message_id")
    await log_event(
        db, "send_whatsapp_simple", "whatsapp_message", message_id or "unknown",
        user=data.sender_name, details={"phone": data.phone_number}
    )
    return {"success": True, "messageId": message_id}


@router.post("/upload-media")
async def upload_media(
    file: UploadFile = File(...),
    lead_id: str = Form(None),
    dispatcher: WhatsAppDispatcher = Depends(get_dispatcher),
):
    content = await file.read()
    try:
        return await dispatcher.upload_media(
            file.filename or "upload",
            content,
            content_type=file.content_type or "application/octet-stream",
            lead_id=lead_id,
        )
    except DispatchError as e:
        raise _http_error(e)


# ═══════════════════════════════════════════════════
# THREAD / STATUS
# ═══════════════════════════════════════════════════

@router.get("/messages/{lead_id}")
async def get_messages(lead_id: str, db=Depends(get_db), threads=Depends(get_threads)):
    """Open (or refresh) the thread of a lead; polling resumes if messages are pending."""
    try:
        thread = await threads.open(db, lead_id)
    except ValueError as e:
        raise HTTPException(400, str(e))
    threads.poller.watch(thread)
    return {"lead_id": thread.lead_id, "messages": thread.messages, "has_pending": thread.has_pending()}


@router.delete("/messages/{lead_id}")
async def close_thread(lead_id: str, threads=Depends(get_threads)):
    """Modal closed: stop polling (a refresh already running still completes)."""
    threads.close(lead_id)
    return {"success": True}


@router.post("/status")
async def status_update(data: WhatsAppStatusUpdate, db=Depends(get_db)):
    updated = await apply_status_update(db, data.model_dump())
    if not updated:
        raise HTTPException(404, f"WhatsApp message {data.id} not found")
    return {"success": True}
