"""
LexDesk CRM - Email & mailbox routes
"""

import logging
from urllib.parse import quote
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from config import get_db
from models import EmailSendRequest, MailboxSyncRequest
from services.dispatch_errors import DispatchError
from services.email_dispatch import EmailDispatcher
from services.event_logger import log_event
from services.interaction_aggregator import LeadNotFoundError

logger = logging.getLogger("routes.emails")

router = APIRouter(tags=["Emails"])


def get_email_dispatcher() -> EmailDispatcher:
    return EmailDispatcher()


def _http_error(e: DispatchError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


# ═══════════════════════════════════════════════════
# SEND
# ═══════════════════════════════════════════════════

@router.post("/leads/{lead_id}/emails/send")
async def send_email(
    lead_id: str,
    data: EmailSendRequest,
    db=Depends(get_db),
    dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
):
    try:
        result = await dispatcher.send(
            db,
            lead_id,
            user_id=data.user_id,
            body=data.body,
            subject=data.subject,
            to=data.to,
            cc=data.cc,
            attachments=[a.model_dump() for a in data.attachments],
            sender_name=data.sender_name,
            contact_id=data.contact_id,
        )
    except DispatchError as e:
        raise _http_error(e)
    except LeadNotFoundError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))

    await log_event(
        db, "send_email", "email", result.get("message_id") or "",
        user=data.sender_name or data.user_id,
        details={"to": result["to"], "cc": result["cc"], "subject": result["subject"],
                 "attachments": len(data.attachments)},
        related={"lead_id": lead_id, "contact_id": data.contact_id}
    )
    return result


# ═══════════════════════════════════════════════════
# MAILBOX
# ═══════════════════════════════════════════════════

@router.get("/mailbox/status")
async def mailbox_status(
    user_id: str = Query(..., min_length=1),
    dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
):
    try:
        return await dispatcher.mailbox_status(user_id)
    except DispatchError as e:
        raise _http_error(e)


@router.post("/mailbox/sync")
async def mailbox_sync(data: MailboxSyncRequest, dispatcher: EmailDispatcher = Depends(get_email_dispatcher)):
    try:
        return await dispatcher.trigger_sync(data.user_id, reset=data.reset)
    except DispatchError as e:
        raise _http_error(e)


@router.get("/emails/{email_id}/attachments/{attachment_id}")
async def download_attachment(
    email_id: str,
    attachment_id: str,
    user_id: str = Query(..., min_length=1),
    dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
):
    try:
        content, filename, content_type = await dispatcher.download_attachment(user_id, email_id, attachment_id)
    except DispatchError as e:
        raise _http_error(e)

    return Response(
        content=content,
        media_type=content_type,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}"},
    )
