"""
LexDesk CRM - WhatsApp dispatch

Sends one outbound WhatsApp message through the relay (which talks to the
WhatsApp Business API and stores the row) and returns an optimistic
"pending" record for the in-memory thread.

Relay endpoints:
- POST /api/whatsapp/send-message  (text / template)
- POST /api/whatsapp/send-media
- POST /api/whatsapp/upload-media  (multipart, field "file")
- POST /whatsapp/send              (older plain text endpoint)
"""

import httpx
import logging
from typing import Optional
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import (
    INTERACTIONS_BATCH_SIZE,
    WHATSAPP_POLL_SECONDS,
    WHATSAPP_RELAY_URL,
    normalize_phone,
    now_iso,
    parse_lead_id,
    timestamp_ms,
)
from services.interaction_aggregator import invalidate_lead
from services.interaction_normalizers import parse_timestamp
from services.dispatch_errors import (
    InvalidPhoneNumberError,
    MediaTooLargeError,
    MissingMessageError,
    MissingPhoneNumberError,
    ReEngagementRequiredError,
    WhatsAppApiError,
)

logger = logging.getLogger("whatsapp_dispatch")

# WhatsApp Business API: customer has not replied in the last 24 hours
RE_ENGAGEMENT_CODE = 131047
MAX_MEDIA_BYTES = 16 * 1024 * 1024


def template_marker(template_name: str, parameters: Optional[list] = None) -> str:
    """Body stored for a template message: "[Template: name] first_param"."""
    first = ""
    if parameters:
        param = parameters[0]
        first = (param.get("text") if isinstance(param, dict) else str(param)) or ""
    return f"[Template: {template_name}] {first}".strip()


def error_from_response(status_code: int, body) -> WhatsAppApiError:
    """Map a relay error body to the matching dispatch error."""
    if not isinstance(body, dict):
        body = {"error": str(body or "")}

    error = body.get("error")
    code = body.get("code")
    message = error if isinstance(error, str) else ""
    if isinstance(error, dict):
        code = code or error.get("code")
        message = error.get("message") or ""

    if code == "RE_ENGAGEMENT_REQUIRED" or str(code) == str(RE_ENGAGEMENT_CODE):
        return ReEngagementRequiredError()
    if code == "INVALID_PHONE":
        return InvalidPhoneNumberError()
    if message == "Phone number is required":
        return MissingPhoneNumberError()

    if message and code is not None and not message.startswith("WhatsApp API Error"):
        message = f"WhatsApp API Error: {message}"
    return WhatsAppApiError(
        message or f"Failed to send message (HTTP {status_code})",
        code=str(code) if code is not None else None,
    )


def _lead_columns(lead_id) -> dict:
    if lead_id in (None, ""):
        return {"lead_id": None, "legacy_id": None}
    lead_ref = parse_lead_id(lead_id)
    if lead_ref.is_legacy:
        return {"lead_id": None, "legacy_id": lead_ref.key}
    return {"lead_id": lead_ref.key, "legacy_id": None}


def _validated_phone(phone_number: Optional[str]) -> str:
    if not phone_number or not str(phone_number).strip():
        raise MissingPhoneNumberError()
    status, result = normalize_phone(phone_number)
    if status == "invalid":
        logger.warning(f"Rejected phone number '{phone_number}': {result}")
        raise InvalidPhoneNumberError()
    return result


class WhatsAppDispatcher:
    """Client for the WhatsApp relay."""

    def __init__(self, relay_url: str = WHATSAPP_RELAY_URL, transport: httpx.AsyncBaseTransport = None,
                 timeout: float = 30.0):
        self.relay_url = relay_url.rstrip("/")
        self.transport = transport
        self.timeout = timeout

    async def _post(self, path: str, **kwargs) -> dict:
        try:
            async with httpx.AsyncClient(base_url=self.relay_url, timeout=self.timeout,
                                         transport=self.transport) as client:
                resp = await client.post(path, **kwargs)
        except httpx.TimeoutException:
            logger.error(f"WhatsApp relay timeout: {path}")
            raise WhatsAppApiError("WhatsApp service did not respond in time", code="TIMEOUT")
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp relay error on {path}: {str(e)}")
            raise WhatsAppApiError(code="CONNECTION_ERROR")

        try:
            body = resp.json()
        except ValueError:
            body = {"error": resp.text}

        if resp.status_code >= 400 or (isinstance(body, dict) and body.get("success") is False):
            error = error_from_response(resp.status_code, body)
            logger.warning(f"WhatsApp send rejected ({resp.status_code}) {error.code}: {error.user_message}")
            raise error
        return body if isinstance(body, dict) else {}

    async def send_message(
        self,
        lead_id,
        phone_number: Optional[str],
        message: Optional[str] = "",
        is_template: bool = False,
        template_name: Optional[str] = None,
        template_language: Optional[str] = "en_US",
        template_parameters: Optional[list] = None,
        template_id: Optional[int] = None,
        contact_id: Optional[str] = None,
        sender_name: Optional[str] = "You",
    ) -> dict:
        columns = _lead_columns(lead_id)
        phone = _validated_phone(phone_number)
        if not is_template and not (message or "").strip():
            raise MissingMessageError()

        parameters = [
            p if isinstance(p, dict) else {"type": "text", "text": str(p)}
            for p in (template_parameters or [])
        ]
        payload = {
            "leadId": lead_id,
            "phoneNumber": phone,
            "message": message or "",
            "isTemplate": is_template,
            "contactId": contact_id,
            "sender_name": sender_name or "You",
        }
        if is_template:
            payload["templateName"] = template_name
            payload["templateLanguage"] = template_language or "en_US"
            payload["templateParameters"] = parameters
            if template_id is not None:
                payload["templateId"] = template_id

        data = await self._post("/api/whatsapp/send-message", json=payload)
        logger.info(f"WhatsApp message sent to {phone} (lead {lead_id}): {data.get('messageId')}")

        body = template_marker(template_name or "", parameters) if is_template else message
        return self._pending_record(
            columns, phone, body, data.get("messageId"), contact_id, sender_name,
            template_id=template_id,
        )

    async def send_media(
        self,
        lead_id,
        phone_number: Optional[str],
        media_url: str,
        media_type: str = "image",
        caption: Optional[str] = "",
        contact_id: Optional[str] = None,
        sender_name: Optional[str] = "You",
    ) -> dict:
        columns = _lead_columns(lead_id)
        phone = _validated_phone(phone_number)
        if not media_url:
            raise MissingMessageError("Media URL is required")

        data = await self._post("/api/whatsapp/send-media", json={
            "leadId": lead_id,
            "mediaUrl": media_url,
            "mediaType": media_type,
            "caption": caption or "",
            "phoneNumber": phone,
            "contactId": contact_id,
        })
        logger.info(f"WhatsApp {media_type} sent to {phone} (lead {lead_id})")

        record = self._pending_record(
            columns, phone, caption or "", data.get("messageId"), contact_id, sender_name,
            message_type=media_type,
        )
        record["media_url"] = media_url
        record["caption"] = caption or ""
        return record

    async def upload_media(self, filename: str, content: bytes, content_type: str = "application/octet-stream",
                           lead_id=None) -> dict:
        if len(content) > MAX_MEDIA_BYTES:
            raise MediaTooLargeError(f"{filename} is too large (16MB max)")

        data = await self._post(
            "/api/whatsapp/upload-media",
            files={"file": (filename, content, content_type)},
            data={"leadId": str(lead_id)} if lead_id is not None else None,
        )
        logger.info(f"Media {filename} uploaded ({len(content)} bytes)")
        return data

    async def send_simple(self, phone_number: Optional[str], message: str) -> dict:
        """Older relay endpoint: plain text, no lead bookkeeping."""
        phone = _validated_phone(phone_number)
        if not (message or "").strip():
            raise MissingMessageError()
        return await self._post("/whatsapp/send", json={"phone": phone, "message": message})

    def _pending_record(self, columns: dict, phone, body, message_id, contact_id, sender_name,
                        message_type: str = "text", template_id=None) -> dict:
        record = {
            "id": f"local_{timestamp_ms()}",
            "contact_id": contact_id,
            "phone_number": phone,
            "sender_name": sender_name or "You",
            "direction": "out",
            "message": body or "",
            "sent_at": now_iso(),
            "whatsapp_message_id": message_id,
            "whatsapp_status": "pending",
            "message_type": message_type,
            "template_id": template_id,
        }
        record.update(columns)
        return record


async def apply_status_update(db, status: dict) -> bool:
    """Webhook status update: {id, status, timestamp (epoch seconds)}."""
    message_id = status.get("id")
    new_status = status.get("status")
    if not message_id or not new_status:
        return False

    ts = parse_timestamp(status.get("timestamp"))
    result = await db.whatsapp_messages.update_one(
        {"whatsapp_message_id": message_id},
        {"$set": {
            "whatsapp_status": new_status,
            "whatsapp_timestamp": ts.isoformat() if ts else now_iso(),
        }}
    )
    if result.matched_count == 0:
        logger.warning(f"Status update for unknown WhatsApp message {message_id}")
        return False
    logger.info(f"WhatsApp message {message_id} -> {new_status}")
    return True


# ==================== THREAD (messaging modal) ====================

class WhatsAppThread:
    """In-memory message list of one lead while its WhatsApp modal is open."""

    def __init__(self, db, lead_id, limit: int = INTERACTIONS_BATCH_SIZE):
        self.db = db
        self.lead_ref = parse_lead_id(lead_id)
        self.limit = limit
        self.messages = []

    @property
    def lead_id(self) -> str:
        return self.lead_ref.raw

    async def _fetch(self) -> list:
        field = "legacy_id" if self.lead_ref.is_legacy else "lead_id"
        return await self.db.whatsapp_messages.find(
            {field: self.lead_ref.key}, {"_id": 0}
        ).sort("sent_at", 1).limit(self.limit).to_list(self.limit)

    async def load(self) -> list:
        self.messages = await self._fetch()
        return self.messages

    def append_pending(self, record: dict) -> bool:
        """Add a local record unless the stored row for that message is already loaded."""
        message_id = record.get("whatsapp_message_id")
        if message_id and any(m.get("whatsapp_message_id") == message_id for m in self.messages):
            return False
        self.messages.append(record)
        return True

    async def refresh(self) -> list:
        """Stored rows, plus local pending records the relay has not stored yet."""
        rows = await self._fetch()
        stored_ids = {r.get("whatsapp_message_id") for r in rows if r.get("whatsapp_message_id")}
        unconfirmed = [
            m for m in self.messages
            if str(m.get("id", "")).startswith("local_") and m.get("whatsapp_message_id") not in stored_ids
        ]
        self.messages = sorted(rows + unconfirmed, key=lambda m: str(m.get("sent_at") or ""))
        return self.messages

    def has_pending(self) -> bool:
        return any(m.get("whatsapp_status") == "pending" for m in self.messages)


class PendingStatusPoller:
    """
    Re-fetches open threads every WHATSAPP_POLL_SECONDS while they hold
    pending messages. One interval job per lead; the job removes itself
    once every message has left "pending".
    """

    def __init__(self, scheduler: AsyncIOScheduler = None, interval: int = WHATSAPP_POLL_SECONDS):
        self.scheduler = scheduler or AsyncIOScheduler()
        self.interval = interval

    @staticmethod
    def job_id(lead_id) -> str:
        return f"whatsapp_pending_{lead_id}"

    def watch(self, thread: WhatsAppThread):
        if not thread.has_pending():
            return
        if not self.scheduler.running:
            self.scheduler.start()
        self.scheduler.add_job(
            self.poll_once,
            IntervalTrigger(seconds=self.interval),
            args=[thread],
            id=self.job_id(thread.lead_id),
            name=f"WhatsApp pending {thread.lead_id}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Polling WhatsApp status for lead {thread.lead_id} every {self.interval}s")

    def is_watching(self, lead_id) -> bool:
        return self.scheduler.get_job(self.job_id(lead_id)) is not None

    async def poll_once(self, thread: WhatsAppThread):
        try:
            await thread.refresh()
        except Exception as e:
            logger.warning(f"WhatsApp thread refresh failed for lead {thread.lead_id}: {str(e)}")
            return
        if not thread.has_pending():
            self.stop(thread.lead_id)
            invalidate_lead(thread.lead_id)

    def stop(self, lead_id):
        try:
            self.scheduler.remove_job(self.job_id(lead_id))
            logger.info(f"Stopped WhatsApp status polling for lead {lead_id}")
        except JobLookupError:
            pass

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)


class ThreadRegistry:
    """Open WhatsApp threads, keyed by lead id."""

    def __init__(self, poller: PendingStatusPoller = None):
        self.poller = poller or PendingStatusPoller()
        self.threads = {}

    async def open(self, db, lead_id) -> WhatsAppThread:
        thread = WhatsAppThread(db, lead_id)
        existing = self.threads.get(thread.lead_id)
        if existing is not None:
            await existing.refresh()
            return existing
        await thread.load()
        self.threads[thread.lead_id] = thread
        return thread

    async def record_sent(self, db, lead_id, record: dict):
        """Add an optimistic record to the lead's thread and start polling."""
        if lead_id in (None, ""):
            return
        thread = await self.open(db, lead_id)
        thread.append_pending(record)
        self.poller.watch(thread)

    def close(self, lead_id):
        try:
            key = parse_lead_id(lead_id).raw
        except ValueError:
            return
        self.poller.stop(key)
        self.threads.pop(key, None)

    def shutdown(self):
        self.threads.clear()
        self.poller.shutdown()


whatsapp_threads = ThreadRegistry()
