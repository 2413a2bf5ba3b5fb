"""
LexDesk CRM - Email dispatch

Outbound e-mail goes through the mailbox relay (Microsoft Graph on the
employee's own mailbox). The relay also stores the sent message in
`emails`, which is why a successful send only invalidates the cached
timeline of the lead.

Relay endpoints:
- POST /api/emails/send
- GET  /api/auth/status?userId=
- POST /api/sync/now
- GET  /api/emails/{id}/attachments/{attachment_id}?userId=
"""

import re
import httpx
import logging
from typing import Optional
from urllib.parse import unquote

from config import MAILBOX_RELAY_URL, parse_lead_id
from services.interaction_aggregator import LeadNotFoundError, fetch_lead, invalidate_lead
from services.dispatch_errors import AttachmentTooLargeError, EmailRelayError, MissingRecipientError

logger = logging.getLogger("email_dispatch")

MAX_ATTACHMENT_BYTES = 4 * 1024 * 1024

HTML_TAG = re.compile(r"<[a-z][^>]*>", re.IGNORECASE)


# ==================== HELPERS ====================

def split_addresses(value) -> list:
    """List or "a@x, b@y; c@z" -> unique addresses, order kept, case-insensitive."""
    if not value:
        return []
    parts = value if isinstance(value, (list, tuple)) else re.split(r"[,;]", str(value))
    seen = set()
    addresses = []
    for part in parts:
        address = str(part or "").strip()
        if not address or address.lower() in seen:
            continue
        seen.add(address.lower())
        addresses.append(address)
    return addresses


def resolve_recipients(explicit, lead: Optional[dict]) -> list:
    recipients = split_addresses(explicit)
    if not recipients and lead:
        recipients = split_addresses(lead.get("email"))
    if not recipients:
        raise MissingRecipientError()
    return recipients


def append_signature(body: str, signature: Optional[str]) -> str:
    body = body or ""
    if not signature or not signature.strip():
        return body
    if HTML_TAG.search(signature):
        return f"{body}<br><br>{signature}"
    return f"{body}\n\n{signature}"


def default_subject(lead: dict) -> str:
    """[lead_number] - name - topic"""
    number = lead.get("lead_number") or lead.get("id")
    parts = [f"[{number}]" if number is not None else "", lead.get("name") or "", lead.get("topic") or ""]
    return " - ".join(p for p in parts if p)


def attachment_size(content_b64: str) -> int:
    """Decoded size of a base64 payload (data: URL prefix allowed)."""
    data = (content_b64 or "").strip()
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    data = re.sub(r"\s", "", data)
    return len(data) * 3 // 4 - data[-2:].count("=")


def check_attachments(attachments: list):
    for attachment in attachments or []:
        size = attachment_size(attachment.get("content_bytes", ""))
        if size > MAX_ATTACHMENT_BYTES:
            logger.warning(f"Attachment {attachment.get('name')} rejected: {size} bytes")
            raise AttachmentTooLargeError()


def filename_from_disposition(header: Optional[str], default: str = "attachment") -> str:
    if not header:
        return default
    match = re.search(r"filename\*=(?:UTF-8'')?([^;]+)", header, re.IGNORECASE)
    if match:
        return unquote(match.group(1).strip().strip('"'))
    match = re.search(r'filename="?([^";]+)"?', header, re.IGNORECASE)
    if match:
        return match.group(1).strip()
    return default


async def fetch_signature(db, sender_name: Optional[str]) -> str:
    """Employee signature by display name; missing or failed lookup -> ''."""
    if not sender_name:
        return ""
    try:
        employee = await db.tenants_employee.find_one(
            {"display_name": sender_name}, {"_id": 0, "email_signature": 1}
        )
    except Exception as e:
        logger.warning(f"Signature lookup failed for {sender_name}: {str(e)}")
        return ""
    return (employee or {}).get("email_signature") or ""


# ==================== RELAY CLIENT ====================

class EmailDispatcher:
    """Client for the mailbox relay."""

    def __init__(self, relay_url: str = MAILBOX_RELAY_URL, transport: httpx.AsyncBaseTransport = None,
                 timeout: float = 30.0):
        self.relay_url = relay_url.rstrip("/")
        self.transport = transport
        self.timeout = timeout

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(base_url=self.relay_url, timeout=self.timeout,
                                         transport=self.transport) as client:
                return await client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            logger.error(f"Mailbox relay timeout: {method} {path}")
            raise EmailRelayError("Mail service did not respond in time", code="TIMEOUT")
        except httpx.HTTPError as e:
            logger.error(f"Mailbox relay error on {method} {path}: {str(e)}")
            raise EmailRelayError(code="CONNECTION_ERROR")

    async def _json(self, method: str, path: str, **kwargs) -> dict:
        resp = await self._request(method, path, **kwargs)
        try:
            body = resp.json()
        except ValueError:
            body = {"error": resp.text or f"HTTP {resp.status_code}"}
        if not isinstance(body, dict):
            body = {"data": body}

        if resp.status_code >= 400 or body.get("success") is False:
            message = body.get("error") or body.get("message") or f"HTTP {resp.status_code}"
            logger.warning(f"Mailbox relay rejected {path} ({resp.status_code}): {message}")
            raise EmailRelayError(f"Failed to send email: {message}" if path.endswith("/send") else str(message))
        return body

    async def send(
        self,
        db,
        lead_id,
        user_id: str,
        body: str,
        subject: Optional[str] = None,
        to=None,
        cc=None,
        attachments: Optional[list] = None,
        sender_name: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> dict:
        lead_ref = parse_lead_id(lead_id)
        lead = await fetch_lead(db, lead_ref)
        if not lead:
            raise LeadNotFoundError(f"Lead {lead_ref.raw} not found")

        recipients = resolve_recipients(to, lead)
        cc_list = [a for a in split_addresses(cc) if a.lower() not in {r.lower() for r in recipients}]
        attachments = attachments or []
        check_attachments(attachments)

        signature = await fetch_signature(db, sender_name)
        subject = (subject or "").strip() or default_subject(lead)

        payload = {
            "userId": user_id,
            "subject": subject,
            "bodyHtml": append_signature(body, signature),
            "to": recipients,
            "cc": cc_list,
            "attachments": [
                {
                    "name": a.get("name"),
                    "contentType": a.get("content_type") or "application/octet-stream",
                    "contentBytes": a.get("content_bytes"),
                }
                for a in attachments
            ],
            "context": {
                "clientId": None if lead_ref.is_legacy else lead_ref.key,
                "legacyLeadId": lead_ref.key if lead_ref.is_legacy else None,
                "contactId": contact_id,
            },
        }

        data = await self._json("POST", "/api/emails/send", json=payload)
        invalidate_lead(lead_ref.raw)
        logger.info(f"Email sent for lead {lead_ref.raw} to {', '.join(recipients)}")

        return {
            "success": True,
            "message_id": data.get("messageId") or data.get("id"),
            "subject": subject,
            "to": recipients,
            "cc": cc_list,
        }

    async def mailbox_status(self, user_id: str) -> dict:
        return await self._json("GET", "/api/auth/status", params={"userId": user_id})

    async def trigger_sync(self, user_id: str, reset: bool = False) -> dict:
        data = await self._json("POST", "/api/sync/now", json={"userId": user_id, "reset": reset})
        logger.info(f"Mailbox sync triggered for {user_id} (reset={reset})")
        return data

    async def download_attachment(self, user_id: str, email_id: str, attachment_id: str) -> tuple:
        """Returns (content, filename, content_type)."""
        resp = await self._request(
            "GET", f"/api/emails/{email_id}/attachments/{attachment_id}", params={"userId": user_id}
        )
        if resp.status_code >= 400:
            try:
                message = resp.json().get("error")
            except (ValueError, AttributeError):
                message = None
            logger.warning(f"Attachment {attachment_id} of {email_id} unavailable ({resp.status_code})")
            raise EmailRelayError(message or "Failed to download attachment", code="ATTACHMENT_DOWNLOAD_FAILED")

        filename = filename_from_disposition(resp.headers.get("content-disposition"))
        content_type = resp.headers.get("content-type", "application/octet-stream")
        return resp.content, filename, content_type
