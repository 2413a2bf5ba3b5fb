"""
LexDesk CRM - Interaction normalizers

One function per source row type, each returning a dict in the common
Interaction shape. Pure functions: no database access here.
"""

from datetime import datetime, timezone
from typing import Optional
import pytz

from config import TIMEZONE, OUTGOING_EMAIL_DOMAIN

DISPLAY_TZ = pytz.timezone(TIMEZONE)

# Values the legacy export uses for "no value"
EMPTY_MARKERS = {"\\N", "EMPTY", "FAILED", "NULL"}

LEGACY_KIND_MAP = {
    "w": "whatsapp",
    "c": "call",
    "e": "email",
}

_IN_VALUES = {"in", "i", "incoming", "inbound", "received"}
_OUT_VALUES = {"out", "o", "outgoing", "outbound", "sent"}


# ==================== DATES ====================

def parse_timestamp(value) -> Optional[datetime]:
    """Parse a stored timestamp into an aware UTC datetime, or None."""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = _from_epoch(value)
    else:
        text = str(value).strip()
        if not text or text in EMPTY_MARKERS:
            return None
        if text.isdigit() and len(text) in (10, 13):
            dt = _from_epoch(int(text))
        else:
            if text.endswith("Z") or text.endswith("z"):
                text = text[:-1] + "+00:00"
            try:
                dt = datetime.fromisoformat(text)
            except ValueError:
                return None

    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _from_epoch(value) -> Optional[datetime]:
    seconds = value / 1000 if value > 1e12 else value
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def format_date(dt: Optional[datetime]) -> str:
    if dt is None:
        return ""
    return dt.astimezone(DISPLAY_TZ).strftime("%d/%m/%y")


def format_time(dt: Optional[datetime]) -> str:
    if dt is None:
        return ""
    return dt.astimezone(DISPLAY_TZ).strftime("%H:%M")


# ==================== TEXT HELPERS ====================

def clean_legacy_text(text) -> str:
    """Decode the literal escape sequences found in legacy exports."""
    if text is None:
        return ""
    text = str(text)
    if not text or text.strip() in EMPTY_MARKERS:
        return ""
    return (
        text.replace("\\r\\n", "\n")
        .replace("\\n", "\n")
        .replace("\\r", "\n")
        .replace("\\t", " ")
        .replace('\\"', '"')
        .replace("\\'", "'")
        .replace("\\\\", "\\")
        .strip()
    )


def valid_ref(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text in EMPTY_MARKERS:
        return None
    return text


def _direction(value, default: str = "in") -> str:
    text = str(value or "").strip().lower()
    if text in _IN_VALUES:
        return "in"
    if text in _OUT_VALUES:
        return "out"
    return default


def _minutes_label(minutes) -> str:
    try:
        minutes = int(float(minutes))
    except (TypeError, ValueError):
        return ""
    return f"{minutes} min" if minutes > 0 else ""


def _with_dates(interaction: dict, raw_date) -> dict:
    dt = parse_timestamp(raw_date)
    interaction["raw_date"] = dt.isoformat() if dt else str(raw_date or "")
    interaction.setdefault("date", "")
    interaction.setdefault("time", "")
    if not interaction["date"]:
        interaction["date"] = format_date(dt)
    if not interaction["time"]:
        interaction["time"] = format_time(dt)
    return interaction


def employee_name(employee_names: dict, *candidates) -> Optional[str]:
    """First resolvable employee among the candidate ids."""
    for candidate in candidates:
        ref = valid_ref(candidate)
        if not ref:
            continue
        employee = employee_names.get(ref)
        if employee:
            return employee
        return ref
    return None


# ==================== SOURCES ====================

def from_manual(entry: dict) -> dict:
    """Manual note stored on the lead record (already in timeline shape)."""
    raw_id = str(entry.get("id") or "").strip()
    if not raw_id:
        dt = parse_timestamp(entry.get("raw_date"))
        raw_id = f"manual_{int(dt.timestamp() * 1000)}" if dt else "manual_unknown"
    elif not raw_id.startswith("manual_"):
        raw_id = f"manual_{raw_id}"

    interaction = {
        "id": raw_id,
        "date": entry.get("date") or "",
        "time": entry.get("time") or "",
        "employee": entry.get("employee") or "",
        "direction": _direction(entry.get("direction"), default="out"),
        "kind": entry.get("kind") or "note",
        "length": entry.get("length") or "",
        "content": entry.get("content") or "",
        "observation": entry.get("observation") or "",
        "editable": True,
        "source": "manual",
    }
    return _with_dates(interaction, entry.get("raw_date"))


def is_outgoing_email(row: dict) -> bool:
    direction = row.get("direction")
    if direction:
        return _direction(direction, default="in") == "out"
    sender = str(row.get("sender_email") or "").lower()
    return bool(OUTGOING_EMAIL_DOMAIN) and sender.endswith(OUTGOING_EMAIL_DOMAIN.lower())


def from_email(row: dict, lead_name: str = "") -> dict:
    outgoing = is_outgoing_email(row)
    if outgoing:
        employee = row.get("sender_name") or "You"
    else:
        employee = lead_name or row.get("sender_name") or row.get("sender_email") or "Client"

    subject = row.get("subject") or ""
    interaction = {
        "id": f"email_{row.get('message_id') or row.get('id')}",
        "employee": employee,
        "direction": "out" if outgoing else "in",
        "kind": "email",
        "length": "",
        "content": subject or row.get("body_preview") or "(no subject)",
        "observation": row.get("observation") or "",
        "editable": True,
        "subject": subject,
        "contact_id": valid_ref(row.get("contact_id")),
        "source": "email",
    }
    return _with_dates(interaction, row.get("sent_at") or row.get("created_at"))


def from_whatsapp(row: dict, lead_name: str = "", content: Optional[str] = None) -> dict:
    direction = _direction(row.get("direction"), default="in")
    if direction == "out":
        employee = row.get("sender_name") or "You"
    else:
        employee = lead_name or row.get("sender_name") or "Client"

    if content is None:
        content = row.get("message") or ""
    if not content and row.get("media_url"):
        content = row.get("caption") or f"[{row.get('message_type') or 'media'}]"

    interaction = {
        "id": f"whatsapp_{row.get('id') or row.get('whatsapp_message_id')}",
        "employee": employee,
        "direction": direction,
        "kind": "whatsapp",
        "length": "",
        "content": content,
        "observation": "",
        "editable": False,
        "status": row.get("whatsapp_status"),
        "contact_id": valid_ref(row.get("contact_id")),
        "source": "whatsapp",
    }
    raw_date = row.get("sent_at") or row.get("whatsapp_timestamp") or row.get("created_at")
    return _with_dates(interaction, raw_date)


def from_call_log(row: dict, employee_names: Optional[dict] = None) -> dict:
    employee_names = employee_names or {}
    direction = "out" if str(row.get("direction") or "").lower() == "outbound" else "in"

    try:
        duration = int(float(row.get("duration") or 0))
    except (TypeError, ValueError):
        duration = 0
    length = f"{max(1, round(duration / 60))} min" if duration > 0 else ""

    status = str(row.get("status") or "unknown").replace("+", " ")
    employee = employee_name(employee_names, row.get("employee_id")) or "Unknown"

    raw_date = row.get("cdate")
    if not raw_date and row.get("date"):
        raw_date = f"{row['date']}T{row.get('time') or '00:00:00'}"

    interaction = {
        "id": f"call_{row.get('id') or row.get('call_id')}",
        "employee": employee,
        "direction": direction,
        "kind": "call",
        "length": length,
        "content": f"Call {status}",
        "observation": "",
        "editable": False,
        "status": status,
        "recording_url": row.get("url") or None,
        "source": "call",
    }
    return _with_dates(interaction, raw_date)


def from_legacy(row: dict, lead_name: str = "", employee_names: Optional[dict] = None) -> dict:
    employee_names = employee_names or {}
    raw_kind = str(row.get("kind") or "").strip()

    direction = "out" if row.get("direction") == "o" or raw_kind == "c" else "in"
    kind = LEGACY_KIND_MAP.get(raw_kind, "note")

    if direction == "in":
        employee = lead_name or "Client"
    else:
        employee = employee_name(employee_names, row.get("creator_id"), row.get("employee_id")) or "Unknown"

    description = clean_legacy_text(row.get("description"))

    # date/time columns first, cdate otherwise
    date_value = valid_ref(row.get("date"))
    time_value = valid_ref(row.get("time"))
    if date_value:
        raw_date = f"{date_value}T{time_value}" if time_value else date_value
        if parse_timestamp(raw_date) is None:
            raw_date = row.get("cdate") or date_value
    else:
        raw_date = row.get("cdate")

    interaction = {
        "id": f"legacy_{row.get('id')}",
        "employee": employee,
        "direction": direction,
        "kind": kind,
        "length": _minutes_label(row.get("minutes")),
        "content": clean_legacy_text(row.get("content")) or "No content",
        "observation": description,
        "editable": False,
        "status": "read" if row.get("read") == "t" else "unread",
        "subject": description,
        "source": "legacy",
    }
    return _with_dates(interaction, raw_date)
