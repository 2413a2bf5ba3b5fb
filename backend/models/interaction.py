"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  LexDesk CRM - Modèle Interaction                                            ║
║                                                                              ║
║  Forme commune de la timeline client:                                        ║
║  note manuelle, email, WhatsApp, appel, interaction legacy.                  ║
║  Construite à chaque lecture, jamais persistée sous cette forme.             ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class InteractionKind(str, Enum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    CALL = "call"
    SMS = "sms"
    OFFICE = "office"
    NOTE = "note"


class InteractionSource(str, Enum):
    """Préfixe d'id par source (évite les collisions au dédoublonnage)"""
    MANUAL = "manual"
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    CALL = "call"
    LEGACY = "legacy"


# Méthodes proposées pour une interaction manuelle
CONTACT_METHODS = ["email", "whatsapp", "call", "sms", "office"]


class Interaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    date: str = ""
    time: str = ""
    raw_date: str = ""
    employee: str = ""
    direction: str = "out"  # in | out
    kind: str = InteractionKind.NOTE.value
    length: str = ""
    content: str = ""
    observation: str = ""
    editable: bool = False

    # Optionnels
    status: Optional[str] = None
    subject: Optional[str] = None
    contact_id: Optional[str] = None
    contact_name: Optional[str] = None
    recording_url: Optional[str] = None
    source: Optional[str] = None


class InteractionPage(BaseModel):
    """Vue "load more" sur les interactions déjà chargées"""
    lead_id: str
    items: List[Interaction] = Field(default_factory=list)
    total: int = 0
    offset: int = 0
    limit: int = 0
    has_more: bool = False


class ManualInteractionCreate(BaseModel):
    method: str = "email"
    date: Optional[str] = ""
    time: Optional[str] = ""
    length: Optional[str] = ""
    content: Optional[str] = ""
    observation: Optional[str] = ""
    employee: Optional[str] = None


class InteractionUpdate(BaseModel):
    date: Optional[str] = None
    time: Optional[str] = None
    length: Optional[str] = None
    content: Optional[str] = None
    observation: Optional[str] = None


class Contact(BaseModel):
    id: str
    name: str = "---"
    email: Optional[str] = None
    phone: Optional[str] = None
    mobile: Optional[str] = None
    is_main: bool = False


class TimelineSummary(BaseModel):
    summary: str
    action_items: str = ""
