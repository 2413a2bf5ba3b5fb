"""
LexDesk CRM - Modèles d'envoi (WhatsApp / Email)
"""

from typing import Optional, List, Union
from pydantic import BaseModel, Field


class TemplateParameter(BaseModel):
    type: str = "text"
    text: str = ""


class WhatsAppSendRequest(BaseModel):
    lead_id: Optional[Union[str, int]] = None
    phone_number: Optional[str] = None
    message: Optional[str] = ""
    is_template: bool = False
    template_name: Optional[str] = None
    template_language: Optional[str] = "en_US"
    template_parameters: List[TemplateParameter] = Field(default_factory=list)
    template_id: Optional[int] = None
    contact_id: Optional[Union[str, int]] = None
    sender_name: Optional[str] = "You"


class WhatsAppMediaRequest(BaseModel):
    lead_id: Optional[Union[str, int]] = None
    phone_number: Optional[str] = None
    media_url: str
    media_type: str = "image"  # image | document | audio | video
    caption: Optional[str] = ""
    contact_id: Optional[Union[str, int]] = None
    sender_name: Optional[str] = "You"


class WhatsAppSimpleSendRequest(BaseModel):
    phone_number: Optional[str] = None
    message: Optional[str] = ""
    sender_name: Optional[str] = "You"


class WhatsAppStatusUpdate(BaseModel):
    id: str
    status: str
    timestamp: Optional[Union[str, int]] = None  # epoch seconds


class EmailAttachment(BaseModel):
    name: str
    content_type: Optional[str] = "application/octet-stream"
    content_bytes: str  # base64


class EmailSendRequest(BaseModel):
    user_id: str
    subject: Optional[str] = None
    body: str = ""
    to: Optional[List[str]] = None
    cc: List[str] = Field(default_factory=list)
    attachments: List[EmailAttachment] = Field(default_factory=list)
    sender_name: Optional[str] = None
    contact_id: Optional[Union[str, int]] = None


class MailboxSyncRequest(BaseModel):
    user_id: str
    reset: bool = False
