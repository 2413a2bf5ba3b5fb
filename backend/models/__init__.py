"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  LexDesk CRM - Models Package                                                ║
║                                                                              ║
║  Exports tous les modèles pour import facile                                 ║
║  from models import Interaction, WhatsAppSendRequest, etc.                   ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

# Timeline
from .interaction import (
    InteractionKind,
    InteractionSource,
    CONTACT_METHODS,
    Interaction,
    InteractionPage,
    ManualInteractionCreate,
    InteractionUpdate,
    Contact,
    TimelineSummary,
)

# Envois
from .messaging import (
    TemplateParameter,
    WhatsAppSendRequest,
    WhatsAppMediaRequest,
    WhatsAppSimpleSendRequest,
    WhatsAppStatusUpdate,
    EmailAttachment,
    EmailSendRequest,
    MailboxSyncRequest,
)
