"""
Configuration et utilitaires partagés
"""

import os
import re
from datetime import datetime, timezone
from typing import NamedTuple, Optional
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from pathlib import Path

# Charger .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'lexdesk')

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

# Relays (WhatsApp Business API / Microsoft Graph mailbox)
WHATSAPP_RELAY_URL = os.environ.get('WHATSAPP_RELAY_URL', 'http://localhost:3001').rstrip('/')
MAILBOX_RELAY_URL = os.environ.get('MAILBOX_RELAY_URL', WHATSAPP_RELAY_URL).rstrip('/')

# OpenAI
OPENAI_API_KEY = os.environ.get('OPENAI_API_KEY', '')
OPENAI_API_URL = os.environ.get('OPENAI_API_URL', 'https://api.openai.com/v1/chat/completions')
OPENAI_MODEL = os.environ.get('OPENAI_MODEL', 'gpt-3.5-turbo')

# Affichage
TIMEZONE = os.environ.get('TIMEZONE', 'Asia/Jerusalem')
DEFAULT_COUNTRY_CODE = os.environ.get('DEFAULT_COUNTRY_CODE', '972')
OUTGOING_EMAIL_DOMAIN = os.environ.get('OUTGOING_EMAIL_DOMAIN', 'lawoffice.org.il')

# Timeline
INTERACTIONS_BATCH_SIZE = int(os.environ.get('INTERACTIONS_BATCH_SIZE', '100'))
INTERACTIONS_PAGE_SIZE = int(os.environ.get('INTERACTIONS_PAGE_SIZE', '20'))

# CORS (liste séparée par des virgules)
CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')

# Polling des messages WhatsApp "pending" (3 à 5 secondes)
WHATSAPP_POLL_SECONDS = min(max(int(os.environ.get('WHATSAPP_POLL_SECONDS', '4')), 3), 5)


def get_db():
    """Dépendance FastAPI: base de données courante"""
    return db


# ==================== HELPERS ====================

def now_iso() -> str:
    """Retourne la date/heure actuelle en ISO"""
    return datetime.now(timezone.utc).isoformat()

def timestamp_ms() -> int:
    """Retourne le timestamp actuel en millisecondes"""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class LeadRef(NamedTuple):
    """Identifiant de lead résolu (nouveau schéma ou legacy)"""
    raw: str
    is_legacy: bool
    key: object  # int pour legacy, str sinon

    @property
    def table(self) -> str:
        return "leads_lead" if self.is_legacy else "leads"


def parse_lead_id(lead_id) -> LeadRef:
    """
    Résout un identifiant de lead.
    "legacy_123" ou "123" -> legacy (id numérique), sinon -> nouveau schéma.
    """
    raw = str(lead_id if lead_id is not None else "").strip()
    if not raw:
        raise ValueError("Lead id vide")

    if raw.startswith("legacy_"):
        numeric = raw[len("legacy_"):]
        if not numeric.isdigit():
            raise ValueError(f"Lead legacy invalide: {raw}")
        return LeadRef(raw, True, int(numeric))

    if raw.isdigit():
        return LeadRef(f"legacy_{raw}", True, int(raw))

    return LeadRef(raw, False, raw)


def normalize_phone(phone: Optional[str]) -> tuple[str, str]:
    """
    Normalise un numéro pour WhatsApp (chiffres uniquement, indicatif inclus).

    Pipeline:
      1. Supprimer tout sauf les chiffres (le "+" initial est implicite)
      2. 00XXXX -> XXXX (préfixe international)
      3. 0XXXXXXXXX (numéro local) -> indicatif par défaut + XXXXXXXXX
      4. Validation: 8 à 15 chiffres, pas de chiffres tous identiques

    Returns: (status, normalized_or_error)
      status: "valid" | "invalid"
    """
    if not phone or not str(phone).strip():
        return "invalid", "Phone number is required"

    digits = re.sub(r"\D", "", str(phone))
    if not digits:
        return "invalid", "Phone number contains no digits"

    if digits.startswith("00"):
        digits = digits[2:]
    elif digits.startswith("0"):
        digits = DEFAULT_COUNTRY_CODE + digits[1:]

    if len(digits) < 8 or len(digits) > 15:
        return "invalid", f"Invalid phone number format: {len(digits)} digits"

    if len(set(digits)) == 1:
        return "invalid", "Invalid phone number format: repeated digits"

    return "valid", digits


def phone_tail(phone: Optional[str], size: int = 9) -> str:
    """Derniers chiffres d'un numéro, pour comparer des formats différents"""
    digits = re.sub(r"\D", "", str(phone or ""))
    return digits[-size:] if len(digits) >= 7 else ""
