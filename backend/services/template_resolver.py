"""
LexDesk CRM - WhatsApp template resolution

Outgoing template messages are stored as a marker ("[Template: name] param"
or "TEMPLATE_MARKER:name"). For display, the marker is replaced with the
template body, looked up by template_id first and by fuzzy name match second.
"""

import re
import logging
from difflib import SequenceMatcher
from typing import Optional

logger = logging.getLogger("template_resolver")

FUZZY_MIN_RATIO = 0.8

_BRACKET_MARKER = re.compile(r"\[Template:\s*([^\]]*)\]\s*(.*)", re.IGNORECASE | re.DOTALL)
_PLAIN_MARKER = re.compile(r"TEMPLATE_MARKER:\s*(\S*)\s*(.*)", re.DOTALL)
_PLACEHOLDER = re.compile(r"\{\{(\d+)\}\}")


def is_template_marker(text: Optional[str]) -> bool:
    if not text:
        return False
    return "[Template:" in text or "TEMPLATE_MARKER:" in text


def parse_marker(text: Optional[str]) -> tuple[str, str]:
    """Return (template_name, trailing_parameter_text); empty strings if no marker."""
    if not text:
        return "", ""
    match = _BRACKET_MARKER.search(text) or _PLAIN_MARKER.search(text)
    if not match:
        return "", ""
    return match.group(1).strip(), match.group(2).strip()


def fill_placeholders(content: str, params: list) -> str:
    """Replace {{1}}, {{2}}... with parameter texts; unknown indexes stay as-is."""
    if not content:
        return ""
    texts = []
    for param in params or []:
        if isinstance(param, dict):
            texts.append(str(param.get("text") or ""))
        else:
            texts.append(str(param or ""))

    def _sub(match):
        index = int(match.group(1)) - 1
        if 0 <= index < len(texts):
            return texts[index]
        return match.group(0)

    return _PLACEHOLDER.sub(_sub, content)


def _simplify(name: Optional[str]) -> str:
    return re.sub(r"[^a-z0-9]", "", str(name or "").lower())


def is_active_template(template: dict) -> bool:
    return template.get("active") in ("t", "true", True, "True", 1)


class TemplateResolver:
    """Resolves stored WhatsApp messages to their display text."""

    def __init__(self, templates: Optional[list] = None):
        self.templates = [t for t in (templates or []) if t.get("content")]
        self._by_id = {}
        for template in self.templates:
            try:
                self._by_id[int(template.get("id"))] = template
            except (TypeError, ValueError):
                continue

    def find_by_id(self, template_id) -> Optional[dict]:
        try:
            return self._by_id.get(int(template_id))
        except (TypeError, ValueError):
            return None

    def find_by_name(self, name: str) -> Optional[dict]:
        wanted = _simplify(name)
        if not wanted:
            return None

        for field in ("name360", "title"):
            for template in self.templates:
                if _simplify(template.get(field)) == wanted:
                    return template

        for field in ("name360", "title"):
            for template in self.templates:
                candidate = _simplify(template.get(field))
                if candidate and (wanted in candidate or candidate in wanted):
                    return template

        best, best_ratio = None, 0.0
        for template in self.templates:
            for field in ("name360", "title"):
                candidate = _simplify(template.get(field))
                if not candidate:
                    continue
                ratio = SequenceMatcher(None, wanted, candidate).ratio()
                if ratio > best_ratio:
                    best, best_ratio = template, ratio
        if best_ratio >= FUZZY_MIN_RATIO:
            return best
        return None

    def resolve(self, row: dict) -> str:
        message = row.get("message") or ""
        name, param_text = parse_marker(message)
        params = [{"type": "text", "text": param_text}] if param_text else []

        template = None
        if row.get("template_id") is not None:
            template = self.find_by_id(row.get("template_id"))
        if template is None and is_template_marker(message):
            template = self.find_by_name(name)
            if template is None:
                logger.debug(f"No template matches marker '{name}'")

        if template is None:
            return message
        return fill_placeholders(template["content"], params)
