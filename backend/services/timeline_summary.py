"""
LexDesk CRM - AI timeline summary

Short "where are we / what next" summary of the latest interactions of a
lead, produced by the OpenAI chat completions API.
"""

import re
import httpx
import logging
from typing import Optional

from config import OPENAI_API_KEY, OPENAI_API_URL, OPENAI_MODEL

logger = logging.getLogger("timeline_summary")

MAX_INTERACTIONS = 10

PROMPT = (
    "You are a professional legal CRM assistant. Based ONLY on the latest messages below, "
    "write a short, precise summary of the current situation and the most important next actions. "
    "Focus on what the user should do next. Be concise and actionable.\n\nTimeline:\n{timeline}"
)

ACTION_SPLIT = re.compile(r"Action Items:|Follow-up Actions:|Next Steps:", re.IGNORECASE)


class SummaryError(Exception):
    pass


def format_timeline(interactions: list) -> str:
    lines = []
    for i in interactions:
        who = "Client" if i.get("direction") == "in" else "Employee"
        line = f"{i.get('date')} {i.get('time')} - {who} ({i.get('employee')}) via {i.get('kind')}: {i.get('content') or ''}"
        if i.get("observation"):
            line += f" | {i['observation']}"
        lines.append(line)
    return "\n".join(lines)


def split_summary(text: str) -> dict:
    parts = ACTION_SPLIT.split(text or "")
    if len(parts) > 1:
        return {"summary": parts[0].strip(), "action_items": "\n".join(parts[1:]).strip()}
    return {"summary": (text or "").strip(), "action_items": ""}


class TimelineSummarizer:

    def __init__(self, api_key: str = OPENAI_API_KEY, model: str = OPENAI_MODEL, api_url: str = OPENAI_API_URL,
                 transport: httpx.AsyncBaseTransport = None, timeout: float = 30.0):
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.transport = transport
        self.timeout = timeout

    async def summarize(self, interactions: list, lead_id: Optional[str] = None) -> dict:
        """
        interactions: normalized timeline, newest first (aggregator order).
        The latest MAX_INTERACTIONS are sent oldest first.
        """
        if not self.api_key:
            raise SummaryError("OpenAI API key is not configured")
        if not interactions:
            raise SummaryError("No interactions to summarize")

        latest = list(reversed(interactions[:MAX_INTERACTIONS]))
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": "You are an expert CRM assistant."},
                {"role": "user", "content": PROMPT.format(timeline=format_timeline(latest))},
            ],
            "max_tokens": 512,
            "temperature": 0.4,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(
                    self.api_url,
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            logger.error(f"OpenAI request failed for lead {lead_id}: {str(e)}")
            raise SummaryError(f"OpenAI request failed: {str(e)}")

        if resp.status_code >= 400:
            try:
                message = (resp.json().get("error") or {}).get("message")
            except (ValueError, AttributeError):
                message = None
            logger.error(f"OpenAI error {resp.status_code} for lead {lead_id}: {message}")
            raise SummaryError(f"{resp.status_code} {message or resp.reason_phrase}")

        try:
            choices = resp.json().get("choices") or [{}]
            text = (choices[0].get("message") or {}).get("content") or ""
        except (ValueError, AttributeError, IndexError) as e:
            logger.error(f"Unreadable OpenAI response for lead {lead_id}: {str(e)}")
            raise SummaryError(f"{resp.status_code} Invalid response from OpenAI")

        logger.info(f"Timeline summary generated for lead {lead_id} ({len(latest)} interactions)")
        return split_summary(text)
