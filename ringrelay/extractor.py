"""LLM extraction of chat posts, tasks and calendar events from spoken commands.

The dispatcher only depends on the Extractor protocol; LLMExtractor is the
OpenAI-backed implementation used in production.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Protocol

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"
DEFAULT_EVENT_DURATION = 60

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


@dataclass
class MessageIntent:
    chat_id: Optional[str] = None
    chat_name: Optional[str] = None
    message: Optional[str] = None


@dataclass
class TaskIntent:
    title: Optional[str] = None
    assignee_id: Optional[str] = None
    assignee_name: Optional[str] = None
    due_date: Optional[str] = None   # YYYY-MM-DD
    due_time: Optional[str] = None   # HH:MM, 24h


@dataclass
class EventIntent:
    name: Optional[str] = None
    start_date: Optional[str] = None
    start_time: Optional[str] = None
    duration: int = DEFAULT_EVENT_DURATION  # minutes
    notes: Optional[str] = None


class Extractor(Protocol):
    async def extract_message(self, text: str, chats: list[dict]) -> MessageIntent: ...

    async def extract_task(self, text: str, members: list[dict]) -> TaskIntent: ...

    async def extract_event(self, text: str) -> EventIntent: ...


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

MESSAGE_PROMPT = """You parse spoken RingCentral message commands.

Available chats: {chats}

The speaker said something like "send message to [chat] saying [message]" or "message [person] that [message]".

1. Identify the chat, channel or person they named, matching the closest available chat.
2. Extract the message they want to send.
3. Clean the message up: drop filler words, fix grammar and punctuation.

If no chat was named, answer UNKNOWN for the chat.

Answer in exactly this format:
CHAT: <chat name or UNKNOWN>
MESSAGE: <cleaned message>

Example:
Input: "to general saying hello team how are you doing today"
CHAT: general
MESSAGE: Hello team, how are you doing today?"""

TASK_PROMPT = """You parse spoken RingCentral task commands.

Available team members: {members}

The speaker said something like "create task for [person] due [date/time] [description]".

1. Extract a clear, concise task title (required).
2. Identify the assignee if named, matching the closest available member, else NONE.
3. Extract the due date as YYYY-MM-DD or RELATIVE:<today|tomorrow|weekday>, else NONE.
4. Extract the due time as HH:MM in 24-hour format, else NONE.

Answer in exactly this format:
TITLE: <task title>
ASSIGNEE: <person name or NONE>
DUE_DATE: <YYYY-MM-DD or RELATIVE:... or NONE>
DUE_TIME: <HH:MM or NONE>

Example:
Input: "for lopez due tomorrow at 3pm review the marketing proposal"
TITLE: Review the marketing proposal
ASSIGNEE: lopez
DUE_DATE: RELATIVE:tomorrow
DUE_TIME: 15:00"""

EVENT_PROMPT = """You parse spoken RingCentral calendar event commands.

The speaker said something like "add event [name] on [date] at [time] for [duration]".

1. Extract a clear, concise event name (required).
2. Extract the start date as YYYY-MM-DD or RELATIVE:<today|tomorrow|weekday>, else NONE.
3. Extract the start time as HH:MM in 24-hour format, else NONE.
4. Extract the duration in minutes, 60 if not mentioned.
5. Extract any notes, else NONE.

Answer in exactly this format:
NAME: <event name>
START_DATE: <YYYY-MM-DD or RELATIVE:... or NONE>
START_TIME: <HH:MM or NONE>
DURATION: <minutes>
NOTES: <notes or NONE>

Example:
Input: "client presentation on friday at 10am for 90 minutes about quarterly results"
NAME: Client presentation
START_DATE: RELATIVE:friday
START_TIME: 10:00
DURATION: 90
NOTES: Quarterly results"""


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def parse_fields(reply: str) -> dict[str, str]:
    """Parse "KEY: value" lines into a dict. Later duplicates win."""
    fields = {}
    for line in reply.strip().splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip().isupper():
            fields[key.strip()] = value.strip()
    return fields


def _none_if_blank(value: Optional[str]) -> Optional[str]:
    if not value or value.strip().upper() in ("NONE", "UNKNOWN"):
        return None
    return value.strip()


def resolve_relative_date(value: Optional[str], today: date = None) -> Optional[str]:
    """Turn RELATIVE:today / tomorrow / <weekday> into an ISO date.

    Weekdays resolve to the next occurrence, never today. Anything that is not
    a RELATIVE: marker is returned unchanged.
    """
    if not value or not value.upper().startswith("RELATIVE:"):
        return value
    today = today or date.today()
    relative = value.split(":", 1)[1].strip().lower()
    if relative == "today":
        return today.isoformat()
    if relative == "tomorrow":
        return (today + timedelta(days=1)).isoformat()
    for idx, day in enumerate(WEEKDAYS):
        if day in relative:
            days_ahead = (idx - today.weekday()) % 7 or 7
            return (today + timedelta(days=days_ahead)).isoformat()
    logger.info(f"[EXTRACT] Could not resolve relative date '{relative}'")
    return None


def display_name(entry: dict) -> Optional[str]:
    """Name a chat or member would be spoken as."""
    return entry.get("displayName") or entry.get("name") or entry.get("description") or entry.get("email")


def match_roster(name: Optional[str], roster: list[dict]) -> tuple[Optional[str], Optional[str]]:
    """Match a spoken name to a roster entry: exact first, then substring either way.

    Returns:
        Tuple of (id, canonical name); id is None when nothing matches.
    """
    if not name:
        return None, name
    wanted = name.lower()
    named = [(display_name(e), e) for e in roster if display_name(e)]
    for candidate, entry in named:
        if candidate.lower() == wanted:
            return str(entry["id"]), candidate
    for candidate, entry in named:
        c = candidate.lower()
        if wanted in c or c in wanted:
            logger.info(f"[EXTRACT] Fuzzy matched '{name}' to '{candidate}'")
            return str(entry["id"]), candidate
    return None, name


# ---------------------------------------------------------------------------
# LLM extractor
# ---------------------------------------------------------------------------

class LLMExtractor:
    """Extractor backed by an OpenAI-compatible chat completions API."""

    def __init__(self, api_key: str = None, model: str = DEFAULT_MODEL,
                 base_url: str = None, client: AsyncOpenAI = None):
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.client = client

    def _get_client(self) -> AsyncOpenAI:
        # Created on first use so a missing key fails the extraction, not startup.
        if self.client is None:
            client_kwargs = {}
            if self.api_key:
                client_kwargs["api_key"] = self.api_key
            if self.base_url:
                client_kwargs["base_url"] = self.base_url
                logger.info(f"[EXTRACT] Using custom base_url: {self.base_url}")
            self.client = AsyncOpenAI(**client_kwargs)
        return self.client

    async def _complete(self, system: str, text: str, ask: str, max_tokens: int) -> str:
        response = await self._get_client().chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": f"Voice command after trigger: {text}\n\n{ask}"},
            ],
            temperature=0.3,
            max_tokens=max_tokens,
        )
        return (response.choices[0].message.content or "").strip()

    async def extract_message(self, text: str, chats: list[dict]) -> MessageIntent:
        names = [display_name(c) or f"Chat {c.get('id')}" for c in chats]
        try:
            reply = await self._complete(
                MESSAGE_PROMPT.format(chats=", ".join(names) or "None"),
                text, "Extract chat and message:", 200)
        except Exception as e:
            logger.error(f"[EXTRACT] Message extraction failed: {e}")
            return MessageIntent(message=text)

        fields = parse_fields(reply)
        message = _none_if_blank(fields.get("MESSAGE"))
        chat_name = _none_if_blank(fields.get("CHAT"))
        if not chat_name:
            logger.info("[EXTRACT] No chat identified in message")
            return MessageIntent(message=message)

        chat_id, chat_name = match_roster(chat_name, chats)
        if not chat_id:
            logger.info(f"[EXTRACT] Chat '{chat_name}' not found in workspace")
        return MessageIntent(chat_id=chat_id, chat_name=chat_name, message=message)

    async def extract_task(self, text: str, members: list[dict]) -> TaskIntent:
        names = [display_name(m) for m in members if display_name(m)]
        try:
            reply = await self._complete(
                TASK_PROMPT.format(members=", ".join(names) or "None"),
                text, "Extract task details:", 300)
        except Exception as e:
            logger.error(f"[EXTRACT] Task extraction failed: {e}")
            return TaskIntent(title=text)

        fields = parse_fields(reply)
        assignee_id, assignee_name = match_roster(_none_if_blank(fields.get("ASSIGNEE")), members)
        return TaskIntent(
            title=_none_if_blank(fields.get("TITLE")),
            assignee_id=assignee_id,
            assignee_name=assignee_name,
            due_date=resolve_relative_date(_none_if_blank(fields.get("DUE_DATE"))),
            due_time=_none_if_blank(fields.get("DUE_TIME")),
        )

    async def extract_event(self, text: str) -> EventIntent:
        try:
            reply = await self._complete(EVENT_PROMPT, text, "Extract event details:", 300)
        except Exception as e:
            logger.error(f"[EXTRACT] Event extraction failed: {e}")
            return EventIntent(name=text)

        fields = parse_fields(reply)
        m = re.match(r"\s*(\d+)", fields.get("DURATION", ""))
        duration = int(m.group(1)) if m and int(m.group(1)) > 0 else DEFAULT_EVENT_DURATION
        return EventIntent(
            name=_none_if_blank(fields.get("NAME")),
            start_date=resolve_relative_date(_none_if_blank(fields.get("START_DATE"))),
            start_time=_none_if_blank(fields.get("START_TIME")),
            duration=duration,
            notes=_none_if_blank(fields.get("NOTES")),
        )
