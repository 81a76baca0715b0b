"""Trigger phrase detection for spoken RingCentral commands.

Classifies transcript text as a message, task or event command and pulls out
whatever the speaker said after the trigger phrase.
"""

from dataclasses import dataclass
from typing import Optional

MESSAGE = "message"
TASK = "task"
EVENT = "event"
INTENT_TYPES = (MESSAGE, TASK, EVENT)

MESSAGE_TRIGGER_PHRASES = [
    "send ring message",
    "send ringcentral message",
    "post ring message",
    "post ringcentral message",
]

TASK_TRIGGER_PHRASES = [
    "create ring task",
    "create ringcentral task",
    "add ring task",
    "add ringcentral task",
    "make ring task",
    "make ringcentral task",
]

EVENT_TRIGGER_PHRASES = [
    "create ring event",
    "create ringcentral event",
    "add ring event",
    "add ringcentral event",
    "schedule ring event",
    "schedule ringcentral event",
    "add ring calendar event",
    "add ringcentral calendar event",
]

# Checked in this order: a text carrying several phrases resolves to the first hit.
_PRIORITY = [
    (EVENT, EVENT_TRIGGER_PHRASES),
    (TASK, TASK_TRIGGER_PHRASES),
    (MESSAGE, MESSAGE_TRIGGER_PHRASES),
]

_ALL_PHRASES = MESSAGE_TRIGGER_PHRASES + TASK_TRIGGER_PHRASES + EVENT_TRIGGER_PHRASES


@dataclass(frozen=True)
class TriggerMatch:
    is_trigger: bool
    intent_type: Optional[str] = None  # message, task, event


def detect(text: str) -> TriggerMatch:
    """Classify text as a trigger and report which intent it signals.

    Args:
        text: Raw transcript text (case-insensitive).

    Returns:
        TriggerMatch with is_trigger False and no intent when nothing matches.
    """
    normalized = (text or "").lower().strip()
    for intent_type, phrases in _PRIORITY:
        if any(phrase in normalized for phrase in phrases):
            return TriggerMatch(is_trigger=True, intent_type=intent_type)
    return TriggerMatch(is_trigger=False)


def extract_content(text: str) -> Optional[str]:
    """Return the original-cased text that follows the first trigger phrase.

    Args:
        text: Raw transcript text.

    Returns:
        The stripped remainder, or None if no phrase matches or nothing follows it.
    """
    if not text:
        return None
    normalized = text.lower()
    for phrase in _ALL_PHRASES:
        idx = normalized.find(phrase)
        if idx != -1:
            content = text[idx + len(phrase):].strip()
            return content or None
    return None
