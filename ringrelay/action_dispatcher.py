"""Commit a finished voice episode as a RingCentral post, task or event.

Routes on the session's intent, asks the extractor for structured fields,
validates them, performs the remote action and always returns the session
to idle.
"""

import logging
from typing import Optional

from ringrelay.extractor import Extractor
from ringrelay.ringcentral import ActionSink
from ringrelay.session_store import Session, SessionStore
from ringrelay.trigger_detector import EVENT, MESSAGE, TASK

logger = logging.getLogger(__name__)

SUCCESS = "✅"
FAILURE = "❌"
MIN_CONTENT_LENGTH = 3


def is_outcome(status: str) -> bool:
    """True if a status string is a resolved episode rather than a progress marker."""
    return bool(status) and status.startswith((SUCCESS, FAILURE))


def _usable(value) -> bool:
    return bool(value) and len(value.strip()) >= MIN_CONTENT_LENGTH


class ActionDispatcher:
    """Turns a committed session into exactly one outcome string.

    Args:
        store: SessionStore holding the session and its owner.
        extractor: Extractor turning free text into structured intent.
        sink: ActionSink performing the remote call.
    """

    def __init__(self, store: SessionStore, extractor: Extractor, sink: ActionSink):
        self.store = store
        self.extractor = extractor
        self.sink = sink

    async def commit(self, session: Session) -> Optional[str]:
        """Resolve a processing session and reset it to idle.

        Extraction gaps and remote failures come back as failure outcomes;
        they are never raised.

        Returns:
            The outcome string, or None if the episode was already resolved
            elsewhere (the processing watchdog reset it while this ran).
        """
        intent = session.intent_type or MESSAGE
        text = session.accumulated_text
        logger.info(f"[DISPATCH] Committing {intent} for {session.id} "
                    f"({session.segment_count} segment(s)): '{text[:150]}'")
        try:
            user = self.store.get_user(session.owner_id)
            if not user or not user["tokens"].get("access_token"):
                outcome = f"{FAILURE} User not authenticated"
            elif intent == TASK:
                outcome = await self._commit_task(user, text)
            elif intent == EVENT:
                outcome = await self._commit_event(user, text)
            else:
                outcome = await self._commit_message(user, text)
        except Exception as e:
            logger.error(f"[DISPATCH] {intent} commit failed for {session.id}: {e}", exc_info=True)
            outcome = f"{FAILURE} Failed: {e}"
        finally:
            owned = self.store.reset_session(session.id, episode=session.episode)

        if not owned:
            logger.warning(f"[DISPATCH] {session.id} episode {session.episode} already resolved, "
                           f"dropping late outcome: {outcome}")
            return None
        logger.info(f"[DISPATCH] {session.id}: {outcome}")
        self._record(session, intent, outcome)
        return outcome

    async def send_natural_language(self, user: dict, text: str) -> str:
        """Run the message flow for typed text, outside any session."""
        try:
            return await self._commit_message(user, text)
        except Exception as e:
            logger.error(f"[DISPATCH] Direct send failed: {e}")
            return f"{FAILURE} Failed: {e}"

    async def _commit_message(self, user: dict, text: str) -> str:
        chats = await self.sink.list_chats(user)
        intent = await self.extractor.extract_message(text, chats)
        if not intent.chat_id or not _usable(intent.message):
            return f"{FAILURE} No valid message content"

        message = intent.message.strip()
        try:
            await self.sink.post_message(user, intent.chat_id, message)
        except Exception as e:
            return f"{FAILURE} Failed: {e}"
        return f"{SUCCESS} Message sent to {intent.chat_name}: {message}"

    async def _commit_task(self, user: dict, text: str) -> str:
        members = await self.sink.list_members(user)
        task = await self.extractor.extract_task(text, members)
        if not _usable(task.title):
            return f"{FAILURE} No valid task title found"

        title = task.title.strip()
        try:
            await self.sink.create_task(user, title, assignee_id=task.assignee_id,
                                        due_date=task.due_date, due_time=task.due_time)
        except Exception as e:
            return f"{FAILURE} Failed to create task: {e}"

        outcome = f"{SUCCESS} Task created: {title}"
        if task.assignee_name and task.assignee_id:
            outcome += f" for {task.assignee_name}"
        if task.due_date:
            outcome += f" (due {task.due_date}" + (f" at {task.due_time}" if task.due_time else "") + ")"
        return outcome

    async def _commit_event(self, user: dict, text: str) -> str:
        event = await self.extractor.extract_event(text)
        if not _usable(event.name):
            return f"{FAILURE} No valid event name found"

        name = event.name.strip()
        try:
            await self.sink.create_event(user, name, start_date=event.start_date,
                                         start_time=event.start_time, duration=event.duration,
                                         notes=event.notes)
        except Exception as e:
            return f"{FAILURE} Failed to create event: {e}"

        outcome = f"{SUCCESS} Event created: {name}"
        if event.start_date:
            outcome += f" on {event.start_date}" + (f" at {event.start_time}" if event.start_time else "")
        return outcome + f" ({event.duration} min)"

    def _record(self, session: Session, intent: str, outcome: str):
        try:
            self.store.save_action(
                session_id=session.id,
                owner_id=session.owner_id,
                intent=intent,
                raw_text=session.accumulated_text,
                status="success" if outcome.startswith(SUCCESS) else "failed",
                result=outcome,
            )
        except Exception as e:
            logger.error(f"[DISPATCH] Failed to save action to DB: {e}")
