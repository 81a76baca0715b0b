"""Segment accumulation for spoken RingCentral commands.

Each inbound batch of transcript segments either opens a recording episode
(trigger phrase on an idle session), extends the open one, or is ignored.
An episode commits once it holds MAX_SEGMENTS batches; the idle monitor
commits shorter ones after a pause.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Optional

from ringrelay import trigger_detector
from ringrelay.action_dispatcher import ActionDispatcher
from ringrelay.session_store import IDLE, PROCESSING, Session, SessionStore

logger = logging.getLogger(__name__)

MAX_SEGMENTS = 5
INSTANT_SESSION_PREFIX = "test_session"
INSTANT_MIN_CONTENT = 10  # chars of trailing content an instant session needs to commit at once

LISTENING = "listening"
PROCESSING_STATUS = "processing"


def join_segments(segments: list) -> str:
    """Join segment texts with single spaces; segments may be dicts or bare strings."""
    texts = []
    for s in segments:
        text = s.get("text", "") if isinstance(s, dict) else s
        if isinstance(text, str) and text.strip():
            texts.append(text.strip())
    return " ".join(texts)


class SegmentAccumulator:
    """Folds transcript batches into per-session episodes.

    Batches for one session are serialised with a per-session lock. The
    recording -> processing flip goes through SessionStore.begin_processing,
    which the idle monitor uses too, so only one of them commits an episode.

    Args:
        store: SessionStore owning the sessions.
        dispatcher: ActionDispatcher that commits finished episodes.
        max_segments: Batches after which an episode commits without waiting.
        instant_session_prefix: Session ids with this prefix commit on the trigger batch.
    """

    def __init__(self, store: SessionStore, dispatcher: ActionDispatcher,
                 max_segments: int = MAX_SEGMENTS,
                 instant_session_prefix: str = INSTANT_SESSION_PREFIX):
        self.store = store
        self.dispatcher = dispatcher
        self.max_segments = max_segments
        self.instant_session_prefix = instant_session_prefix
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = defaultdict(int)

    async def process(self, session_id: str, owner_id: str, segments: list) -> str:
        """Fold one batch into the session and commit if the episode is complete.

        Args:
            session_id: Session the batch belongs to.
            owner_id: User the session acts for.
            segments: Ordered transcript segments ({"text": ...} or strings).

        Returns:
            "listening", "collecting_<n>", "processing", or the commit outcome.
            A commit whose episode the watchdog already resolved reports "processing".
        """
        text = join_segments(segments)
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] += 1
        try:
            async with lock:
                status, committed = self._advance(session_id, owner_id, text)
        finally:
            self._release(session_id)
        if committed is None:
            return status
        # Outside the lock: batches arriving mid-commit see processing and drop.
        outcome = await self.dispatcher.commit(committed)
        return outcome if outcome is not None else PROCESSING_STATUS

    def _release(self, session_id: str):
        # Session state lives in the store; an unused lock can be dropped.
        self._lock_users[session_id] -= 1
        if self._lock_users[session_id] <= 0:
            del self._lock_users[session_id]
            self._locks.pop(session_id, None)

    def _advance(self, session_id: str, owner_id: str, text: str) -> tuple[str, Optional[Session]]:
        session = self.store.get_or_create(session_id, owner_id)

        if session.mode == PROCESSING:
            logger.info(f"[ACCUM] {session_id} already processing, ignoring batch")
            return PROCESSING_STATUS, None

        if not text:
            if session.mode == IDLE:
                return LISTENING, None
            return f"collecting_{session.segment_count}", None

        if session.mode == IDLE:
            return self._open(session, text)
        return self._fold(session, text)

    def _open(self, session: Session, text: str) -> tuple[str, Optional[Session]]:
        match = trigger_detector.detect(text)
        if not match.is_trigger:
            return LISTENING, None

        content = trigger_detector.extract_content(text)
        opened = self.store.open_episode(session.id, match.intent_type, content or text)
        logger.info(f"[ACCUM] Trigger! {match.intent_type} on {session.id}, content: '{content}'")
        if opened is None:
            return PROCESSING_STATUS, None

        if (self.instant_session_prefix and session.id.startswith(self.instant_session_prefix)
                and content and len(content) > INSTANT_MIN_CONTENT):
            logger.info(f"[ACCUM] Instant session {session.id}, committing trigger batch")
            return self._begin(opened)
        return "collecting_1", None

    def _fold(self, session: Session, text: str) -> tuple[str, Optional[Session]]:
        folded = self.store.fold_segment(session.id, text)
        if folded is None:
            # Lost the race with the idle monitor.
            return PROCESSING_STATUS, None

        logger.info(f"[ACCUM] Segment {folded.segment_count}/{self.max_segments} on {session.id}: '{text}'")
        if folded.segment_count < self.max_segments:
            return f"collecting_{folded.segment_count}", None

        logger.info(f"[ACCUM] Max segments reached on {session.id}, committing")
        return self._begin(folded)

    def _begin(self, session: Session) -> tuple[str, Optional[Session]]:
        committed = self.store.begin_processing(session.id, session.episode)
        if committed is None:
            return PROCESSING_STATUS, None
        return PROCESSING_STATUS, committed
