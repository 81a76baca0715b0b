"""Background commit of episodes that went quiet before reaching the segment cap."""

import asyncio
import logging
import time

from ringrelay.action_dispatcher import FAILURE, ActionDispatcher
from ringrelay.notifier import DeviceNotifier
from ringrelay.session_store import PROCESSING, RECORDING, Session, SessionStore

logger = logging.getLogger(__name__)

IDLE_TIMEOUT = 5.0           # seconds without a new segment before a recording commits
MONITOR_INTERVAL = 1.0       # seconds between scans
PROCESSING_TIMEOUT = 120.0   # seconds a commit may run before the session is force-reset


class IdleCommitMonitor:
    """Periodically commits idle recording sessions and unsticks hung commits.

    Args:
        store: SessionStore to scan.
        dispatcher: ActionDispatcher shared with the accumulator.
        notifier: Pushes outcomes to the device, since no webhook response is waiting.
        idle_timeout: Seconds of silence after which a recording commits.
        interval: Seconds between ticks.
        processing_timeout: Seconds after which a processing session is force-reset.
    """

    def __init__(self, store: SessionStore, dispatcher: ActionDispatcher,
                 notifier: DeviceNotifier = None, idle_timeout: float = IDLE_TIMEOUT,
                 interval: float = MONITOR_INTERVAL,
                 processing_timeout: float = PROCESSING_TIMEOUT):
        self.store = store
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.idle_timeout = idle_timeout
        self.interval = interval
        self.processing_timeout = processing_timeout
        self._task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"[MONITOR] Started (idle timeout {self.idle_timeout}s, tick {self.interval}s)")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
        logger.info("[MONITOR] Stopped")

    async def drain(self):
        """Wait for commits started by the monitor to finish."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _run(self):
        while True:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"[MONITOR] Tick failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    def tick(self, now: float = None) -> list[asyncio.Task]:
        """Scan once. Must be called from a running event loop.

        Returns:
            Commit tasks started on this tick.
        """
        now = now if now is not None else time.time()
        started = []
        for session in self.store.scan(RECORDING):
            idle = self.store.idle_seconds(session.id, now)
            if idle is None or idle <= self.idle_timeout:
                continue
            committed = self.store.begin_processing(session.id, session.episode)
            if committed is None:
                continue  # accumulator got there first
            logger.info(f"[MONITOR] Committing {committed.intent_type} for {session.id} after "
                        f"{idle:.1f}s idle ({committed.segment_count} segment(s))")
            started.append(self._spawn(self._commit(committed)))

        for session in self.store.scan(PROCESSING):
            started_at = session.processing_started_at
            if started_at is not None and now - started_at > self.processing_timeout:
                self._expire(session, now - started_at)
        return started

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _commit(self, session: Session):
        outcome = await self.dispatcher.commit(session)
        if outcome is not None:
            await self._notify(session.owner_id, outcome)

    def _expire(self, session: Session, stuck_for: float):
        if not self.store.reset_session(session.id, episode=session.episode):
            return
        intent = session.intent_type or "message"
        outcome = f"{FAILURE} Timed out while processing your {intent}"
        logger.warning(f"[MONITOR] {session.id} stuck in processing for {stuck_for:.0f}s, reset")
        try:
            self.store.save_action(session_id=session.id, owner_id=session.owner_id, intent=intent,
                                   raw_text=session.accumulated_text, status="failed", result=outcome)
        except Exception as e:
            logger.error(f"[MONITOR] Failed to save action to DB: {e}")
        self._spawn(self._notify(session.owner_id, outcome))

    async def _notify(self, uid: str, outcome: str):
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(uid, outcome)
        except Exception as e:
            logger.error(f"[MONITOR] Notification failed: {e}")
