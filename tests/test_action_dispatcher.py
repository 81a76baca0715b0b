"""Tests for ActionDispatcher: routing, validation, outcomes and unconditional reset."""

import pytest

from ringrelay.accumulator import SegmentAccumulator
from ringrelay.action_dispatcher import ActionDispatcher, is_outcome
from ringrelay.extractor import EventIntent, MessageIntent, TaskIntent
from ringrelay.ringcentral import RingCentralError
from ringrelay.session_store import IDLE

from conftest import UID


def processing_session(store, intent, text, sid="s1"):
    store.get_or_create(sid, UID)
    opened = store.open_episode(sid, intent, text)
    return store.begin_processing(sid, opened.episode)


class TestIsOutcome:
    def test_markers(self):
        assert is_outcome("✅ Message sent to general: hi")
        assert is_outcome("❌ No valid message content")
        assert not is_outcome("collecting_2")
        assert not is_outcome("processing")
        assert not is_outcome("")


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_message_success(self, authed_store, dispatcher, extractor, sink):
        acc = SegmentAccumulator(authed_store, dispatcher, max_segments=1)
        outcome = await acc.process(
            "s1", UID, [{"text": "send ring message to general saying hello team how are you"}])

        assert outcome.startswith("✅")
        assert "general" in outcome
        assert "Hello team, how are you?" in outcome
        assert authed_store.get("s1").mode == IDLE
        extractor.extract_message.assert_awaited_once()
        assert extractor.extract_message.await_args.args[0] == "to general saying hello team how are you"
        sink.post_message.assert_awaited_once()
        assert sink.post_message.await_args.args[1:] == ("123", "Hello team, how are you?")

    @pytest.mark.asyncio
    async def test_no_chat_match_fails_and_resets(self, authed_store, dispatcher, extractor, sink):
        extractor.extract_message.return_value = MessageIntent(chat_name="nowhere", message="hello team")
        acc = SegmentAccumulator(authed_store, dispatcher, max_segments=1)
        outcome = await acc.process("s1", UID, [{"text": "send ring message to nowhere saying hello team"}])

        assert outcome == "❌ No valid message content"
        assert authed_store.get("s1").mode == IDLE
        sink.post_message.assert_not_awaited()


class TestMessage:
    @pytest.mark.asyncio
    async def test_message_too_short(self, authed_store, dispatcher, extractor, sink):
        extractor.extract_message.return_value = MessageIntent(chat_id="123", chat_name="general", message=" ok ")
        outcome = await dispatcher.commit(processing_session(authed_store, "message", "to general ok"))
        assert outcome == "❌ No valid message content"
        sink.post_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_post_failure_reports_error(self, authed_store, dispatcher, sink):
        sink.post_message.side_effect = RingCentralError(403, "forbidden")
        outcome = await dispatcher.commit(processing_session(authed_store, "message", "to general hi all"))
        assert outcome.startswith("❌ Failed:")
        assert "forbidden" in outcome
        assert authed_store.get("s1").mode == IDLE

    @pytest.mark.asyncio
    async def test_roster_failure_still_resets(self, authed_store, dispatcher, sink):
        sink.list_chats.side_effect = RingCentralError(500, "boom")
        outcome = await dispatcher.commit(processing_session(authed_store, "message", "to general hi all"))
        assert outcome.startswith("❌ Failed:")
        assert authed_store.get("s1").mode == IDLE


class TestTask:
    @pytest.mark.asyncio
    async def test_task_success(self, authed_store, dispatcher, sink):
        outcome = await dispatcher.commit(processing_session(authed_store, "task", "review the Q3 report"))
        assert outcome == "✅ Task created: Review the Q3 report for Jane Doe (due 2026-10-20)"
        sink.create_task.assert_awaited_once()
        kwargs = sink.create_task.await_args.kwargs
        assert kwargs["assignee_id"] == "200"
        assert kwargs["due_date"] == "2026-10-20"

    @pytest.mark.asyncio
    async def test_task_with_due_time(self, authed_store, dispatcher, extractor):
        extractor.extract_task.return_value = TaskIntent(title="Call vendor", due_date="2026-10-20",
                                                         due_time="14:00")
        outcome = await dispatcher.commit(processing_session(authed_store, "task", "call vendor"))
        assert outcome == "✅ Task created: Call vendor (due 2026-10-20 at 14:00)"

    @pytest.mark.asyncio
    async def test_task_without_title(self, authed_store, dispatcher, extractor, sink):
        extractor.extract_task.return_value = TaskIntent(title=None)
        outcome = await dispatcher.commit(processing_session(authed_store, "task", "um"))
        assert outcome == "❌ No valid task title found"
        sink.create_task.assert_not_awaited()
        assert authed_store.get("s1").mode == IDLE

    @pytest.mark.asyncio
    async def test_task_remote_failure(self, authed_store, dispatcher, sink):
        sink.create_task.side_effect = RingCentralError(400, "bad assignee")
        outcome = await dispatcher.commit(processing_session(authed_store, "task", "review the report"))
        assert outcome.startswith("❌ Failed to create task:")
        assert "bad assignee" in outcome


class TestEvent:
    @pytest.mark.asyncio
    async def test_event_success(self, authed_store, dispatcher, sink):
        outcome = await dispatcher.commit(processing_session(authed_store, "event", "team sync tuesday 3pm"))
        assert outcome == "✅ Event created: Team sync on 2026-10-21 at 15:00 (30 min)"
        kwargs = sink.create_event.await_args.kwargs
        assert kwargs["start_time"] == "15:00"
        assert kwargs["duration"] == 30

    @pytest.mark.asyncio
    async def test_event_without_date(self, authed_store, dispatcher, extractor):
        extractor.extract_event.return_value = EventIntent(name="Focus time")
        outcome = await dispatcher.commit(processing_session(authed_store, "event", "focus time"))
        assert outcome == "✅ Event created: Focus time (60 min)"

    @pytest.mark.asyncio
    async def test_event_name_too_short(self, authed_store, dispatcher, extractor, sink):
        extractor.extract_event.return_value = EventIntent(name="ab")
        outcome = await dispatcher.commit(processing_session(authed_store, "event", "ab"))
        assert outcome == "❌ No valid event name found"
        sink.create_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_event_remote_failure(self, authed_store, dispatcher, sink):
        sink.create_event.side_effect = RingCentralError(503, "unavailable")
        outcome = await dispatcher.commit(processing_session(authed_store, "event", "team sync"))
        assert outcome.startswith("❌ Failed to create event:")
        assert authed_store.get("s1").mode == IDLE


class TestCommitBoundary:
    @pytest.mark.asyncio
    async def test_unauthenticated_owner(self, store, extractor, sink):
        dispatcher = ActionDispatcher(store, extractor, sink)
        outcome = await dispatcher.commit(processing_session(store, "message", "to general hi"))
        assert outcome == "❌ User not authenticated"
        assert store.get("s1").mode == IDLE
        extractor.extract_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_extractor_crash_becomes_outcome(self, authed_store, dispatcher, extractor):
        extractor.extract_task.side_effect = RuntimeError("model exploded")
        outcome = await dispatcher.commit(processing_session(authed_store, "task", "review deck"))
        assert outcome == "❌ Failed: model exploded"
        assert authed_store.get("s1").mode == IDLE

    @pytest.mark.asyncio
    async def test_outcome_logged_to_actions(self, authed_store, dispatcher):
        await dispatcher.commit(processing_session(authed_store, "message", "to general hello team"))
        actions = authed_store.get_actions()
        assert len(actions) == 1
        assert actions[0]["status"] == "success"
        assert actions[0]["intent"] == "message"
        assert actions[0]["raw_text"] == "to general hello team"

    @pytest.mark.asyncio
    async def test_stale_commit_does_not_reset_new_episode(self, authed_store, dispatcher):
        stale = processing_session(authed_store, "message", "old words")
        authed_store.reset_session("s1")
        authed_store.open_episode("s1", "task", "new words")
        assert await dispatcher.commit(stale) is None
        s = authed_store.get("s1")
        assert s.accumulated_text == "new words"
        assert s.intent_type == "task"
        assert authed_store.get_actions() == []

    @pytest.mark.asyncio
    async def test_already_resolved_episode_yields_no_outcome(self, authed_store, dispatcher, sink):
        session = processing_session(authed_store, "message", "to general hello team")
        # The watchdog got there first.
        authed_store.reset_session("s1", episode=session.episode)
        assert await dispatcher.commit(session) is None
        sink.post_message.assert_awaited_once()
        assert authed_store.get_actions() == []
        assert authed_store.get("s1").mode == IDLE


class TestNaturalLanguage:
    @pytest.mark.asyncio
    async def test_send_natural_language(self, authed_store, dispatcher, sink):
        user = authed_store.get_user(UID)
        outcome = await dispatcher.send_natural_language(user, "tell general hello team how are you")
        assert outcome.startswith("✅ Message sent to general")
        sink.post_message.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_send_natural_language_error(self, authed_store, dispatcher, sink):
        sink.list_chats.side_effect = RingCentralError(401, "expired")
        outcome = await dispatcher.send_natural_language(authed_store.get_user(UID), "hello")
        assert outcome.startswith("❌ Failed:")
