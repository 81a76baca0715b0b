"""Tests for SessionStore: session state machine, users, action log."""

import time

import pytest

from ringrelay.session_store import IDLE, PROCESSING, RECORDING, SessionStore


class TestSessions:
    def test_get_or_create_defaults(self, store):
        s = store.get_or_create("s1", "u1")
        assert s.mode == IDLE
        assert s.owner_id == "u1"
        assert s.accumulated_text == ""
        assert s.segment_count == 0
        assert s.intent_type is None
        assert s.episode == 0

    def test_get_or_create_returns_existing(self, store):
        store.get_or_create("s1", "u1")
        store.update("s1", segment_count=3)
        assert store.get_or_create("s1", "other").segment_count == 3

    def test_get_missing(self, store):
        assert store.get("nope") is None

    def test_update_unknown_session(self, store):
        with pytest.raises(KeyError):
            store.update("nope", segment_count=1)

    def test_update_unknown_field(self, store):
        store.get_or_create("s1", "u1")
        with pytest.raises(KeyError):
            store.update("s1", colour="blue")

    def test_update_invalid_mode(self, store):
        store.get_or_create("s1", "u1")
        with pytest.raises(ValueError):
            store.update("s1", mode="paused")
        assert store.get("s1").mode == IDLE

    def test_update_invalid_intent(self, store):
        store.get_or_create("s1", "u1")
        with pytest.raises(ValueError):
            store.update("s1", intent_type="email")


class TestEpisodes:
    def test_open_episode(self, store):
        store.get_or_create("s1", "u1")
        s = store.open_episode("s1", "message", "to general saying hi")
        assert s.mode == RECORDING
        assert s.intent_type == "message"
        assert s.accumulated_text == "to general saying hi"
        assert s.segment_count == 1
        assert s.episode == 1
        assert s.last_activity_at is not None

    def test_open_episode_requires_idle(self, store):
        store.get_or_create("s1", "u1")
        store.open_episode("s1", "message", "first")
        assert store.open_episode("s1", "task", "second") is None
        assert store.get("s1").accumulated_text == "first"

    def test_fold_segment_appends_with_space(self, store):
        store.get_or_create("s1", "u1")
        store.open_episode("s1", "message", "hello")
        s = store.fold_segment("s1", "world")
        assert s.accumulated_text == "hello world"
        assert s.segment_count == 2

    def test_fold_segment_requires_recording(self, store):
        store.get_or_create("s1", "u1")
        assert store.fold_segment("s1", "text") is None
        assert store.get("s1").segment_count == 0

    def test_begin_processing_is_exclusive(self, store):
        store.get_or_create("s1", "u1")
        s = store.open_episode("s1", "message", "hello")
        first = store.begin_processing("s1", s.episode)
        second = store.begin_processing("s1", s.episode)
        assert first is not None and first.mode == PROCESSING
        assert first.processing_started_at is not None
        assert second is None

    def test_begin_processing_wrong_episode(self, store):
        store.get_or_create("s1", "u1")
        s = store.open_episode("s1", "message", "hello")
        assert store.begin_processing("s1", s.episode + 1) is None
        assert store.get("s1").mode == RECORDING

    def test_reset_clears_everything_together(self, store):
        store.get_or_create("s1", "u1")
        s = store.open_episode("s1", "task", "buy milk")
        store.begin_processing("s1", s.episode)
        assert store.reset_session("s1")
        s = store.get("s1")
        assert s.mode == IDLE
        assert s.accumulated_text == ""
        assert s.segment_count == 0
        assert s.intent_type is None
        assert s.processing_started_at is None

    def test_reset_is_idempotent(self, store):
        store.get_or_create("s1", "u1")
        store.open_episode("s1", "message", "hello")
        store.reset_session("s1")
        store.reset_session("s1")
        s = store.get("s1")
        assert s.mode == IDLE
        assert s.segment_count == 0

    def test_reset_fenced_by_episode(self, store):
        store.get_or_create("s1", "u1")
        old = store.open_episode("s1", "message", "old")
        store.reset_session("s1")
        store.open_episode("s1", "message", "new")
        assert not store.reset_session("s1", episode=old.episode)
        assert store.get("s1").accumulated_text == "new"

    def test_fenced_reset_only_resolves_once(self, store):
        store.get_or_create("s1", "u1")
        s = store.open_episode("s1", "message", "hello")
        store.begin_processing("s1", s.episode)
        assert store.reset_session("s1", episode=s.episode)
        assert not store.reset_session("s1", episode=s.episode)

    def test_episode_increments(self, store):
        store.get_or_create("s1", "u1")
        store.open_episode("s1", "message", "a")
        store.reset_session("s1")
        assert store.open_episode("s1", "message", "b").episode == 2

    def test_idle_seconds(self, store):
        store.get_or_create("s1", "u1")
        assert store.idle_seconds("s1") is None
        s = store.open_episode("s1", "message", "a")
        assert store.idle_seconds("s1", now=s.last_activity_at + 7) == pytest.approx(7)

    def test_scan_and_count(self, store):
        for sid in ("a", "b", "c"):
            store.get_or_create(sid, "u1")
        store.open_episode("a", "message", "x")
        store.open_episode("b", "task", "y")
        store.begin_processing("b", 1)
        assert [s.id for s in store.scan(RECORDING)] == ["a"]
        assert [s.id for s in store.scan(PROCESSING)] == ["b"]
        assert len(store.scan()) == 3
        assert store.count_by_mode() == {IDLE: 1, RECORDING: 1, PROCESSING: 1}

    def test_scan_invalid_mode(self, store):
        with pytest.raises(ValueError):
            store.scan("paused")

    def test_recover_resets_processing_only(self, store):
        store.get_or_create("a", "u1")
        store.get_or_create("b", "u1")
        store.open_episode("a", "message", "x")
        store.open_episode("b", "message", "y")
        store.begin_processing("b", 1)
        assert store.recover() == 1
        assert store.get("a").mode == RECORDING
        assert store.get("b").mode == IDLE

    def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "rr.db")
        first = SessionStore(path)
        first.get_or_create("s1", "u1")
        first.open_episode("s1", "event", "lunch")
        first.close()
        second = SessionStore(path)
        assert second.get("s1").accumulated_text == "lunch"
        second.close()


class TestUsers:
    def test_save_and_get(self, store):
        store.save_user("u1", {"access_token": "t"}, [{"id": "1"}])
        user = store.get_user("u1")
        assert user["tokens"] == {"access_token": "t"}
        assert user["available_chats"] == [{"id": "1"}]

    def test_save_without_chats_keeps_cached_chats(self, store):
        store.save_user("u1", {"access_token": "t"}, [{"id": "1"}])
        store.save_user("u1", {"access_token": "t2"})
        user = store.get_user("u1")
        assert user["tokens"]["access_token"] == "t2"
        assert user["available_chats"] == [{"id": "1"}]

    def test_is_authenticated(self, store):
        assert not store.is_authenticated("u1")
        store.save_user("u1", {})
        assert not store.is_authenticated("u1")
        store.save_user("u1", {"access_token": "t"})
        assert store.is_authenticated("u1")

    def test_delete(self, store):
        store.save_user("u1", {"access_token": "t"})
        assert store.delete_user("u1")
        assert store.get_user("u1") is None
        assert not store.delete_user("u1")


class TestActions:
    def test_save_and_list(self, store):
        store.save_action(session_id="s1", owner_id="u1", intent="message",
                          raw_text="hi", status="success", result="✅ Message sent")
        time.sleep(0.01)
        store.save_action(session_id="s1", owner_id="u1", intent="task",
                          raw_text="x", status="failed", result="❌ No valid task title found")
        actions = store.get_actions()
        assert [a["intent"] for a in actions] == ["task", "message"]
        assert [a["intent"] for a in store.get_actions(status="failed")] == ["task"]
        assert len(store.get_actions(limit=1)) == 1
