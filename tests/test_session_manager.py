"""Tests for session lifecycle, snapshots and stale-session cleanup."""

import uuid
from datetime import datetime, timedelta

from domain import SessionStatus
from models import GameSession
from session_manager import is_valid_session_id, merge_names


class TestHelpers:

    def test_session_id_validation(self):
        assert is_valid_session_id(str(uuid.uuid4()))
        assert not is_valid_session_id("not-a-uuid")
        assert not is_valid_session_id(None)
        assert not is_valid_session_id(42)

    def test_merge_names_dedupes_by_normalized_form(self):
        assert merge_names(["Kylian Mbappé", "  kylian mbappe "], ["Neymar"], None) == ["Kylian Mbappé", "Neymar"]


class TestEnsureSession:

    def test_invalid_id_creates_new_session(self, sessions):
        handle = sessions.ensure_session("garbage", [], ["Neymar"])
        assert handle.created
        assert is_valid_session_id(handle.id)
        assert handle.id != "garbage"
        assert handle.rejected_names == ("Neymar",)

    def test_valid_unknown_id_is_adopted(self, sessions):
        sid = str(uuid.uuid4())
        handle = sessions.ensure_session(sid, [], [])
        assert handle.id == sid
        assert handle.status == SessionStatus.IN_PROGRESS.value

    def test_rejected_names_accumulate(self, sessions):
        sid = sessions.ensure_session(None, [], ["Neymar"]).id
        handle = sessions.ensure_session(sid, [{"question": "q", "answer": "yes"}], ["neymar", "Pedri"])
        assert not handle.created
        assert handle.rejected_names == ("Neymar", "Pedri")
        assert sessions.get_session(sid)["question_count"] == 1

    def test_add_rejected_name_updates_snapshot(self, sessions):
        sid = sessions.ensure_session(None, [], []).id
        sessions.persist_snapshot(sid, {}, [], [], [], 4, "Pedri", 0.25, None)
        assert sessions.add_rejected_name(sid, "Pedri") == ("Pedri",)
        assert sessions.load_snapshot(sid)["rejected_names"] == ["Pedri"]

    def test_add_rejected_name_without_session(self, sessions):
        assert sessions.add_rejected_name(None, "Pedri") == ()


class TestSnapshots:

    def test_last_write_wins(self, sessions):
        sid = sessions.ensure_session(None, [], []).id
        sessions.persist_snapshot(sid, {"yes": [1]}, [1], ["a"], [], 10, "A", 0.1, {"type": "question"})
        sessions.persist_snapshot(sid, {"yes": [1, 2]}, [2, 1], ["a", "b"], ["X"], 3, "B", 1.7, {"type": "guess"})
        snap = sessions.load_snapshot(sid)
        assert snap["constraints"] == {"yes": [1, 2]}
        assert snap["asked_attribute_ids"] == [1, 2]
        assert snap["candidate_count"] == 3
        assert snap["top_candidate"] == "B"
        assert snap["top_probability"] == 1.0
        assert snap["last_move"] == {"type": "guess"}

    def test_close_session_drops_snapshot(self, sessions):
        sid = sessions.ensure_session(None, [], []).id
        sessions.persist_snapshot(sid, {}, [], [], [], 1, "A", 1.0, None)
        closed = sessions.close_session(sid, False, "A", None, [{"question": "q", "answer": "no"}])
        assert closed == sid
        assert sessions.load_snapshot(sid) is None
        row = sessions.get_session(sid)
        assert row["status"] == SessionStatus.LOST.value
        assert row["correct"] is False

    def test_close_without_session_creates_one(self, sessions):
        sid = sessions.close_session(None, True, "Pedri", None, [], behavior_profile="normal", consistency_score=1.0)
        row = sessions.get_session(sid)
        assert row["status"] == SessionStatus.WON.value
        assert row["guessed_name"] == "Pedri"
        assert row["behavior_profile"] == "normal"


class TestAbandonStale:

    def test_only_idle_in_progress_sessions(self, sessions, db_factory):
        idle = sessions.ensure_session(None, [], []).id
        fresh = sessions.ensure_session(None, [], []).id
        won = sessions.close_session(None, True, "Pedri", None, [])
        sessions.persist_snapshot(idle, {}, [], [], [], 1, None, 0.0, None)

        old = datetime.utcnow() - timedelta(days=3)
        db = db_factory()
        try:
            for sid in (idle, won):
                db.query(GameSession).filter(GameSession.id == sid).update({"updated_at": old})
            db.commit()
        finally:
            db.close()

        assert sessions.abandon_stale_sessions(timedelta(hours=24)) == 1
        assert sessions.get_session(idle)["status"] == SessionStatus.ABANDONED.value
        assert sessions.load_snapshot(idle) is None
        assert sessions.get_session(fresh)["status"] == SessionStatus.IN_PROGRESS.value
        assert sessions.get_session(won)["status"] == SessionStatus.WON.value
