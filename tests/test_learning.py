"""Tests for verification, committing confirmed outcomes and rejections."""

import asyncio
import json

import pytest

from constraints import parse_history, resolve_history
from domain import SessionStatus
from learning import LearningPipeline
from llm_service import NullLLMService
from models import Entity, LearningQueueItem
from search_service import NullSearchService
from settings import GameSettings
from text_utils import normalize
from conftest import Q_AFRICA, Q_EUROPE, Q_FORWARD, Q_GOALKEEPER, Q_PREMIER

HISTORY = [
    {"question": Q_EUROPE, "answer": "yes", "response_time": 900},
    {"question": Q_GOALKEEPER, "answer": "yes", "response_time": 1100},
    {"question": Q_PREMIER, "answer": "no", "response_time": 1300},
]


def _verdicts(*rows):
    return json.dumps({"items": [
        {"index": i, "question": "", "userAnswer": "", "suggestedAnswer": s, "confidence": c, "reason": "r"}
        for i, s, c in rows
    ]})


@pytest.fixture
def pipeline(seeded_store, sessions, catalog, fake_llm, fake_search, settings):
    return LearningPipeline(seeded_store, sessions, catalog, fake_llm, fake_search, settings)


@pytest.fixture
def items(catalog, seeded_store):
    return resolve_history(parse_history(HISTORY), catalog, seeded_store)


class TestVerifyHistory:

    def test_without_generator(self, seeded_store, sessions, catalog, settings, items):
        offline = LearningPipeline(seeded_store, sessions, catalog, NullLLMService(), NullSearchService(), settings)
        report = asyncio.run(offline.verify_history(items, "Thibaut Courtois"))
        assert not report.ok
        assert not report.has_issues
        assert not report.evidence_present

    def test_only_confident_disagreements_are_issues(self, pipeline, fake_llm, items):
        fake_llm.script("verify", _verdicts(
            (1, "yes", 0.99),      # agrees
            (2, "no", 0.9),        # contradiction
            (3, "yes", 0.5),       # disagrees, not sure enough
            (7, "no", 0.99),       # out of range
        ))
        report = asyncio.run(pipeline.verify_history(items, "Thibaut Courtois"))
        assert report.ok
        assert report.evidence_present
        assert [i["index"] for i in report.items] == [1, 2, 3]
        assert [i["index"] for i in report.issues] == [2]
        assert report.issues[0]["question"] == Q_GOALKEEPER
        assert report.to_json()["evidencePresent"] is True

    def test_unknown_suggestion_is_not_an_issue(self, pipeline, fake_llm, items):
        fake_llm.script("verify", _verdicts((1, "unknown", 0.95)))
        report = asyncio.run(pipeline.verify_history(items, "Thibaut Courtois"))
        assert report.ok
        assert not report.has_issues

    def test_undecodable_reply(self, pipeline, fake_llm, items):
        fake_llm.script("verify", "I think it's all fine")
        report = asyncio.run(pipeline.verify_history(items, "Thibaut Courtois"))
        assert not report.ok
        assert not report.has_issues


class TestCommitOutcome:

    def test_learns_facts_for_known_entity(self, pipeline, seeded_store, sessions, db_factory, items, attr_id):
        sid = sessions.ensure_session(None, [], []).id
        result = asyncio.run(pipeline.commit_outcome(sid, items, "thibaut courtois"))

        assert result.entity.name == "Thibaut Courtois"
        assert result.session_id == sid
        assert result.learned_attribute_ids == sorted([attr_id(Q_EUROPE), attr_id(Q_GOALKEEPER)])
        assert result.image_url == "https://img.example/player.png"

        _, matrix = seeded_store.top_entity_matrix(10)
        row = matrix[result.entity.id]
        assert row[attr_id(Q_EUROPE)] is True
        assert row[attr_id(Q_AFRICA)] is False
        assert row[attr_id(Q_GOALKEEPER)] is True

        db = db_factory()
        try:
            entity = db.query(Entity).filter(Entity.id == result.entity.id).one()
            assert entity.prior_weight == pytest.approx(1.05)
            assert entity.win_count == 1
        finally:
            db.close()

        session = sessions.get_session(sid)
        assert session["status"] == SessionStatus.WON.value
        assert session["behavior_profile"] == "impulsive"
        assert session["consistency_score"] == 1.0

    def test_reinforces_path_edges(self, pipeline, seeded_store, items):
        asyncio.run(pipeline.commit_outcome(None, items, "Thibaut Courtois"))
        edges = seeded_store.get_transitions(normalize(Q_EUROPE), "yes")
        assert [(e.next_text, e.success_count) for e in edges] == [(Q_GOALKEEPER, 1)]
        guess_edges = seeded_store.get_transitions(normalize(Q_PREMIER), "no")
        assert [(e.next_type, e.next_text) for e in guess_edges] == [("guess", "Thibaut Courtois")]

    def test_weight_is_capped(self, seeded_store, sessions, catalog, fake_llm, fake_search, items):
        capped = GameSettings(gap_fill_enabled=False, learning_weight_cap=1.08)
        pipeline = LearningPipeline(seeded_store, sessions, catalog, fake_llm, fake_search, capped)
        for _ in range(3):
            asyncio.run(pipeline.commit_outcome(None, items, "Thibaut Courtois"))
        entity = seeded_store.match_entity_by_name("Thibaut Courtois")
        assert entity.prior_weight == pytest.approx(1.08)

    def test_new_entity_is_created(self, pipeline, seeded_store, fake_search, items):
        result = asyncio.run(pipeline.commit_outcome(None, items, "Jan Oblak"))
        assert result.entity.name == "Jan Oblak"
        assert fake_search.image_lookups == ["Jan Oblak"]
        assert seeded_store.match_entity_by_name("jan oblak").image_url == "https://img.example/player.png"

    def test_passed_image_skips_lookup(self, pipeline, fake_search, items):
        result = asyncio.run(pipeline.commit_outcome(None, items, "Jan Oblak", "https://cdn.example/oblak.jpg"))
        assert result.image_url == "https://cdn.example/oblak.jpg"
        assert fake_search.image_lookups == []

    def test_exclusive_yes_writes_false_siblings(self, pipeline, seeded_store, items, attr_id):
        result = asyncio.run(pipeline.commit_outcome(None, items, "Jan Oblak"))

        _, matrix = seeded_store.top_entity_matrix(10)
        row = matrix[result.entity.id]
        assert row[attr_id(Q_EUROPE)] is True
        assert row[attr_id(Q_AFRICA)] is False
        assert row[attr_id(Q_GOALKEEPER)] is True
        assert row[attr_id(Q_FORWARD)] is False
        assert attr_id(Q_PREMIER) not in row

    def test_latest_answer_wins(self, pipeline, seeded_store, catalog, attr_id):
        corrected = resolve_history(parse_history([
            {"question": Q_FORWARD, "answer": "yes"},
            {"question": Q_EUROPE, "answer": "yes"},
            {"question": Q_FORWARD, "answer": "no"},
            {"question": Q_GOALKEEPER, "answer": "yes"},
            {"question": Q_GOALKEEPER, "answer": "maybe"},
        ]), catalog, seeded_store)
        result = asyncio.run(pipeline.commit_outcome(None, corrected, "Jan Oblak"))

        assert result.learned_attribute_ids == sorted([attr_id(Q_EUROPE), attr_id(Q_GOALKEEPER)])
        _, matrix = seeded_store.top_entity_matrix(10)
        row = matrix[result.entity.id]
        assert row[attr_id(Q_FORWARD)] is False
        assert row[attr_id(Q_GOALKEEPER)] is True


class TestRecordRejection:

    def test_reason_by_confidence(self, pipeline):
        assert pipeline.rejection_reason(0.95) == "high_confidence_reject"
        assert pipeline.rejection_reason(0.85) == "high_confidence_reject"
        assert pipeline.rejection_reason(0.5) == "wrong_guess"

    def test_queues_item_and_rejects_name(self, pipeline, sessions, db_factory, items):
        sid = sessions.ensure_session(None, [], []).id
        reason, rejected = asyncio.run(pipeline.record_rejection(sid, "Lionel Messi", items, 0.92))
        assert reason == "high_confidence_reject"
        assert rejected == ("Lionel Messi",)

        db = db_factory()
        try:
            queued = db.query(LearningQueueItem).all()
            assert len(queued) == 1
            assert queued[0].guess_name == "Lionel Messi"
            assert queued[0].session_id == sid
            assert len(queued[0].history) == 3
        finally:
            db.close()
