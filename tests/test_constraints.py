"""Tests for history parsing, constraint building and candidate tracking."""

import asyncio

from constraints import (
    build_constraints,
    derive_confidence,
    parse_history,
    resolve_history,
    track_candidates,
)
from domain import AnswerKind, CandidateSummary, UpstreamUnavailable
from conftest import Q_EUROPE, Q_FORWARD, Q_GOALKEEPER, Q_PREMIER


class FailingStore:
    """Store whose aggregate queries always time out."""

    def get_candidate_summary(self, *args):
        raise UpstreamUnavailable("store down")

    def get_attribute_stats(self, *args):
        raise UpstreamUnavailable("store down")


def _track(constraints, store, matrix_cache=None, rejected=()):
    return asyncio.run(track_candidates(constraints, rejected, store, matrix_cache, timeout_sec=5))


class TestParseHistory:

    def test_accepts_both_key_styles(self):
        items = parse_history([
            {"question": "Q1", "answer": "yes", "featureId": "3", "questionId": 9, "responseTime": 1200},
            {"question": "Q2", "answer": "no", "feature_id": 4},
        ])
        assert [i.attribute_id for i in items] == [3, 4]
        assert items[0].question_id == 9
        assert items[0].response_time == 1200.0
        assert items[1].answer is AnswerKind.NO

    def test_arabic_answers_and_unknown_default(self):
        items = parse_history([
            {"question": "Q1", "answer": "نعم"},
            {"question": "Q2", "answer": "ربما"},
            {"question": "Q3", "answer": "whatever"},
        ])
        assert [i.answer for i in items] == [AnswerKind.YES, AnswerKind.MAYBE, AnswerKind.UNKNOWN]

    def test_drops_empty_items(self):
        items = parse_history([{"answer": "yes"}, "junk", None, {"question": "  "}])
        assert items == []


class TestResolveHistory:

    def test_resolves_attribute_by_question_text(self, catalog, seeded_store, attr_id):
        items = resolve_history(parse_history([{"question": Q_EUROPE, "answer": "yes"}]), catalog, seeded_store)
        assert items[0].attribute_id == attr_id(Q_EUROPE)
        assert items[0].question_id is not None

    def test_fills_text_from_attribute_id(self, catalog, seeded_store, attr_id):
        items = resolve_history(
            parse_history([{"feature_id": attr_id(Q_GOALKEEPER), "answer": "no"}]), catalog, seeded_store
        )
        assert items[0].question == Q_GOALKEEPER
        assert items[0].normalized_question

    def test_unmatched_text_stays_unlinked(self, catalog, seeded_store):
        items = resolve_history(parse_history([{"question": "هل يحب القطط؟", "answer": "yes"}]), catalog, seeded_store)
        assert items[0].attribute_id is None


class TestBuildConstraints:

    def _items(self, catalog, seeded_store, rows):
        return resolve_history(parse_history(rows), catalog, seeded_store)

    def test_yes_no_and_maybe(self, catalog, seeded_store, attr_id):
        items = self._items(catalog, seeded_store, [
            {"question": Q_EUROPE, "answer": "yes"},
            {"question": Q_PREMIER, "answer": "no"},
            {"question": Q_GOALKEEPER, "answer": "maybe"},
        ])
        c = build_constraints(items, catalog)
        assert c.yes_ids == {attr_id(Q_EUROPE)}
        assert c.no_ids == {attr_id(Q_PREMIER)}
        assert attr_id(Q_GOALKEEPER) in c.asked_ids
        assert attr_id(Q_GOALKEEPER) not in c.yes_ids | c.no_ids
        assert "continent" in c.confirmed_groups
        assert len(c.asked_norms) == 3

    def test_latest_answer_per_attribute_wins(self, catalog, seeded_store, attr_id):
        items = self._items(catalog, seeded_store, [
            {"question": Q_FORWARD, "answer": "yes"},
            {"question": Q_FORWARD, "answer": "no"},
        ])
        c = build_constraints(items, catalog)
        assert c.no_ids == {attr_id(Q_FORWARD)}
        assert not c.yes_ids
        assert c.asked_norms == (items[0].normalized_question,)

    def test_generated_attribute_is_asked_but_not_constraining(self, catalog, seeded_store):
        attribute = seeded_store.upsert_attribute(
            "generated", "هل يحب القطط", "هل يحب القطط", "generated:cats", source="generated"
        )
        seeded_store.upsert_question(attribute.id, "هل يحب القطط؟")
        catalog.refresh_now()
        items = parse_history([{"question": "هل يحب القطط؟", "answer": "yes", "feature_id": attribute.id}])
        c = build_constraints(items, catalog)
        assert attribute.id in c.asked_ids
        assert not c.yes_ids


class TestTrackCandidates:

    def test_empty_history_sees_everyone(self, catalog, seeded_store):
        state = _track(build_constraints([], catalog), seeded_store)
        assert state.candidate_count == 4
        assert state.source == "live"
        assert state.confidence == 0.25

    def test_candidate_count_is_monotone(self, catalog, seeded_store):
        rows = [
            {"question": Q_EUROPE, "answer": "yes"},
            {"question": Q_FORWARD, "answer": "unknown"},
            {"question": Q_PREMIER, "answer": "no"},
            {"question": Q_GOALKEEPER, "answer": "maybe"},
        ]
        counts = []
        for n in range(len(rows) + 1):
            items = resolve_history(parse_history(rows[:n]), catalog, seeded_store)
            counts.append(_track(build_constraints(items, catalog), seeded_store).candidate_count)
        assert counts == sorted(counts, reverse=True)
        assert counts[0] == 4
        assert counts[-1] == 1

    def test_rejected_names_are_excluded(self, catalog, seeded_store):
        state = _track(build_constraints([], catalog), seeded_store, rejected=["lionel  MESSI"])
        assert state.candidate_count == 3
        assert state.top_entity_name != "Lionel Messi"

    def test_falls_back_to_matrix_cache(self, catalog, matrix_cache, seeded_store):
        items = resolve_history(parse_history([{"question": Q_EUROPE, "answer": "yes"}]), catalog, seeded_store)
        state = _track(build_constraints(items, catalog), FailingStore(), matrix_cache)
        assert state.source == "matrix_cache"
        assert state.candidate_count == 2
        assert state.stats

    def test_no_store_and_no_cache(self, catalog):
        state = _track(build_constraints([], catalog), FailingStore(), None)
        assert state.source == "none"
        assert state.candidate_count == 0
        assert state.confidence == 0.0


class TestDeriveConfidence:

    def test_weight_ratio(self):
        assert derive_confidence(CandidateSummary(3, 1, "a", 4.0, 2.0)) == 0.5

    def test_uniform_when_weightless(self):
        assert derive_confidence(CandidateSummary(4, 1, "a", 0.0, 0.0)) == 0.25

    def test_empty(self):
        assert derive_confidence(CandidateSummary.empty()) == 0.0

    def test_clamped(self):
        assert derive_confidence(CandidateSummary(1, 1, "a", 1.0, 3.0)) == 1.0
