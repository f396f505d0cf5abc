"""Tests for the five-stage fallback chain."""

import asyncio
import json
import random

import pytest

from constraints import CandidateState, build_constraints, parse_history, resolve_history
from domain import CandidateSummary, GuessMove, QuestionMove, UpstreamUnavailable
from fallback_chain import (
    FALLBACK_QUESTIONS,
    STRATEGIC_QUESTIONS,
    FallbackChain,
    TurnContext,
    is_banned_question,
    transition_score,
)
from llm_service import NullLLMService
from search_service import NullSearchService
from text_utils import normalize
from conftest import Q_AFRICA, Q_EUROPE, Q_FORWARD, Q_GOALKEEPER, Q_PREMIER


class BrokenStore:
    def get_transitions(self, *args):
        raise UpstreamUnavailable("timeout")

    def recent_completed_paths(self, *args):
        raise UpstreamUnavailable("timeout")


def _ctx(catalog, store, rows, rejected=()):
    items = resolve_history(parse_history(rows), catalog, store)
    return TurnContext(
        items=tuple(items),
        constraints=build_constraints(items, catalog),
        rejected_names=tuple(rejected),
        state=CandidateState(summary=CandidateSummary.empty(), confidence=0.0, source="none"),
    )


def _move(kind, content, confidence=None):
    payload = {"type": kind, "content": content, "reason": "test"}
    if confidence is not None:
        payload["confidence"] = confidence
    return json.dumps(payload, ensure_ascii=False)


@pytest.fixture
def chain(seeded_store, catalog, fake_llm, fake_search, settings):
    return FallbackChain(seeded_store, catalog, fake_llm, fake_search, settings, rng=random.Random(3))


@pytest.fixture
def offline_chain(seeded_store, catalog, settings):
    return FallbackChain(seeded_store, catalog, NullLLMService(), NullSearchService(), settings, rng=random.Random(3))


def _win(sessions, guess, rows):
    sessions.close_session(None, True, guess, None, rows)


class TestHelpers:

    def test_transition_score_rewards_success(self):
        assert transition_score(10, 9) > transition_score(10, 1)
        assert 0.0 <= transition_score(0, 0) <= 1.0

    def test_banned_questions(self):
        assert is_banned_question("هل هو لاعب كرة قدم؟")
        assert is_banned_question("هل يلعب في الدوري الإسباني؟")
        assert is_banned_question("   ")
        assert not is_banned_question("هل سجل أكثر من 500 هدف؟")


class TestStaticBank:

    def test_first_unasked_fallback_question(self, offline_chain):
        assert offline_chain.static_bank_question(()) == FALLBACK_QUESTIONS[0]
        asked = (normalize(FALLBACK_QUESTIONS[0]),)
        assert offline_chain.static_bank_question(asked) == FALLBACK_QUESTIONS[1]

    def test_strategic_after_fallback_exhausted(self, offline_chain):
        asked = tuple(normalize(q) for q in FALLBACK_QUESTIONS)
        assert offline_chain.static_bank_question(asked) in STRATEGIC_QUESTIONS

    def test_always_answers(self, offline_chain):
        asked = tuple(normalize(q) for q in FALLBACK_QUESTIONS + STRATEGIC_QUESTIONS)
        assert offline_chain.static_bank_question(asked) in FALLBACK_QUESTIONS + STRATEGIC_QUESTIONS

    def test_chain_ends_in_static_bank(self, offline_chain, catalog, seeded_store):
        move = asyncio.run(offline_chain.next_move(_ctx(catalog, seeded_store, [])))
        assert isinstance(move, QuestionMove)
        assert move.source == "static_bank"
        assert move.meta["skipped_stages"] == ["transition", "path_mining", "early_guess", "generative"]

    def test_unavailable_stages_are_skipped(self, catalog, seeded_store, settings):
        chain = FallbackChain(BrokenStore(), catalog, NullLLMService(), NullSearchService(), settings)
        ctx = _ctx(catalog, seeded_store, [{"question": Q_EUROPE, "answer": "yes"}])
        move = asyncio.run(chain.next_move(ctx))
        assert move.source == "static_bank"


class TestTransitions:

    def test_follows_cached_edge(self, offline_chain, catalog, seeded_store, attr_id):
        target = seeded_store.match_question_by_text(Q_GOALKEEPER)
        edge = seeded_store.register_transition(normalize(Q_EUROPE), "yes", "question", Q_GOALKEEPER, target.id)
        ctx = _ctx(catalog, seeded_store, [{"question": Q_EUROPE, "answer": "yes"}])
        move = asyncio.run(offline_chain.from_transitions(ctx))
        assert move.source == "transition"
        assert move.text == Q_GOALKEEPER
        assert move.attribute_id == attr_id(Q_GOALKEEPER)
        touched = seeded_store.get_transitions(normalize(Q_EUROPE), "yes")[0]
        assert touched.seen_count == edge.seen_count + 1

    def test_skips_edge_to_asked_question(self, offline_chain, catalog, seeded_store):
        seeded_store.register_transition(normalize(Q_EUROPE), "yes", "question", Q_FORWARD)
        ctx = _ctx(catalog, seeded_store, [
            {"question": Q_FORWARD, "answer": "no"},
            {"question": Q_EUROPE, "answer": "yes"},
        ])
        assert asyncio.run(offline_chain.from_transitions(ctx)) is None

    def test_skips_rejected_guess_edge(self, offline_chain, catalog, seeded_store):
        seeded_store.register_transition(normalize(Q_EUROPE), "yes", "guess", "Lionel Messi")
        ctx = _ctx(catalog, seeded_store, [{"question": Q_EUROPE, "answer": "yes"}], rejected=["lionel messi"])
        assert asyncio.run(offline_chain.from_transitions(ctx)) is None

    def test_answer_kind_is_part_of_the_key(self, offline_chain, catalog, seeded_store):
        seeded_store.register_transition(normalize(Q_EUROPE), "no", "question", Q_GOALKEEPER)
        ctx = _ctx(catalog, seeded_store, [{"question": Q_EUROPE, "answer": "yes"}])
        assert asyncio.run(offline_chain.from_transitions(ctx)) is None


class TestPathMining:

    def test_most_observed_follow_up(self, offline_chain, catalog, seeded_store, sessions):
        _win(sessions, "Thibaut Courtois", [{"question": Q_EUROPE, "answer": "yes"}, {"question": Q_GOALKEEPER, "answer": "yes"}])
        _win(sessions, "Thibaut Courtois", [{"question": Q_EUROPE, "answer": "yes"}, {"question": Q_GOALKEEPER, "answer": "yes"}])
        _win(sessions, "Virgil van Dijk", [{"question": Q_EUROPE, "answer": "yes"}, {"question": Q_PREMIER, "answer": "yes"}])
        ctx = _ctx(catalog, seeded_store, [{"question": Q_EUROPE, "answer": "yes"}])
        move = asyncio.run(offline_chain.from_path_mining(ctx))
        assert move.source == "path_mining"
        assert move.text == Q_GOALKEEPER
        assert move.meta["observations"] == 2

    def test_nothing_mined_without_history(self, offline_chain, catalog, seeded_store):
        assert asyncio.run(offline_chain.from_path_mining(_ctx(catalog, seeded_store, []))) is None


class TestEarlyGuess:

    ROWS = [
        {"question": Q_EUROPE, "answer": "yes"},
        {"question": Q_GOALKEEPER, "answer": "yes"},
        {"question": Q_PREMIER, "answer": "no"},
        {"question": Q_FORWARD, "answer": "no"},
        {"question": Q_AFRICA, "answer": "no"},
    ]

    def test_guess_from_matching_paths(self, offline_chain, catalog, seeded_store, sessions):
        _win(sessions, "Thibaut Courtois", self.ROWS)
        _win(sessions, "Thibaut Courtois", self.ROWS)
        move = asyncio.run(offline_chain.from_early_guess(_ctx(catalog, seeded_store, self.ROWS)))
        assert isinstance(move, GuessMove)
        assert move.entity_name == "Thibaut Courtois"
        assert move.source == "early_guess"
        assert 0.78 <= move.confidence <= 0.99

    def test_too_few_answers(self, offline_chain, catalog, seeded_store, sessions):
        _win(sessions, "Thibaut Courtois", self.ROWS)
        _win(sessions, "Thibaut Courtois", self.ROWS)
        ctx = _ctx(catalog, seeded_store, self.ROWS[:4])
        assert asyncio.run(offline_chain.from_early_guess(ctx)) is None

    def test_rejected_name_is_never_guessed(self, offline_chain, catalog, seeded_store, sessions):
        _win(sessions, "Thibaut Courtois", self.ROWS)
        _win(sessions, "Thibaut Courtois", self.ROWS)
        ctx = _ctx(catalog, seeded_store, self.ROWS, rejected=["Thibaut Courtois"])
        assert asyncio.run(offline_chain.from_early_guess(ctx)) is None


class TestGenerator:

    def test_duplicate_question_is_retried(self, chain, fake_llm, catalog, seeded_store):
        fake_llm.script(
            "fallback_generate",
            _move("question", "هَل يلعب كمهاجم"),
            _move("question", "هل سجل أكثر من 500 هدف؟"),
        )
        ctx = _ctx(catalog, seeded_store, [{"question": Q_FORWARD, "answer": "no"}])
        move = asyncio.run(chain.next_move(ctx))
        assert isinstance(move, QuestionMove)
        assert move.source == "generative"
        assert move.text == "هل سجل أكثر من 500 هدف؟"
        assert move.meta["attempt"] == 2
        assert "Avoid exactly these" in fake_llm.calls[1][1]
        registered = seeded_store.get_attribute(move.attribute_id)
        assert registered.source == "generated"

    def test_duplicate_twice_falls_through(self, chain, fake_llm, catalog, seeded_store):
        fake_llm.script("fallback_generate", _move("question", Q_FORWARD), _move("question", "هل يلعب كمهاجم"))
        ctx = _ctx(catalog, seeded_store, [{"question": Q_FORWARD, "answer": "no"}])
        move = asyncio.run(chain.next_move(ctx))
        assert move.source == "static_bank"
        assert normalize(move.text) != normalize(Q_FORWARD)

    def test_rejected_guess_is_retried(self, chain, fake_llm, catalog, seeded_store):
        fake_llm.script(
            "fallback_generate",
            _move("guess", "Lionel Messi", 0.7),
            _move("guess", "Mohamed Salah", 0.6),
        )
        ctx = _ctx(catalog, seeded_store, [{"question": Q_FORWARD, "answer": "yes"}], rejected=["Lionel Messi"])
        move = asyncio.run(chain.from_generator(ctx))
        assert isinstance(move, GuessMove)
        assert move.entity_name == "Mohamed Salah"
        assert move.confidence == 0.6

    def test_undecodable_reply_is_a_miss(self, chain, fake_llm, catalog, seeded_store):
        fake_llm.script("fallback_generate", "not json at all", '{"type": "shrug", "content": "x"}')
        ctx = _ctx(catalog, seeded_store, [])
        assert asyncio.run(chain.from_generator(ctx)) is None

    def test_banned_question_is_rejected(self, chain, fake_llm, catalog, seeded_store):
        fake_llm.script("fallback_generate", _move("question", "هل هو لاعب كرة قدم مشهور؟"))
        ctx = _ctx(catalog, seeded_store, [])
        assert asyncio.run(chain.from_generator(ctx)) is None
