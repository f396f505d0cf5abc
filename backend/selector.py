"""Attribute selector: pick the question that best splits the candidates."""

from typing import Optional

from constraints import CandidateState, ConstraintSet
from domain import AttributeStat, GuessMove, Move, QuestionMove
from text_utils import is_near_duplicate

COVERAGE_PENALTY = 0.2


def should_guess(state: CandidateState, guess_confidence: float = 0.9) -> bool:
    if state.candidate_count <= 0 or not state.top_entity_name:
        return False
    return state.candidate_count == 1 or state.confidence >= guess_confidence


def split_score(stat: AttributeStat, candidate_count: int) -> float:
    """Distance from an even split, penalized for incomplete coverage. Lower is better."""
    n = float(candidate_count)
    return abs(0.5 - stat.true_count / n) + (1.0 - stat.known_count / n) * COVERAGE_PENALTY


def rank_attributes(
    state: CandidateState,
    constraints: ConstraintSet,
    catalog,
    near_duplicate_threshold: float = 0.86,
) -> list[tuple[float, AttributeStat]]:
    n = state.candidate_count
    if n <= 0:
        return []
    ranked = []
    for stat in state.stats:
        if stat.attribute_id in constraints.asked_ids:
            continue
        if stat.true_count <= 0 or stat.true_count >= n:
            continue
        attribute = catalog.attribute(stat.attribute_id)
        if attribute is None or attribute.is_generated:
            continue
        if attribute.is_exclusive and attribute.group in constraints.confirmed_groups:
            continue
        question = catalog.best_question(stat.attribute_id)
        if question is None:
            continue
        if is_near_duplicate(question.normalized_text, constraints.asked_norms, near_duplicate_threshold):
            continue
        ranked.append((split_score(stat, n), stat))
    ranked.sort(key=lambda pair: (pair[0], -pair[1].known_count, pair[1].attribute_id))
    return ranked


def select_move(
    state: CandidateState,
    constraints: ConstraintSet,
    catalog,
    guess_confidence: float = 0.9,
    near_duplicate_threshold: float = 0.86,
) -> Optional[Move]:
    """Guess when justified, else the best question; None hands over to the fallback chain."""
    if should_guess(state, guess_confidence):
        return GuessMove(
            entity_name=state.top_entity_name,
            confidence=round(state.confidence, 4),
            entity_id=state.top_entity_id,
            source="selector",
            meta={"candidate_count": state.candidate_count, "data_source": state.source},
        )

    ranked = rank_attributes(state, constraints, catalog, near_duplicate_threshold)
    if not ranked:
        return None
    score, stat = ranked[0]
    question = catalog.best_question(stat.attribute_id)
    return QuestionMove(
        text=question.text,
        attribute_id=stat.attribute_id,
        question_id=question.id,
        source="selector",
        meta={
            "score": round(score, 4),
            "true_count": stat.true_count,
            "known_count": stat.known_count,
            "candidate_count": state.candidate_count,
            "confidence": round(state.confidence, 4),
            "data_source": state.source,
        },
    )
