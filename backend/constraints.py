"""Constraint tracker and candidate filter.

Turns an answer history into yes/no attribute constraints and asks the
store (or the matrix cache when the store cannot answer) how many
candidates survive them.
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from domain import AnswerKind, AttributeStat, CandidateSummary, HistoryItem, UpstreamUnavailable
from text_utils import normalize, normalize_whitespace


def _to_int(value) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _to_float(value) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def parse_history(raw_items: Iterable) -> list[HistoryItem]:
    """Build HistoryItems from request payload dicts.

    Unrecognized answers are kept as ``unknown`` so the question still
    counts as asked; items with neither text nor ids are dropped.
    """
    items = []
    for raw in raw_items or []:
        if hasattr(raw, "model_dump"):
            raw = raw.model_dump()
        if not isinstance(raw, dict):
            continue
        question = normalize_whitespace(str(raw.get("question") or ""))
        attribute_id = _to_int(raw.get("feature_id", raw.get("featureId")))
        question_id = _to_int(raw.get("question_id", raw.get("questionId")))
        if not question and attribute_id is None and question_id is None:
            continue
        norm = normalize(raw.get("normalized_question") or question)
        items.append(
            HistoryItem(
                question=question,
                normalized_question=norm,
                answer=AnswerKind.parse(raw.get("answer")) or AnswerKind.UNKNOWN,
                attribute_id=attribute_id,
                question_id=question_id,
                response_time=_to_float(raw.get("response_time", raw.get("responseTime"))),
            )
        )
    return items


def resolve_history(items: list[HistoryItem], catalog, store, threshold: float = 0.92) -> list[HistoryItem]:
    """Fill in attribute ids: explicit id, question id, catalog text, then store lookup."""
    resolved = []
    for item in items:
        attribute_id = item.attribute_id
        question_id = item.question_id
        if attribute_id is None and question_id is not None:
            q = catalog.question(question_id)
            if q is None:
                try:
                    q = store.get_question(question_id)
                except UpstreamUnavailable:
                    q = None
            if q is not None:
                attribute_id = q.attribute_id
        if attribute_id is None and item.normalized_question:
            q = catalog.find_question(item.normalized_question, threshold)
            if q is None:
                try:
                    q = store.match_question_by_text(item.normalized_question, threshold)
                except UpstreamUnavailable:
                    q = None
            if q is not None:
                attribute_id = q.attribute_id
                question_id = question_id or q.id
        if not item.normalized_question and attribute_id is not None:
            q = catalog.question(question_id) or catalog.best_question(attribute_id)
            if q is not None:
                item = replace(item, question=item.question or q.text, normalized_question=q.normalized_text)
        resolved.append(replace(item, attribute_id=attribute_id, question_id=question_id))
    return resolved


@dataclass(frozen=True)
class ConstraintSet:
    yes_ids: frozenset = frozenset()
    no_ids: frozenset = frozenset()
    asked_ids: frozenset = frozenset()
    asked_norms: tuple = ()
    confirmed_groups: frozenset = frozenset()
    answered_pairs: tuple = ()  # ((normalized_question, answer), ...)

    def to_json(self) -> dict:
        return {
            "yes": sorted(self.yes_ids),
            "no": sorted(self.no_ids),
            "confirmed_groups": sorted(self.confirmed_groups),
        }


def build_constraints(items: list[HistoryItem], catalog) -> ConstraintSet:
    """Latest yes/no answer per attribute wins; maybe/unknown only mark it asked.

    Generated attributes carry too few facts to filter on, so they are
    recorded as asked but never constrain the candidate set.
    """
    latest: dict[int, bool] = {}
    asked_ids = set()
    asked_norms = []
    pairs = []
    for item in items:
        if item.normalized_question:
            if item.normalized_question not in asked_norms:
                asked_norms.append(item.normalized_question)
            pairs.append((item.normalized_question, item.answer.value))
        if item.attribute_id is None:
            continue
        asked_ids.add(item.attribute_id)
        attribute = catalog.attribute(item.attribute_id)
        if attribute is not None and attribute.is_generated:
            continue
        if item.answer.as_bool is not None:
            latest[item.attribute_id] = item.answer.as_bool

    yes_ids = frozenset(a for a, v in latest.items() if v)
    no_ids = frozenset(a for a, v in latest.items() if not v)
    groups = set()
    for attribute_id in yes_ids:
        attribute = catalog.attribute(attribute_id)
        if attribute is not None and attribute.is_exclusive:
            groups.add(attribute.group)
    return ConstraintSet(
        yes_ids=yes_ids,
        no_ids=no_ids,
        asked_ids=frozenset(asked_ids),
        asked_norms=tuple(asked_norms),
        confirmed_groups=frozenset(groups),
        answered_pairs=tuple(pairs),
    )


def derive_confidence(summary: CandidateSummary) -> float:
    if summary.total_weight > 0:
        value = summary.top_weight / summary.total_weight
    elif summary.candidate_count > 0:
        value = 1.0 / summary.candidate_count
    else:
        value = 0.0
    return max(0.0, min(1.0, value))


@dataclass(frozen=True)
class CandidateState:
    summary: CandidateSummary
    confidence: float
    stats: tuple = field(default_factory=tuple)
    source: str = "live"  # live | matrix_cache | none

    @property
    def candidate_count(self) -> int:
        return self.summary.candidate_count

    @property
    def top_entity_name(self) -> Optional[str]:
        return self.summary.top_entity_name

    @property
    def top_entity_id(self) -> Optional[int]:
        return self.summary.top_entity_id


async def track_candidates(
    constraints: ConstraintSet,
    rejected_names: Iterable[str],
    store,
    matrix_cache,
    timeout_sec: float = 12.0,
) -> CandidateState:
    rejected = list(rejected_names or ())
    summary: Optional[CandidateSummary] = None
    stats: list[AttributeStat] = []
    try:
        summary, stats = await asyncio.wait_for(
            asyncio.gather(
                asyncio.to_thread(store.get_candidate_summary, constraints.yes_ids, constraints.no_ids, rejected),
                asyncio.to_thread(
                    store.get_attribute_stats,
                    constraints.yes_ids,
                    constraints.no_ids,
                    constraints.asked_ids,
                    rejected,
                ),
            ),
            timeout=timeout_sec,
        )
    except (UpstreamUnavailable, SQLAlchemyError, asyncio.TimeoutError) as exc:
        print(f"[constraints] live candidate query unavailable: {type(exc).__name__}: {str(exc)[:160]}")
        summary = None

    if summary is not None and summary.candidate_count > 0:
        return CandidateState(summary=summary, confidence=derive_confidence(summary), stats=tuple(stats), source="live")

    if matrix_cache is not None and matrix_cache.get() is not None:
        cached = matrix_cache.candidate_summary(constraints.yes_ids, constraints.no_ids, rejected)
        if cached.candidate_count > 0:
            cached_stats = matrix_cache.attribute_stats(
                constraints.yes_ids, constraints.no_ids, constraints.asked_ids, rejected
            )
            return CandidateState(
                summary=cached,
                confidence=derive_confidence(cached),
                stats=tuple(cached_stats),
                source="matrix_cache",
            )

    empty = summary or CandidateSummary.empty()
    return CandidateState(summary=empty, confidence=derive_confidence(empty), stats=(), source="none")
