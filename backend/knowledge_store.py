"""Knowledge Store Gateway.

Typed access to entities, attributes, questions, transition edges and the
aggregate candidate statistics the engine needs. Every public method opens
its own session so calls can run concurrently from worker threads; store
failures surface as ``UpstreamUnavailable``.
"""

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import and_, case, func, select
from sqlalchemy.exc import IntegrityError

from database import session_scope
from domain import (
    AnswerKind,
    AttributeRecord,
    AttributeStat,
    CandidateSummary,
    CompletedPath,
    EntityRecord,
    QuestionRecord,
    TransitionRecord,
)
from models import (
    Attribute,
    Entity,
    EntityAttribute,
    GameSession,
    LearningQueueItem,
    Question,
    TransitionEdge,
)
from text_utils import best_match, normalize, normalize_whitespace


def _utcnow() -> datetime:
    return datetime.utcnow()


def _entity_record(row: Entity) -> EntityRecord:
    return EntityRecord(
        id=row.id,
        name=row.name,
        normalized_name=row.normalized_name,
        prior_weight=float(row.prior_weight or 0.0),
        image_url=row.image_url,
    )


def _attribute_record(row: Attribute) -> AttributeRecord:
    return AttributeRecord(
        id=row.id,
        key=row.key,
        value=row.value,
        label=row.label,
        group=row.group_name,
        is_exclusive=bool(row.is_exclusive),
        source=row.source or "seed",
    )


def _question_record(row: Question) -> QuestionRecord:
    return QuestionRecord(
        id=row.id,
        attribute_id=row.attribute_id,
        text=row.text,
        normalized_text=row.normalized_text,
        manual_weight=float(row.manual_weight or 0.0),
        success_count=int(row.success_count or 0),
    )


def _transition_record(row: TransitionEdge) -> TransitionRecord:
    return TransitionRecord(
        id=row.id,
        from_question_norm=row.from_question_norm,
        answer=row.answer,
        next_type=row.next_type,
        next_text=row.next_text,
        next_question_id=row.next_question_id,
        seen_count=int(row.seen_count or 0),
        success_count=int(row.success_count or 0),
        updated_at=row.updated_at,
    )


def _normalized_names(names: Iterable[str]) -> list[str]:
    return sorted({n for n in (normalize(x) for x in names or ()) if n})


class KnowledgeStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    # --------------- candidate filtering ---------------

    @staticmethod
    def _candidate_query(db, yes_ids: Iterable[int], no_ids: Iterable[int], rejected_names: Iterable[str]):
        q = db.query(Entity)
        for attribute_id in sorted(set(yes_ids or ())):
            q = q.filter(
                Entity.facts.any(
                    and_(EntityAttribute.attribute_id == attribute_id, EntityAttribute.value.is_(True))
                )
            )
        no_list = sorted(set(no_ids or ()))
        if no_list:
            q = q.filter(
                ~Entity.facts.any(
                    and_(EntityAttribute.attribute_id.in_(no_list), EntityAttribute.value.is_(True))
                )
            )
        rejected = _normalized_names(rejected_names)
        if rejected:
            q = q.filter(Entity.normalized_name.notin_(rejected))
        return q

    def get_candidate_summary(
        self,
        yes_ids: Iterable[int],
        no_ids: Iterable[int],
        rejected_names: Iterable[str],
    ) -> CandidateSummary:
        with self._session() as db:
            q = self._candidate_query(db, yes_ids, no_ids, rejected_names)
            count, total = q.with_entities(
                func.count(Entity.id), func.coalesce(func.sum(Entity.prior_weight), 0.0)
            ).one()
            if not count:
                return CandidateSummary.empty()
            top = q.order_by(Entity.prior_weight.desc(), Entity.id.asc()).first()
            return CandidateSummary(
                candidate_count=int(count),
                top_entity_id=top.id,
                top_entity_name=top.name,
                total_weight=float(total or 0.0),
                top_weight=float(top.prior_weight or 0.0),
            )

    def get_attribute_stats(
        self,
        yes_ids: Iterable[int],
        no_ids: Iterable[int],
        asked_ids: Iterable[int],
        rejected_names: Iterable[str],
    ) -> list[AttributeStat]:
        with self._session() as db:
            q = self._candidate_query(db, yes_ids, no_ids, rejected_names)
            total = q.with_entities(func.count(Entity.id)).scalar() or 0
            if not total:
                return []
            candidate_ids = q.with_entities(Entity.id).subquery()
            true_count = func.sum(case((EntityAttribute.value.is_(True), 1), else_=0))
            stats_q = (
                db.query(EntityAttribute.attribute_id, func.count(EntityAttribute.id), true_count)
                .filter(EntityAttribute.entity_id.in_(select(candidate_ids.c.id)))
            )
            asked = sorted(set(asked_ids or ()))
            if asked:
                stats_q = stats_q.filter(EntityAttribute.attribute_id.notin_(asked))
            rows = stats_q.group_by(EntityAttribute.attribute_id).all()
            return [
                AttributeStat(
                    attribute_id=int(attribute_id),
                    true_count=int(trues or 0),
                    known_count=int(known or 0),
                    total_count=int(total),
                )
                for attribute_id, known, trues in rows
            ]

    def list_unknown_candidates(
        self,
        attribute_id: int,
        yes_ids: Iterable[int],
        no_ids: Iterable[int],
        rejected_names: Iterable[str],
        limit: int = 10,
    ) -> list[EntityRecord]:
        """Candidates that have no fact at all for *attribute_id*."""
        with self._session() as db:
            q = self._candidate_query(db, yes_ids, no_ids, rejected_names)
            rows = (
                q.filter(~Entity.facts.any(EntityAttribute.attribute_id == attribute_id))
                .order_by(Entity.prior_weight.desc(), Entity.id.asc())
                .limit(max(1, limit))
                .all()
            )
            return [_entity_record(r) for r in rows]

    # --------------- matching ---------------

    def match_entity_by_name(self, text: str, threshold: float = 0.9) -> Optional[EntityRecord]:
        target = normalize(text)
        if not target:
            return None
        with self._session() as db:
            exact = db.query(Entity).filter(Entity.normalized_name == target).first()
            if exact:
                return _entity_record(exact)
            rows = db.query(Entity).all()
            return best_match(target, [(r.normalized_name, _entity_record(r)) for r in rows], threshold)

    def match_question_by_text(self, text: str, threshold: float = 0.92) -> Optional[QuestionRecord]:
        target = normalize(text)
        if not target:
            return None
        with self._session() as db:
            exact = (
                db.query(Question)
                .filter(Question.normalized_text == target)
                .order_by(Question.manual_weight.desc(), Question.success_count.desc(), Question.id.asc())
                .first()
            )
            if exact:
                return _question_record(exact)
            rows = db.query(Question).order_by(Question.id.asc()).all()
            return best_match(target, [(r.normalized_text, _question_record(r)) for r in rows], threshold)

    # --------------- catalog reads ---------------

    def list_attributes(self) -> list[AttributeRecord]:
        with self._session() as db:
            return [_attribute_record(r) for r in db.query(Attribute).order_by(Attribute.id.asc()).all()]

    def list_questions(self) -> list[QuestionRecord]:
        with self._session() as db:
            rows = (
                db.query(Question)
                .order_by(Question.manual_weight.desc(), Question.success_count.desc(), Question.id.asc())
                .all()
            )
            return [_question_record(r) for r in rows]

    def get_question(self, question_id: int) -> Optional[QuestionRecord]:
        with self._session() as db:
            row = db.query(Question).filter(Question.id == question_id).first()
            return _question_record(row) if row else None

    def get_attribute(self, attribute_id: int) -> Optional[AttributeRecord]:
        with self._session() as db:
            row = db.query(Attribute).filter(Attribute.id == attribute_id).first()
            return _attribute_record(row) if row else None

    def counts(self) -> dict:
        with self._session() as db:
            return {
                "entities": db.query(func.count(Entity.id)).scalar() or 0,
                "attributes": db.query(func.count(Attribute.id)).scalar() or 0,
                "questions": db.query(func.count(Question.id)).scalar() or 0,
                "facts": db.query(func.count(EntityAttribute.id)).scalar() or 0,
            }

    # --------------- idempotent upserts ---------------

    def upsert_entity(self, name: str, image_url: Optional[str] = None, prior_weight: float = 1.0) -> Optional[EntityRecord]:
        display = normalize_whitespace(name)
        norm = normalize(display)
        if not norm:
            return None
        with self._session() as db:
            row = db.query(Entity).filter(Entity.normalized_name == norm).first()
            if row is None:
                row = Entity(name=display, normalized_name=norm, image_url=image_url, prior_weight=prior_weight)
                db.add(row)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    row = db.query(Entity).filter(Entity.normalized_name == norm).one()
            elif image_url and not row.image_url:
                row.image_url = image_url
                db.commit()
            db.refresh(row)
            return _entity_record(row)

    def set_entity_image(self, entity_id: int, image_url: str) -> None:
        with self._session() as db:
            row = db.query(Entity).filter(Entity.id == entity_id).first()
            if row and image_url:
                row.image_url = image_url
                db.commit()

    def reinforce_entity(self, entity_id: int, step: float, cap: float) -> None:
        with self._session() as db:
            row = db.query(Entity).filter(Entity.id == entity_id).first()
            if row is None:
                return
            row.prior_weight = min(cap, float(row.prior_weight or 0.0) + step)
            row.win_count = int(row.win_count or 0) + 1
            db.commit()

    def upsert_attribute(
        self,
        key: str,
        value: str,
        label: str,
        group: str,
        is_exclusive: bool = False,
        source: str = "seed",
    ) -> Optional[AttributeRecord]:
        norm_key = normalize(key)
        norm_value = normalize(value)
        if not norm_key or not norm_value:
            return None

        def _find(db):
            return (
                db.query(Attribute)
                .filter(Attribute.normalized_key == norm_key, Attribute.normalized_value == norm_value)
                .first()
            )

        with self._session() as db:
            row = _find(db)
            if row is None:
                row = Attribute(
                    key=key,
                    value=value,
                    label=label or value,
                    group_name=group or key,
                    is_exclusive=bool(is_exclusive),
                    normalized_key=norm_key,
                    normalized_value=norm_value,
                    source=source,
                )
                db.add(row)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    row = _find(db)
            return _attribute_record(row)

    def upsert_question(self, attribute_id: int, text: str, manual_weight: float = 0.0) -> Optional[QuestionRecord]:
        display = normalize_whitespace(text)
        norm = normalize(display)
        if not attribute_id or not norm:
            return None

        def _find(db):
            return (
                db.query(Question)
                .filter(Question.attribute_id == attribute_id, Question.normalized_text == norm)
                .first()
            )

        with self._session() as db:
            row = _find(db)
            if row is None:
                row = Question(
                    attribute_id=attribute_id,
                    text=display,
                    normalized_text=norm,
                    manual_weight=manual_weight,
                )
                db.add(row)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    row = _find(db)
            return _question_record(row)

    @staticmethod
    def _has_true_sibling(db, entity_id: int, attribute_id: int, group: str) -> bool:
        row = (
            db.query(EntityAttribute.id)
            .join(Attribute, Attribute.id == EntityAttribute.attribute_id)
            .filter(
                EntityAttribute.entity_id == entity_id,
                EntityAttribute.value.is_(True),
                EntityAttribute.attribute_id != attribute_id,
                Attribute.group_name == group,
                Attribute.is_exclusive.is_(True),
            )
            .first()
        )
        return row is not None

    def upsert_facts(
        self,
        facts: Iterable[tuple[int, int, bool, Optional[float]]],
        source: str,
        overwrite: bool = True,
    ) -> int:
        """Write (entity_id, attribute_id, value, confidence) rows.

        With ``overwrite=False`` existing rows are left untouched, so
        background fills never clobber seeded or confirmed knowledge, and a
        true fact is dropped when the entity already has a true attribute
        in the same exclusive group.
        """
        written = 0
        with self._session() as db:
            exclusive: dict[int, Optional[str]] = {}
            asserted: set[tuple[int, str]] = set()
            for entity_id, attribute_id, value, confidence in facts:
                group = None
                if value and not overwrite:
                    if attribute_id not in exclusive:
                        attr = db.query(Attribute).filter(Attribute.id == attribute_id).first()
                        exclusive[attribute_id] = attr.group_name if attr is not None and attr.is_exclusive else None
                    group = exclusive[attribute_id]
                    if group is not None:
                        if (entity_id, group) in asserted or self._has_true_sibling(db, entity_id, attribute_id, group):
                            continue
                row = (
                    db.query(EntityAttribute)
                    .filter(EntityAttribute.entity_id == entity_id, EntityAttribute.attribute_id == attribute_id)
                    .first()
                )
                if row is None:
                    db.add(
                        EntityAttribute(
                            entity_id=entity_id,
                            attribute_id=attribute_id,
                            value=bool(value),
                            source=source,
                            confidence=confidence,
                        )
                    )
                    written += 1
                    if group is not None:
                        asserted.add((entity_id, group))
                elif overwrite:
                    row.value = bool(value)
                    row.source = source
                    row.confidence = confidence
                    written += 1
            try:
                db.commit()
            except IntegrityError:
                # A concurrent writer inserted the same pair first.
                db.rollback()
                return 0
        return written

    # --------------- counters ---------------

    def bump_question_seen(self, question_id: int) -> None:
        with self._session() as db:
            row = db.query(Question).filter(Question.id == question_id).first()
            if row:
                row.seen_count = int(row.seen_count or 0) + 1
                db.commit()

    def bump_question_success(self, question_ids: Iterable[int]) -> None:
        ids = sorted({int(q) for q in question_ids if q})
        if not ids:
            return
        with self._session() as db:
            for row in db.query(Question).filter(Question.id.in_(ids)).all():
                row.success_count = int(row.success_count or 0) + 1
            db.commit()

    def bump_attribute_success(self, attribute_ids: Iterable[int]) -> None:
        ids = sorted({int(a) for a in attribute_ids if a})
        if not ids:
            return
        with self._session() as db:
            for row in db.query(Attribute).filter(Attribute.id.in_(ids)).all():
                row.success_count = int(row.success_count or 0) + 1
            db.commit()

    # --------------- transition edges ---------------

    def get_transitions(self, from_question_norm: str, answer: str) -> list[TransitionRecord]:
        if not from_question_norm:
            return []
        with self._session() as db:
            rows = (
                db.query(TransitionEdge)
                .filter(TransitionEdge.from_question_norm == from_question_norm, TransitionEdge.answer == answer)
                .all()
            )
            return [_transition_record(r) for r in rows]

    def _find_edge(self, db, from_question_norm: str, answer: str, next_type: str, next_key: str):
        return (
            db.query(TransitionEdge)
            .filter(
                TransitionEdge.from_question_norm == from_question_norm,
                TransitionEdge.answer == answer,
                TransitionEdge.next_type == next_type,
                TransitionEdge.next_key == next_key,
            )
            .first()
        )

    def register_transition(
        self,
        from_question_norm: str,
        answer: str,
        next_type: str,
        next_text: str,
        next_question_id: Optional[int] = None,
        success: bool = False,
    ) -> Optional[TransitionRecord]:
        """Create the edge if absent and count one more observation of it."""
        next_key = normalize(next_text)
        if not from_question_norm or not next_key:
            return None
        with self._session() as db:
            row = self._find_edge(db, from_question_norm, answer, next_type, next_key)
            if row is None:
                row = TransitionEdge(
                    from_question_norm=from_question_norm,
                    answer=answer,
                    next_type=next_type,
                    next_key=next_key,
                    next_text=normalize_whitespace(next_text),
                    next_question_id=next_question_id,
                    seen_count=0,
                    success_count=0,
                )
                db.add(row)
            row.seen_count = int(row.seen_count or 0) + (0 if success else 1)
            if success:
                row.success_count = int(row.success_count or 0) + 1
                row.seen_count = max(int(row.seen_count or 0), row.success_count)
            if next_question_id and not row.next_question_id:
                row.next_question_id = next_question_id
            row.updated_at = _utcnow()
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                row = self._find_edge(db, from_question_norm, answer, next_type, next_key)
                if row is None:
                    return None
            db.refresh(row)
            return _transition_record(row)

    def touch_transition(self, edge_id: int) -> None:
        with self._session() as db:
            row = db.query(TransitionEdge).filter(TransitionEdge.id == edge_id).first()
            if row:
                row.seen_count = int(row.seen_count or 0) + 1
                row.updated_at = _utcnow()
                db.commit()

    # --------------- completed play-throughs ---------------

    def recent_completed_paths(self, limit: int = 500) -> list[CompletedPath]:
        with self._session() as db:
            rows = (
                db.query(GameSession)
                .filter(GameSession.status == "won", GameSession.guessed_name.isnot(None))
                .order_by(GameSession.updated_at.desc())
                .limit(max(1, limit))
                .all()
            )
            paths = []
            for row in rows:
                steps = []
                for item in row.history or []:
                    if not isinstance(item, dict):
                        continue
                    norm = item.get("normalized_question") or normalize(item.get("question"))
                    answer = AnswerKind.parse(item.get("answer"))
                    if norm and answer:
                        steps.append((norm, answer.value, item.get("question") or norm))
                paths.append(
                    CompletedPath(
                        session_id=row.id,
                        guessed_name=row.guessed_name,
                        steps=tuple(steps),
                        updated_at=row.updated_at,
                    )
                )
            return paths

    # --------------- matrix snapshot / gaps ---------------

    def top_entity_matrix(self, limit: int) -> tuple[list[EntityRecord], dict[int, dict[int, bool]]]:
        with self._session() as db:
            entities = (
                db.query(Entity)
                .order_by(Entity.prior_weight.desc(), Entity.id.asc())
                .limit(max(1, limit))
                .all()
            )
            ids = [e.id for e in entities]
            matrix: dict[int, dict[int, bool]] = {eid: {} for eid in ids}
            if ids:
                facts = db.query(EntityAttribute).filter(EntityAttribute.entity_id.in_(ids)).all()
                for f in facts:
                    matrix[f.entity_id][f.attribute_id] = bool(f.value)
            return [_entity_record(e) for e in entities], matrix

    def matrix_gaps(self, limit: int = 50) -> list[tuple[int, str, EntityRecord]]:
        """(attribute_id, question_text, entity) triples with no known fact, heaviest entities first."""
        with self._session() as db:
            questions = (
                db.query(Question)
                .order_by(Question.manual_weight.desc(), Question.success_count.desc(), Question.id.asc())
                .all()
            )
            best_question: dict[int, str] = {}
            for q in questions:
                best_question.setdefault(q.attribute_id, q.text)
            known = {(f.entity_id, f.attribute_id) for f in db.query(EntityAttribute.entity_id, EntityAttribute.attribute_id)}
            gaps: list[tuple[int, str, EntityRecord]] = []
            for entity in db.query(Entity).order_by(Entity.prior_weight.desc(), Entity.id.asc()):
                for attribute_id, text in best_question.items():
                    if (entity.id, attribute_id) in known:
                        continue
                    gaps.append((attribute_id, text, _entity_record(entity)))
                    if len(gaps) >= limit:
                        return gaps
            return gaps

    # --------------- learning queue ---------------

    def add_learning_item(
        self,
        session_id: Optional[str],
        guess_name: str,
        reason: str,
        confidence: float,
        history: list,
    ) -> int:
        with self._session() as db:
            row = LearningQueueItem(
                session_id=session_id,
                guess_name=normalize_whitespace(guess_name),
                reason=reason,
                confidence=max(0.0, min(1.0, float(confidence or 0.0))),
                history=history or [],
            )
            db.add(row)
            db.commit()
            return row.id
