"""Session lifecycle and resumable per-turn snapshots."""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError

from database import session_scope
from domain import SessionStatus
from models import GameSession, SessionSnapshot
from text_utils import normalize, normalize_whitespace


def is_valid_session_id(value) -> bool:
    if not value or not isinstance(value, str):
        return False
    try:
        uuid.UUID(value.strip())
        return True
    except (ValueError, AttributeError):
        return False


def _utcnow() -> datetime:
    return datetime.utcnow()


def merge_names(*groups: Iterable[str]) -> list[str]:
    """Union of display names, de-duplicated by normalized form, first spelling kept."""
    seen = set()
    out = []
    for group in groups:
        for name in group or ():
            display = normalize_whitespace(str(name or ""))
            norm = normalize(display)
            if norm and norm not in seen:
                seen.add(norm)
                out.append(display)
    return out


@dataclass(frozen=True)
class SessionHandle:
    id: str
    rejected_names: tuple
    status: str
    created: bool = False


class SessionManager:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    def ensure_session(
        self,
        session_id: Optional[str],
        history: list,
        rejected_names: Iterable[str] = (),
    ) -> SessionHandle:
        """Merge into the session named by a valid id, else start a new one."""
        sid = session_id.strip() if is_valid_session_id(session_id) else str(uuid.uuid4())
        with self._session() as db:
            row = db.query(GameSession).filter(GameSession.id == sid).first()
            created = row is None
            if created:
                row = GameSession(
                    id=sid,
                    status=SessionStatus.IN_PROGRESS.value,
                    history=list(history or []),
                    rejected_names=merge_names(rejected_names),
                    question_count=len(history or []),
                    updated_at=_utcnow(),
                )
                db.add(row)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    row = db.query(GameSession).filter(GameSession.id == sid).one()
                    created = False
            if not created:
                if history:
                    row.history = list(history)
                    row.question_count = len(history)
                row.rejected_names = merge_names(row.rejected_names, rejected_names)
                row.updated_at = _utcnow()
                db.commit()
            return SessionHandle(
                id=row.id,
                rejected_names=tuple(row.rejected_names or ()),
                status=row.status,
                created=created,
            )

    def add_rejected_name(self, session_id: Optional[str], name: str) -> tuple:
        if not is_valid_session_id(session_id):
            return ()
        with self._session() as db:
            row = db.query(GameSession).filter(GameSession.id == session_id).first()
            if row is None:
                return ()
            row.rejected_names = merge_names(row.rejected_names, [name])
            row.updated_at = _utcnow()
            snap = db.query(SessionSnapshot).filter(SessionSnapshot.session_id == session_id).first()
            if snap is not None:
                snap.rejected_names = list(row.rejected_names)
            db.commit()
            return tuple(row.rejected_names)

    def get_session(self, session_id: Optional[str]) -> Optional[dict]:
        if not is_valid_session_id(session_id):
            return None
        with self._session() as db:
            row = db.query(GameSession).filter(GameSession.id == session_id).first()
            if row is None:
                return None
            return {
                "id": row.id,
                "status": row.status,
                "history": list(row.history or []),
                "rejected_names": list(row.rejected_names or []),
                "question_count": row.question_count,
                "guessed_name": row.guessed_name,
                "correct": row.correct,
                "behavior_profile": row.behavior_profile,
                "consistency_score": row.consistency_score,
            }

    def persist_snapshot(
        self,
        session_id: str,
        constraints: dict,
        asked_attribute_ids: Iterable[int],
        asked_question_norms: Iterable[str],
        rejected_names: Iterable[str],
        candidate_count: int,
        top_candidate: Optional[str],
        top_probability: float,
        last_move: Optional[dict],
    ) -> None:
        """Overwrite the session's resumable snapshot (last write wins)."""
        with self._session() as db:
            snap = db.query(SessionSnapshot).filter(SessionSnapshot.session_id == session_id).first()
            if snap is None:
                snap = SessionSnapshot(session_id=session_id)
                db.add(snap)
            snap.constraints = constraints or {}
            snap.asked_attribute_ids = sorted(set(asked_attribute_ids or ()))
            snap.asked_question_norms = list(asked_question_norms or ())
            snap.rejected_names = list(rejected_names or ())
            snap.candidate_count = int(candidate_count or 0)
            snap.top_candidate = top_candidate
            snap.top_probability = max(0.0, min(1.0, float(top_probability or 0.0)))
            snap.last_move = last_move
            snap.updated_at = _utcnow()
            try:
                db.commit()
            except IntegrityError:
                # Concurrent first write for the same session; the other one stands.
                db.rollback()

    def load_snapshot(self, session_id: Optional[str]) -> Optional[dict]:
        if not is_valid_session_id(session_id):
            return None
        with self._session() as db:
            snap = db.query(SessionSnapshot).filter(SessionSnapshot.session_id == session_id).first()
            if snap is None:
                return None
            return {
                "session_id": snap.session_id,
                "constraints": snap.constraints or {},
                "asked_attribute_ids": list(snap.asked_attribute_ids or []),
                "asked_question_norms": list(snap.asked_question_norms or []),
                "rejected_names": list(snap.rejected_names or []),
                "candidate_count": snap.candidate_count,
                "top_candidate": snap.top_candidate,
                "top_probability": snap.top_probability,
                "last_move": snap.last_move,
            }

    def close_session(
        self,
        session_id: Optional[str],
        won: bool,
        guess: Optional[str],
        entity_id: Optional[int],
        history: list,
        behavior_profile: Optional[str] = None,
        consistency_score: Optional[float] = None,
    ) -> str:
        """Mark the play-through won/lost and drop its snapshot. Returns the session id."""
        sid = session_id.strip() if is_valid_session_id(session_id) else str(uuid.uuid4())
        status = SessionStatus.WON.value if won else SessionStatus.LOST.value
        with self._session() as db:
            row = db.query(GameSession).filter(GameSession.id == sid).first()
            if row is None:
                row = GameSession(id=sid, rejected_names=[])
                db.add(row)
            if history:
                row.history = list(history)
            row.status = status
            row.question_count = len(row.history or [])
            row.guessed_name = normalize_whitespace(guess or "") or None
            row.guessed_entity_id = entity_id
            row.correct = bool(won)
            row.behavior_profile = behavior_profile
            row.consistency_score = consistency_score
            row.updated_at = _utcnow()
            db.query(SessionSnapshot).filter(SessionSnapshot.session_id == sid).delete()
            db.commit()
        return sid

    def abandon_stale_sessions(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = (now or _utcnow()) - older_than
        with self._session() as db:
            rows = (
                db.query(GameSession)
                .filter(
                    GameSession.status == SessionStatus.IN_PROGRESS.value,
                    GameSession.updated_at < cutoff,
                )
                .all()
            )
            for row in rows:
                row.status = SessionStatus.ABANDONED.value
                db.query(SessionSnapshot).filter(SessionSnapshot.session_id == row.id).delete()
            db.commit()
            return len(rows)
