"""Per-turn orchestration plus the confirm / finalize flows."""

import asyncio
import random
import uuid
from dataclasses import dataclass
from typing import Iterable, Optional

from caches import AttributeCatalog, MatrixCache
from constraints import CandidateState, build_constraints, parse_history, resolve_history, track_candidates
from database import SessionLocal
from domain import GuessMove, HistoryItem, Move, QuestionMove, SessionStatus, UpstreamUnavailable
from fallback_chain import FallbackChain, TurnContext
from knowledge_expander import KnowledgeExpander
from knowledge_store import KnowledgeStore
from learning import LearningPipeline
from llm_service import build_llm_service
from search_service import build_search_service
from selector import select_move
from session_manager import SessionHandle, SessionManager, is_valid_session_id, merge_names
from settings import GameSettings
from telemetry import append_engine_telemetry


@dataclass(frozen=True)
class TurnResult:
    move: Move
    session_id: str
    state: CandidateState
    image_url: Optional[str] = None

    def to_json(self) -> dict:
        move = self.move
        meta = dict(move.meta)
        meta["source"] = move.source
        if isinstance(move, GuessMove):
            return {
                "type": "guess",
                "content": move.entity_name,
                "confidence": move.confidence,
                "meta": meta,
                "imageUrl": self.image_url,
                "session_id": self.session_id,
            }
        return {
            "type": "question",
            "content": move.text,
            "question_id": move.question_id,
            "feature_id": move.attribute_id,
            "meta": meta,
            "session_id": self.session_id,
        }


def move_to_json(move: Move) -> dict:
    if isinstance(move, GuessMove):
        return {"type": "guess", "content": move.entity_name, "confidence": move.confidence, "source": move.source}
    return {
        "type": "question",
        "content": move.text,
        "feature_id": move.attribute_id,
        "question_id": move.question_id,
        "source": move.source,
    }


class GameEngine:
    def __init__(
        self,
        store: KnowledgeStore,
        sessions: SessionManager,
        catalog: AttributeCatalog,
        matrix_cache: MatrixCache,
        fallback: FallbackChain,
        learning: LearningPipeline,
        expander: KnowledgeExpander,
        llm,
        search,
        settings: GameSettings,
    ):
        self.store = store
        self.sessions = sessions
        self.catalog = catalog
        self.matrix_cache = matrix_cache
        self.fallback = fallback
        self.learning = learning
        self.expander = expander
        self.llm = llm
        self.search = search
        self.settings = settings

    # --------------- lifecycle ---------------

    async def start(self) -> None:
        await asyncio.gather(self.catalog.refresh(), self.matrix_cache.refresh())
        self.catalog.start()
        self.matrix_cache.start()
        self.expander.start()

    async def stop(self) -> None:
        await asyncio.gather(self.catalog.stop(), self.matrix_cache.stop())
        await self.expander.stop()

    async def _ensure_catalog(self) -> None:
        if self.catalog.get() is None:
            await self.catalog.refresh()

    def cache_status(self) -> dict:
        return {"catalog": self.catalog.status(), "matrix": self.matrix_cache.status()}

    def collaborators(self) -> dict:
        provider = getattr(self.search, "provider", "none")
        return {
            "llmConfigured": bool(getattr(self.llm, "available", False)),
            "serperConfigured": provider == "serper",
            "searchProvider": provider,
            "gapFillEnabled": self.expander.enabled,
            "catalogLoaded": self.catalog.get() is not None,
            "matrixLoaded": self.matrix_cache.get() is not None,
        }

    # --------------- helpers ---------------

    async def _best_effort(self, label: str, fn, *args) -> None:
        try:
            await asyncio.to_thread(fn, *args)
        except UpstreamUnavailable as exc:
            print(f"[engine] {label} skipped: {exc}")

    async def _ensure_session(self, session_id, items: list[HistoryItem], rejected) -> SessionHandle:
        try:
            return await asyncio.to_thread(
                self.sessions.ensure_session, session_id, [i.to_json() for i in items], rejected
            )
        except UpstreamUnavailable as exc:
            print(f"[engine] session store unavailable: {exc}")
            sid = session_id.strip() if is_valid_session_id(session_id) else str(uuid.uuid4())
            return SessionHandle(id=sid, rejected_names=tuple(merge_names(rejected)), status=SessionStatus.IN_PROGRESS.value)

    async def _resolve(self, raw_history) -> list[HistoryItem]:
        items = parse_history(raw_history)
        return await asyncio.to_thread(
            resolve_history, items, self.catalog, self.store, self.settings.question_match_threshold
        )

    async def guess_image(self, name: str) -> Optional[str]:
        try:
            entity = await asyncio.to_thread(self.store.match_entity_by_name, name, self.settings.entity_match_threshold)
        except UpstreamUnavailable:
            entity = None
        if entity is not None and entity.image_url:
            return entity.image_url
        return await self.search.lookup_entity_image(entity.name if entity else name)

    # --------------- turn ---------------

    async def play_turn(self, raw_history, rejected_guesses: Iterable[str] = (), session_id: Optional[str] = None) -> TurnResult:
        await self._ensure_catalog()
        parsed = parse_history(raw_history)
        handle, items = await asyncio.gather(
            self._ensure_session(session_id, parsed, list(rejected_guesses or ())),
            asyncio.to_thread(
                resolve_history, parsed, self.catalog, self.store, self.settings.question_match_threshold
            ),
        )
        rejected = tuple(merge_names(rejected_guesses, handle.rejected_names))
        constraints = build_constraints(items, self.catalog)
        state = await track_candidates(
            constraints, rejected, self.store, self.matrix_cache, self.settings.external_timeout_sec
        )

        move = select_move(
            state,
            constraints,
            self.catalog,
            self.settings.guess_confidence,
            self.settings.near_duplicate_threshold,
        )
        if move is None:
            ctx = TurnContext(items=tuple(items), constraints=constraints, rejected_names=rejected, state=state)
            move = await self.fallback.next_move(ctx)

        image_url = None
        if isinstance(move, GuessMove):
            image_url = await self.guess_image(move.entity_name)

        await self._after_turn(handle.id, items, constraints, rejected, state, move)
        return TurnResult(move=move, session_id=handle.id, state=state, image_url=image_url)

    async def _after_turn(self, session_id, items, constraints, rejected, state, move: Move) -> None:
        last = next((i for i in reversed(items) if i.normalized_question), None)
        writes = [
            self._best_effort(
                "snapshot",
                self.sessions.persist_snapshot,
                session_id,
                constraints.to_json(),
                constraints.asked_ids,
                constraints.asked_norms,
                rejected,
                state.candidate_count,
                state.top_entity_name,
                state.confidence,
                move_to_json(move),
            )
        ]
        if isinstance(move, QuestionMove):
            if last is not None and move.source != "transition":
                writes.append(
                    self._best_effort(
                        "transition",
                        self.store.register_transition,
                        last.normalized_question,
                        last.answer.value,
                        "question",
                        move.text,
                        move.question_id,
                    )
                )
            if move.question_id:
                writes.append(self._best_effort("question_seen", self.store.bump_question_seen, move.question_id))
        await asyncio.gather(*writes)

        append_engine_telemetry(
            "turn",
            {
                "session_id": session_id,
                "type": move.kind,
                "source": move.source,
                "candidate_count": state.candidate_count,
                "confidence": round(state.confidence, 4),
                "data_source": state.source,
                "history_len": len(items),
            },
        )
        if state.source == "matrix_cache":
            append_engine_telemetry("matrix_cache_used", {"session_id": session_id})

        if (
            isinstance(move, QuestionMove)
            and move.source == "selector"
            and move.attribute_id
            and move.meta.get("known_count", 0) < state.candidate_count
            and self.expander.enabled
        ):
            self.expander.schedule(
                self.expander.fill_for_question(move.attribute_id, move.text, constraints, rejected)
            )

    # --------------- confirm / finalize ---------------

    async def _guess_confidence(self, session_id: Optional[str], guess: str) -> float:
        try:
            snapshot = await asyncio.to_thread(self.sessions.load_snapshot, session_id)
        except UpstreamUnavailable:
            snapshot = None
        if not snapshot:
            return 0.0
        last_move = snapshot.get("last_move") or {}
        if last_move.get("type") == "guess" and merge_names([last_move.get("content")]) == merge_names([guess]):
            return float(last_move.get("confidence") or 0.0)
        return float(snapshot.get("top_probability") or 0.0)

    async def confirm(
        self,
        raw_history,
        guess: str,
        correct: bool,
        session_id: Optional[str] = None,
        give_up: bool = False,
    ) -> dict:
        await self._ensure_catalog()
        items = await self._resolve(raw_history)
        sid = session_id if is_valid_session_id(session_id) else None

        if not correct:
            confidence = await self._guess_confidence(sid, guess)
            reason, rejected = await self.learning.record_rejection(sid, guess, items, confidence)
            if give_up:
                sid = await asyncio.to_thread(
                    self.sessions.close_session, sid, False, guess, None, [i.to_json() for i in items]
                )
            append_engine_telemetry("confirm_rejected", {"session_id": sid, "reason": reason, "give_up": give_up})
            return {
                "ok": True,
                "correct": False,
                "stored": True,
                "reviewRequired": False,
                "reason": reason,
                "rejectedGuesses": list(rejected),
                "sessionId": sid,
            }

        verification, image_url = await asyncio.gather(
            self.learning.verify_history(items, guess),
            self.guess_image(guess),
        )
        if verification.has_issues:
            append_engine_telemetry(
                "confirm_review_required", {"session_id": sid, "issues": len(verification.issues)}
            )
            return {
                "ok": True,
                "correct": True,
                "stored": False,
                "reviewRequired": True,
                "verification": verification.to_json(),
                "imageUrl": image_url,
                "sessionId": sid,
            }

        result = await self.learning.commit_outcome(sid, items, guess, image_url)
        append_engine_telemetry(
            "confirm_committed",
            {"session_id": result.session_id, "verified": verification.ok, "learned": len(result.learned_attribute_ids)},
        )
        return {
            "ok": True,
            "correct": True,
            "stored": True,
            "reviewRequired": False,
            "verification": verification.to_json(),
            "imageUrl": result.image_url,
            "sessionId": result.session_id,
            "playerId": result.entity.id if result.entity else None,
        }

    async def confirm_final(self, raw_history, guess: str, session_id: Optional[str] = None) -> dict:
        """Commit the (possibly edited) history as ground truth."""
        await self._ensure_catalog()
        items = await self._resolve(raw_history)
        sid = session_id if is_valid_session_id(session_id) else None
        result = await self.learning.commit_outcome(sid, items, guess)
        append_engine_telemetry("confirm_final", {"session_id": result.session_id, "learned": len(result.learned_attribute_ids)})
        return {
            "ok": True,
            "stored": True,
            "playerId": result.entity.id if result.entity else None,
            "imageUrl": result.image_url,
            "sessionId": result.session_id,
        }


def build_engine(
    settings: Optional[GameSettings] = None,
    session_factory=None,
    llm=None,
    search=None,
    rng: Optional[random.Random] = None,
) -> GameEngine:
    settings = settings or GameSettings.from_env()
    session_factory = session_factory or SessionLocal
    llm = llm or build_llm_service()
    search = search or build_search_service()

    store = KnowledgeStore(session_factory)
    sessions = SessionManager(session_factory)
    catalog = AttributeCatalog(store, settings.catalog_refresh_sec)
    matrix_cache = MatrixCache(store, settings.matrix_top_n, settings.matrix_refresh_sec)
    return GameEngine(
        store=store,
        sessions=sessions,
        catalog=catalog,
        matrix_cache=matrix_cache,
        fallback=FallbackChain(store, catalog, llm, search, settings, rng=rng),
        learning=LearningPipeline(store, sessions, catalog, llm, search, settings),
        expander=KnowledgeExpander(store, llm, settings),
        llm=llm,
        search=search,
        settings=settings,
    )
