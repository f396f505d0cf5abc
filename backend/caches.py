"""Process-wide read caches with a single timer-driven writer each.

Readers call ``get()`` and receive whatever snapshot is current; refresh
builds a new immutable snapshot off the event loop and swaps the reference.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Generic, Iterable, Optional, TypeVar

from domain import (
    AttributeRecord,
    AttributeStat,
    CandidateSummary,
    EntityRecord,
    QuestionRecord,
)
from text_utils import best_match, normalize

T = TypeVar("T")


class RefreshingCache(Generic[T]):
    """Holds one snapshot produced by *loader*, rebuilt every *interval_sec*."""

    def __init__(
        self,
        name: str,
        loader: Callable[[], T],
        interval_sec: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.interval_sec = float(interval_sec)
        self._loader = loader
        self._clock = clock
        self._snapshot: Optional[T] = None
        self._loaded_at: Optional[float] = None
        self._last_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    def get(self) -> Optional[T]:
        return self._snapshot

    def age_seconds(self) -> Optional[float]:
        if self._loaded_at is None:
            return None
        return max(0.0, self._clock() - self._loaded_at)

    def is_stale(self) -> bool:
        age = self.age_seconds()
        return age is None or age >= self.interval_sec

    def refresh_now(self) -> T:
        """Load synchronously and swap the snapshot. Errors propagate."""
        snapshot = self._loader()
        self._snapshot = snapshot
        self._loaded_at = self._clock()
        self._last_error = None
        return snapshot

    async def refresh(self) -> bool:
        try:
            await asyncio.to_thread(self.refresh_now)
            return True
        except Exception as exc:
            # Keep serving the previous snapshot.
            self._last_error = f"{type(exc).__name__}: {str(exc)[:200]}"
            print(f"[cache:{self.name}] refresh failed: {self._last_error}")
            return False

    async def _run(self) -> None:
        while True:
            if self._snapshot is not None:
                await asyncio.sleep(self.interval_sec)
            await self.refresh()
            if self._snapshot is None:
                await asyncio.sleep(min(self.interval_sec, 30.0))

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name=f"cache-refresh-{self.name}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> dict:
        age = self.age_seconds()
        return {
            "name": self.name,
            "loaded": self._snapshot is not None,
            "age_seconds": round(age, 2) if age is not None else None,
            "interval_seconds": self.interval_sec,
            "stale": self.is_stale(),
            "running": self.running,
            "last_error": self._last_error,
        }


# --------------- Attribute catalog ---------------

@dataclass(frozen=True)
class CatalogSnapshot:
    attributes: dict = field(default_factory=dict)  # id -> AttributeRecord
    questions: tuple = ()  # best-first order
    best_questions: dict = field(default_factory=dict)  # attribute_id -> QuestionRecord
    questions_by_id: dict = field(default_factory=dict)
    questions_by_norm: dict = field(default_factory=dict)

    @classmethod
    def build(cls, attributes: Iterable[AttributeRecord], questions: Iterable[QuestionRecord]) -> "CatalogSnapshot":
        attrs = {a.id: a for a in attributes}
        ordered = tuple(questions)
        best: dict[int, QuestionRecord] = {}
        by_norm: dict[str, QuestionRecord] = {}
        for q in ordered:
            best.setdefault(q.attribute_id, q)
            by_norm.setdefault(q.normalized_text, q)
        return cls(
            attributes=attrs,
            questions=ordered,
            best_questions=best,
            questions_by_id={q.id: q for q in ordered},
            questions_by_norm=by_norm,
        )


class AttributeCatalog(RefreshingCache[CatalogSnapshot]):
    """Attributes plus their phrasings, refreshed on its own interval."""

    def __init__(self, store, interval_sec: float, clock: Callable[[], float] = time.monotonic):
        super().__init__(
            "catalog",
            lambda: CatalogSnapshot.build(store.list_attributes(), store.list_questions()),
            interval_sec,
            clock,
        )

    def _current(self) -> CatalogSnapshot:
        return self.get() or CatalogSnapshot()

    def attribute(self, attribute_id: Optional[int]) -> Optional[AttributeRecord]:
        if attribute_id is None:
            return None
        return self._current().attributes.get(attribute_id)

    def best_question(self, attribute_id: int) -> Optional[QuestionRecord]:
        return self._current().best_questions.get(attribute_id)

    def question(self, question_id: Optional[int]) -> Optional[QuestionRecord]:
        if question_id is None:
            return None
        return self._current().questions_by_id.get(question_id)

    def find_question(self, text: str, threshold: float) -> Optional[QuestionRecord]:
        snapshot = self._current()
        norm = normalize(text)
        if not norm:
            return None
        exact = snapshot.questions_by_norm.get(norm)
        if exact is not None:
            return exact
        return best_match(norm, [(q.normalized_text, q) for q in snapshot.questions], threshold)


# --------------- Matrix cache ---------------

@dataclass(frozen=True)
class MatrixSnapshot:
    entities: tuple = ()  # EntityRecord, heaviest first
    facts: dict = field(default_factory=dict)  # entity_id -> {attribute_id: bool}


class MatrixCache(RefreshingCache[MatrixSnapshot]):
    """In-memory copy of the top-N entities and their attribute rows.

    Answers the same questions as the gateway's aggregate queries so the
    constraint tracker can fall back to it when the store is unavailable.
    """

    def __init__(self, store, top_n: int, interval_sec: float, clock: Callable[[], float] = time.monotonic):
        def _load() -> MatrixSnapshot:
            entities, matrix = store.top_entity_matrix(top_n)
            return MatrixSnapshot(entities=tuple(entities), facts=matrix)

        super().__init__("matrix", _load, interval_sec, clock)

    @staticmethod
    def _candidates(snapshot, yes_ids, no_ids, rejected_names) -> list[EntityRecord]:
        if snapshot is None:
            return []
        yes = set(yes_ids or ())
        no = set(no_ids or ())
        rejected = {normalize(n) for n in rejected_names or ()}
        out = []
        for entity in snapshot.entities:
            if entity.normalized_name in rejected:
                continue
            row = snapshot.facts.get(entity.id, {})
            if any(row.get(a) is not True for a in yes):
                continue
            if any(row.get(a) is True for a in no):
                continue
            out.append(entity)
        return out

    def candidate_summary(self, yes_ids, no_ids, rejected_names) -> CandidateSummary:
        candidates = self._candidates(self.get(), yes_ids, no_ids, rejected_names)
        if not candidates:
            return CandidateSummary.empty()
        top = min(candidates, key=lambda e: (-e.prior_weight, e.id))
        return CandidateSummary(
            candidate_count=len(candidates),
            top_entity_id=top.id,
            top_entity_name=top.name,
            total_weight=sum(e.prior_weight for e in candidates),
            top_weight=top.prior_weight,
        )

    def attribute_stats(self, yes_ids, no_ids, asked_ids, rejected_names) -> list[AttributeStat]:
        snapshot = self.get()
        candidates = self._candidates(snapshot, yes_ids, no_ids, rejected_names)
        if not candidates:
            return []
        asked = set(asked_ids or ())
        known: dict[int, int] = {}
        trues: dict[int, int] = {}
        for entity in candidates:
            for attribute_id, value in snapshot.facts.get(entity.id, {}).items():
                if attribute_id in asked:
                    continue
                known[attribute_id] = known.get(attribute_id, 0) + 1
                if value:
                    trues[attribute_id] = trues.get(attribute_id, 0) + 1
        total = len(candidates)
        return [
            AttributeStat(attribute_id=a, true_count=trues.get(a, 0), known_count=k, total_count=total)
            for a, k in sorted(known.items())
        ]
