"""Background filling of unknown (entity, attribute) cells via the text generator."""

import asyncio
import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Optional

from domain import AnswerKind, EntityRecord, UpstreamUnavailable
from llm_service import GapFillPayload

# Minimum confidence per answer kind; unknown is never stored.
CONFIDENCE_FLOORS = {AnswerKind.YES: 0.65, AnswerKind.NO: 0.65, AnswerKind.MAYBE: 0.6}

GAP_FILL_SYSTEM_PROMPT = (
    "You are a football data assistant. For every player, answer the question with yes/no/maybe/unknown.\n"
    "Current time: {now}\n"
    "Rules:\n"
    "1) Do not invent. If unsure: answer = \"unknown\".\n"
    "2) The question may be in Arabic; treat it as a property of the player.\n"
    "3) Return JSON only: {{\"items\": [{{\"candidate_id\": 1, \"answer\": \"yes|no|maybe|unknown\", \"confidence\": 0.0}}]}}"
)


class InFlightGuard:
    """Thread-safe set of keys currently being worked on."""

    def __init__(self):
        self._lock = threading.Lock()
        self._keys: set = set()

    @contextmanager
    def claim(self, keys: Iterable, limit: Optional[int] = None):
        """Yield the subset of *keys* not already claimed; always released on exit."""
        claimed = []
        with self._lock:
            for key in keys:
                if limit is not None and len(claimed) >= limit:
                    break
                if key in self._keys:
                    continue
                self._keys.add(key)
                claimed.append(key)
        try:
            yield claimed
        finally:
            with self._lock:
                for key in claimed:
                    self._keys.discard(key)

    def __contains__(self, key) -> bool:
        with self._lock:
            return key in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)


def accepted_answer(answer, confidence) -> Optional[tuple]:
    """(value, confidence) worth storing, or None. maybe is stored as a false fact."""
    kind = AnswerKind.parse(answer)
    try:
        conf = float(confidence)
    except (TypeError, ValueError):
        return None
    if kind is None or kind is AnswerKind.UNKNOWN or not 0.0 <= conf <= 1.0:
        return None
    if conf < CONFIDENCE_FLOORS[kind]:
        return None
    return (kind is AnswerKind.YES), conf


class KnowledgeExpander:
    def __init__(self, store, llm, settings):
        self.store = store
        self.llm = llm
        self.settings = settings
        self.guard = InFlightGuard()
        self._tasks: set = set()
        self._worker: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return bool(self.settings.gap_fill_enabled) and getattr(self.llm, "available", False)

    async def fill_attribute(self, attribute_id: int, question_text: str, entities: list[EntityRecord]) -> int:
        """Ask about up to one batch of entities; returns the number of facts written."""
        if not self.enabled or not attribute_id or not question_text:
            return 0
        by_key = {(attribute_id, e.id): e for e in entities}
        with self.guard.claim(by_key.keys(), limit=self.settings.gap_fill_batch) as claimed:
            if not claimed:
                return 0
            batch = [by_key[k] for k in claimed]
            prompt = (
                f"Question:\n{question_text}\n\n"
                "Players:\n"
                + json.dumps([{"candidate_id": e.id, "name": e.name} for e in batch], ensure_ascii=False, indent=2)
            )
            system = GAP_FILL_SYSTEM_PROMPT.format(now=datetime.now(timezone.utc).isoformat())
            result = await self.llm.generate_json(prompt, system_prompt=system, schema=GapFillPayload, stage="gap_fill")
            if not result.ok:
                return 0
            wanted = {e.id for e in batch}
            facts = []
            for it in result.value.items:
                try:
                    entity_id = int(it.candidate_id)
                except (TypeError, ValueError):
                    continue
                if entity_id not in wanted:
                    continue
                accepted = accepted_answer(it.answer, it.confidence)
                if accepted is None:
                    continue
                value, conf = accepted
                facts.append((entity_id, attribute_id, value, conf))
            if not facts:
                return 0
            return await asyncio.to_thread(self.store.upsert_facts, facts, "llm", False)

    async def fill_for_question(self, attribute_id: int, question_text: str, constraints, rejected_names) -> int:
        entities = await asyncio.to_thread(
            self.store.list_unknown_candidates,
            attribute_id,
            constraints.yes_ids,
            constraints.no_ids,
            list(rejected_names or ()),
            self.settings.gap_fill_batch,
        )
        return await self.fill_attribute(attribute_id, question_text, entities)

    async def run_cycle(self, limit: int = 50) -> int:
        """Fill the heaviest known gaps across the whole matrix."""
        if not self.enabled:
            return 0
        gaps = await asyncio.to_thread(self.store.matrix_gaps, limit)
        grouped: dict[int, tuple[str, list]] = {}
        for attribute_id, text, entity in gaps:
            grouped.setdefault(attribute_id, (text, []))[1].append(entity)
        written = 0
        for attribute_id, (text, entities) in grouped.items():
            written += await self.fill_attribute(attribute_id, text, entities)
        return written

    def schedule(self, coro) -> asyncio.Task:
        """Run *coro* in the background; failures are reported, never raised."""
        async def _guarded():
            try:
                return await coro
            except UpstreamUnavailable as exc:
                print(f"[expander] store unavailable: {exc}")
            except Exception as exc:
                print(f"[expander] gap fill failed: {type(exc).__name__}: {str(exc)[:160]}")
            return 0

        task = asyncio.create_task(_guarded())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --------------- periodic worker ---------------

    async def _run_worker(self, interval_sec: float) -> None:
        while True:
            await asyncio.sleep(interval_sec)
            try:
                written = await self.run_cycle(self.settings.gap_fill_cycle_limit)
            except UpstreamUnavailable as exc:
                print(f"[expander] cycle skipped, store unavailable: {exc}")
                continue
            if written:
                print(f"[expander] cycle stored {written} facts")

    def start(self) -> None:
        """Sweep matrix gaps every ``gap_fill_interval_sec`` while enabled."""
        if not self.enabled:
            return
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(
                self._run_worker(self.settings.gap_fill_interval_sec), name="knowledge-expander"
            )

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def stop(self) -> None:
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        await self.drain()
