"""Learning & verification: commit confirmed outcomes, queue bad guesses.

A confirmed guess is first checked against web evidence by the text
generator. Only a clean check (or an explicit finalize) writes to the
knowledge base.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from behavior import consistency_score, response_profile
from domain import AnswerKind, EntityRecord, HistoryItem
from llm_service import VerificationPayload

VERIFY_SYSTEM_PROMPT = (
    "You are a football data checker. The hidden player has been confirmed. "
    "For each question, decide whether the user's yes/no/maybe/unknown answer is correct for that player.\n"
    "Current time (do not rely on stale knowledge): {now}\n"
    "Strict rules:\n"
    "1) Do not invent facts. Use only the evidence below plus well-established knowledge.\n"
    "2) If the evidence is insufficient: suggestedAnswer = \"unknown\" with low confidence.\n"
    "3) Only disagree with the user when very sure (confidence >= 0.80).\n"
    "4) Return JSON only:\n"
    '{{"items": [{{"index": 1, "question": "...", "userAnswer": "yes|no|maybe|unknown", '
    '"suggestedAnswer": "yes|no|maybe|unknown", "confidence": 0.0, "reason": "..."}}]}}'
)


@dataclass(frozen=True)
class VerificationReport:
    ok: bool
    evidence_present: bool
    items: tuple = ()
    issues: tuple = ()

    @property
    def has_issues(self) -> bool:
        return bool(self.issues)

    def to_json(self) -> dict:
        return {
            "ok": self.ok,
            "evidencePresent": self.evidence_present,
            "items": list(self.items),
            "issues": list(self.issues),
        }


@dataclass
class CommitResult:
    entity: Optional[EntityRecord]
    session_id: str
    image_url: Optional[str] = None
    learned_attribute_ids: list = field(default_factory=list)


class LearningPipeline:
    def __init__(self, store, sessions, catalog, llm, search, settings):
        self.store = store
        self.sessions = sessions
        self.catalog = catalog
        self.llm = llm
        self.search = search
        self.settings = settings

    # --------------- verification ---------------

    async def verify_history(self, items: list[HistoryItem], entity_name: str) -> VerificationReport:
        evidence = await self.search.lookup_entity_evidence(entity_name)
        if not getattr(self.llm, "available", False):
            return VerificationReport(ok=False, evidence_present=bool(evidence))

        payload = [
            {"index": i + 1, "question": item.question, "answer": item.answer.value}
            for i, item in enumerate(items)
        ]
        prompt = (
            f"Evidence (may be incomplete):\n{evidence or '(no search evidence)'}\n\n"
            f"Confirmed player: {entity_name}\n\n"
            f"User answers:\n{json.dumps(payload, ensure_ascii=False, indent=2)}\n\n"
            "Review every answer and return JSON."
        )
        system = VERIFY_SYSTEM_PROMPT.format(now=datetime.now(timezone.utc).isoformat())
        result = await self.llm.generate_json(prompt, system_prompt=system, schema=VerificationPayload, stage="verify")
        if not result.ok:
            return VerificationReport(ok=False, evidence_present=bool(evidence))

        checked = []
        issues = []
        threshold = self.settings.verification_confidence
        for it in result.value.items:
            if it.index < 1 or it.index > len(items):
                continue
            item = items[it.index - 1]
            suggested = AnswerKind.parse(it.suggestedAnswer)
            confidence = max(0.0, min(1.0, float(it.confidence or 0.0)))
            entry = {
                "index": it.index,
                "question": item.question or it.question,
                "userAnswer": item.answer.value,
                "suggestedAnswer": suggested.value if suggested else (it.suggestedAnswer or ""),
                "confidence": round(confidence, 4),
                "reason": it.reason,
            }
            checked.append(entry)
            if (
                confidence >= threshold
                and suggested is not None
                and suggested is not AnswerKind.UNKNOWN
                and suggested is not item.answer
            ):
                issues.append(entry)
        return VerificationReport(
            ok=True,
            evidence_present=bool(evidence),
            items=tuple(checked),
            issues=tuple(issues),
        )

    # --------------- commit ---------------

    def _learned_facts(self, entity_id: int, items: list[HistoryItem]) -> dict:
        """attribute_id -> value; a yes in an exclusive group makes its siblings false.

        Only the latest yes/no per attribute counts, so a corrected answer
        never leaves its earlier yes behind. Maybe and unknown change nothing.
        """
        latest: dict[int, AnswerKind] = {}
        for item in items:
            if item.attribute_id is None or item.answer not in (AnswerKind.YES, AnswerKind.NO):
                continue
            latest.pop(item.attribute_id, None)
            latest[item.attribute_id] = item.answer

        facts: dict[int, bool] = {}
        snapshot = self.catalog.get()
        for attribute_id, answer in latest.items():
            if answer is not AnswerKind.YES:
                continue
            attribute = self.catalog.attribute(attribute_id)
            if attribute is not None and attribute.is_exclusive and snapshot is not None:
                for sibling in snapshot.attributes.values():
                    if sibling.group == attribute.group and sibling.id != attribute.id:
                        facts[sibling.id] = False
            facts[attribute_id] = True
        return facts

    def _commit_sync(self, session_id: Optional[str], items: list[HistoryItem], guess: str, image_url: Optional[str]) -> CommitResult:
        entity = self.store.match_entity_by_name(guess, self.settings.entity_match_threshold)
        if entity is None:
            entity = self.store.upsert_entity(guess, image_url=image_url)
        elif image_url and not entity.image_url:
            self.store.set_entity_image(entity.id, image_url)

        learned = []
        if entity is not None:
            facts = self._learned_facts(entity.id, items)
            self.store.upsert_facts(
                [(entity.id, a, v, 1.0) for a, v in facts.items()],
                source="confirmed",
                overwrite=True,
            )
            learned = sorted(a for a, v in facts.items() if v)
            self.store.reinforce_entity(entity.id, self.settings.learning_weight_step, self.settings.learning_weight_cap)

        self.store.bump_question_success(i.question_id for i in items if i.question_id)
        self.store.bump_attribute_success(i.attribute_id for i in items if i.attribute_id)

        sid = self.sessions.close_session(
            session_id,
            won=True,
            guess=entity.name if entity else guess,
            entity_id=entity.id if entity else None,
            history=[i.to_json() for i in items],
            behavior_profile=response_profile(items),
            consistency_score=consistency_score(items, self.catalog),
        )

        steps = [i for i in items if i.normalized_question]
        for prev, nxt in zip(steps, steps[1:]):
            self.store.register_transition(
                prev.normalized_question, prev.answer.value, "question", nxt.question or nxt.normalized_question,
                nxt.question_id, success=True,
            )
        if steps and entity is not None:
            last = steps[-1]
            self.store.register_transition(last.normalized_question, last.answer.value, "guess", entity.name, success=True)

        return CommitResult(
            entity=entity,
            session_id=sid,
            image_url=(entity.image_url if entity else None) or image_url,
            learned_attribute_ids=learned,
        )

    async def commit_outcome(
        self,
        session_id: Optional[str],
        items: list[HistoryItem],
        guess: str,
        image_url: Optional[str] = None,
    ) -> CommitResult:
        if image_url is None:
            existing = await asyncio.to_thread(self.store.match_entity_by_name, guess, self.settings.entity_match_threshold)
            if existing is None or not existing.image_url:
                image_url = await self.search.lookup_entity_image(existing.name if existing else guess)
        return await asyncio.to_thread(self._commit_sync, session_id, items, guess, image_url)

    # --------------- rejection ---------------

    def rejection_reason(self, confidence: float) -> str:
        return "high_confidence_reject" if confidence >= self.settings.high_confidence_reject else "wrong_guess"

    def _reject_sync(self, session_id: Optional[str], guess: str, items: list[HistoryItem], confidence: float) -> tuple:
        reason = self.rejection_reason(confidence)
        self.store.add_learning_item(session_id, guess, reason, confidence, [i.to_json() for i in items])
        rejected = self.sessions.add_rejected_name(session_id, guess)
        return reason, rejected

    async def record_rejection(self, session_id: Optional[str], guess: str, items: list[HistoryItem], confidence: float) -> tuple:
        return await asyncio.to_thread(self._reject_sync, session_id, guess, items, confidence)
