"""Five-stage fallback used when the attribute selector has no move.

Stages run in order and the first usable result wins:

1. transition   cached (question, answer) -> next move edges
2. path_mining  what followed the same (question, answer) in won games
3. early_guess  guess from overall path similarity with won games
4. generative   one question or guess from the text generator (one retry)
5. static_bank  generic questions; always produces something
"""

import asyncio
import json
import math
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from constraints import CandidateState, ConstraintSet
from domain import AnswerKind, GuessMove, HistoryItem, Move, QuestionMove, UpstreamUnavailable
from llm_service import GeneratedMove
from text_utils import is_near_duplicate, normalize

FALLBACK_QUESTIONS = [
    "هل يلعب في أوروبا؟",
    "هل هو لاعب معتزل؟",
    "هل يلعب كمهاجم؟",
    "هل لعب في الدوريات الخمسة الكبرى؟",
    "هل فاز بدوري الأبطال؟",
    "هل يلعب في إنجلترا؟",
    "هل يلعب في إسبانيا؟",
    "هل هو أفريقي؟",
    "هل هو من أمريكا الجنوبية؟",
    "هل فاز بكأس العالم للأندية؟",
    "هل يلعب في الدوري الإيطالي؟",
    "هل يلعب في الدوري الألماني؟",
    "هل يلعب في الدوري الفرنسي؟",
    "هل هو آسيوي؟",
    "هل يلعب كمدافع؟",
    "هل يلعب في خط الوسط؟",
    "هل هو حارس مرمى؟",
]

STRATEGIC_QUESTIONS = [
    "هل لعب في ريال مدريد؟",
    "هل لعب في برشلونة؟",
    "هل فاز بالكرة الذهبية؟",
    "هل لعب في مانشستر يونايتد؟",
    "هل هو أوروبي؟",
    "هل لعب في باريس سان جيرمان؟",
    "هل فاز بكأس العالم؟",
    "هل لعب في ليفربول؟",
    "هل لعب في تشيلسي؟",
    "هل لعب في يوفنتوس؟",
]

# Low-information or off-limits phrasings rejected from the generator.
BANNED_QUESTION_PATTERNS = [
    # gender
    "ذكر", "انثى", "رجل", "امرأة", "بنت", "ولد",
    # obvious
    "لاعب كرة قدم", "يلعب كرة قدم", "كرة القدم",
    "مشهور", "موجود في قاعدة البيانات", "تعرفه",
    # name letters
    "اسمه يبدأ بحرف", "اسمه ينتهي بحرف", "اسمه يحتوي على",
    # age
    "عمره أقل من", "عمره أكثر من", "عمره يساوي",
    # league
    "دوري", "league",
]
_BANNED_NORMS = [normalize(p) for p in BANNED_QUESTION_PATTERNS]

GENERATION_SYSTEM_PROMPT = (
    "You run a 'guess the football player' game. Propose the single next move.\n"
    "Rules:\n"
    "1) Ask one short yes/no question in the same language as the history (Arabic by default), "
    "or guess a player's full name when the answers clearly point to one.\n"
    "2) Never repeat or rephrase a question that was already asked.\n"
    "3) Never guess a rejected name.\n"
    "4) No questions about gender, fame, name letters, age or leagues.\n"
    "5) Return JSON only: {\"type\": \"question\"|\"guess\", \"content\": \"...\", "
    "\"reason\": \"...\", \"confidence\": 0.0}"
)


def is_banned_question(text: str) -> bool:
    norm = normalize(text)
    if not norm:
        return True
    return any(p and p in norm for p in _BANNED_NORMS)


def transition_score(seen_count: int, success_count: int) -> float:
    rate = (success_count + 1.0) / (seen_count + 2.0)
    volume = min(1.0, math.log(seen_count + 1.0) / 4.0)
    return rate * 0.85 + volume * 0.15


def build_search_query(items: list[HistoryItem], now: Optional[datetime] = None) -> str:
    year = (now or datetime.now(timezone.utc)).year
    traits = " ".join(i.question for i in items if i.answer is AnswerKind.YES and i.question)
    if traits:
        return f"لاعب كرة قدم {traits[:100]} wikipedia {year}"
    return f"أشهر لاعبي كرة القدم {year}"


def _ts(value: Optional[datetime]) -> float:
    if value is None:
        return 0.0
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


@dataclass(frozen=True)
class TurnContext:
    items: tuple  # resolved HistoryItems
    constraints: ConstraintSet
    rejected_names: tuple
    state: CandidateState

    @property
    def last(self) -> Optional[HistoryItem]:
        for item in reversed(self.items):
            if item.normalized_question:
                return item
        return None

    @property
    def rejected_norms(self) -> frozenset:
        return frozenset(n for n in (normalize(x) for x in self.rejected_names) if n)


class FallbackChain:
    def __init__(self, store, catalog, llm, search, settings, rng: Optional[random.Random] = None):
        self.store = store
        self.catalog = catalog
        self.llm = llm
        self.search = search
        self.settings = settings
        self.rng = rng or random.Random()

    @property
    def stages(self):
        return (
            ("transition", self.from_transitions),
            ("path_mining", self.from_path_mining),
            ("early_guess", self.from_early_guess),
            ("generative", self.from_generator),
            ("static_bank", self.from_static_bank),
        )

    async def next_move(self, ctx: TurnContext) -> Move:
        skipped = []
        for name, stage in self.stages:
            try:
                move = await stage(ctx)
            except (UpstreamUnavailable, SQLAlchemyError, asyncio.TimeoutError) as exc:
                print(f"[fallback:{name}] unavailable: {type(exc).__name__}: {str(exc)[:160]}")
                move = None
            if move is not None:
                move.meta.setdefault("skipped_stages", skipped)
                return move
            skipped.append(name)
        # static bank always answers; reaching here is an internal fault
        raise RuntimeError("fallback chain produced no move")

    def _question(self, text: str, source: str, question_id: Optional[int] = None, meta: Optional[dict] = None) -> QuestionMove:
        q = self.catalog.question(question_id) or self.catalog.find_question(
            text, self.settings.question_match_threshold
        )
        return QuestionMove(
            text=text,
            attribute_id=q.attribute_id if q else None,
            question_id=q.id if q else question_id,
            source=source,
            meta=meta or {},
        )

    def _is_asked(self, ctx: TurnContext, text: str) -> bool:
        return is_near_duplicate(text, ctx.constraints.asked_norms, self.settings.near_duplicate_threshold)

    # --------------- 1. cached transitions ---------------

    async def from_transitions(self, ctx: TurnContext) -> Optional[Move]:
        last = ctx.last
        if last is None:
            return None
        edges = await asyncio.to_thread(self.store.get_transitions, last.normalized_question, last.answer.value)
        ranked = sorted(
            edges,
            key=lambda e: (-transition_score(e.seen_count, e.success_count), -e.seen_count, -_ts(e.updated_at)),
        )
        rejected = ctx.rejected_norms
        for edge in ranked:
            score = round(transition_score(edge.seen_count, edge.success_count), 4)
            if edge.next_type == "guess":
                if normalize(edge.next_text) in rejected:
                    continue
                move = GuessMove(
                    entity_name=edge.next_text,
                    confidence=round((edge.success_count + 1.0) / (edge.seen_count + 2.0), 4),
                    source="transition",
                    meta={"edge_id": edge.id, "score": score},
                )
            else:
                if self._is_asked(ctx, edge.next_text):
                    continue
                move = self._question(edge.next_text, "transition", edge.next_question_id, {"edge_id": edge.id, "score": score})
            await asyncio.to_thread(self.store.touch_transition, edge.id)
            return move
        return None

    # --------------- 2. historical path mining ---------------

    async def from_path_mining(self, ctx: TurnContext) -> Optional[Move]:
        last = ctx.last
        if last is None:
            return None
        paths = await asyncio.to_thread(self.store.recent_completed_paths, self.settings.path_mining_window)
        key = (last.normalized_question, last.answer.value)
        observations: dict[str, list] = {}  # norm -> [count, latest_ts, text]
        for path in paths:
            steps = path.steps
            for i in range(len(steps) - 1):
                if (steps[i][0], steps[i][1]) != key:
                    continue
                norm, _, text = steps[i + 1]
                obs = observations.setdefault(norm, [0, 0.0, text])
                obs[0] += 1
                obs[1] = max(obs[1], _ts(path.updated_at))
        ranked = sorted(observations.items(), key=lambda kv: (-kv[1][0], -kv[1][1]))
        for norm, (count, _, text) in ranked:
            if self._is_asked(ctx, norm):
                continue
            return self._question(text, "path_mining", meta={"observations": count})
        return None

    # --------------- 3. early guess from path similarity ---------------

    async def from_early_guess(self, ctx: TurnContext) -> Optional[Move]:
        current = set(ctx.constraints.answered_pairs)
        if len(current) < self.settings.path_min_answered:
            return None
        paths = await asyncio.to_thread(self.store.recent_completed_paths, self.settings.path_mining_window)
        rejected = ctx.rejected_norms
        aggregates: dict[str, dict] = {}
        for path in paths:
            name_norm = normalize(path.guessed_name)
            if not name_norm or name_norm in rejected:
                continue
            ratio = len(current & path.pairs) / float(len(current))
            if ratio < self.settings.path_min_ratio:
                continue
            agg = aggregates.setdefault(name_norm, {"name": path.guessed_name, "sum": 0.0, "samples": 0, "best": 0.0})
            agg["sum"] += ratio
            agg["samples"] += 1
            agg["best"] = max(agg["best"], ratio)

        ranked = []
        for agg in aggregates.values():
            if agg["samples"] < 2 and agg["best"] < 0.8:
                continue
            mean = agg["sum"] / agg["samples"]
            score = 0.7 * mean + 0.3 * agg["best"] + 0.2 * min(1.0, agg["samples"] / 5.0)
            ranked.append((score, agg))
        if not ranked:
            return None
        ranked.sort(key=lambda pair: -pair[0])
        top_score, top = ranked[0]
        second_score = ranked[1][0] if len(ranked) > 1 else 0.0
        confidence = max(0.0, min(0.99, (top_score + (top_score - second_score)) / 1.6))
        if confidence < self.settings.path_min_confidence:
            return None
        if normalize(top["name"]) in rejected:
            return None
        return GuessMove(
            entity_name=top["name"],
            confidence=round(confidence, 4),
            source="early_guess",
            meta={"samples": top["samples"], "best_ratio": round(top["best"], 4)},
        )

    # --------------- 4. generative ---------------

    def _generation_prompt(self, ctx: TurnContext, avoid: list[str], evidence: Optional[str]) -> str:
        history = [{"question": i.question, "answer": i.answer.value} for i in ctx.items if i.question]
        parts = [
            "History (question -> answer):",
            json.dumps(history, ensure_ascii=False, indent=2),
            "Rejected guesses: " + (", ".join(ctx.rejected_names) or "(none)"),
            f"Remaining candidates in the knowledge base: {ctx.state.candidate_count}",
        ]
        if ctx.state.top_entity_name:
            parts.append(f"Current best candidate: {ctx.state.top_entity_name}")
        if evidence:
            parts.append("Web context (may be incomplete):\n" + evidence)
        if avoid:
            parts.append("Your previous answer was unusable. Avoid exactly these: " + " | ".join(avoid))
        parts.append("Return JSON only.")
        return "\n\n".join(parts)

    def _register_generated(self, text: str) -> tuple[Optional[int], Optional[int]]:
        existing = self.catalog.find_question(text, self.settings.question_match_threshold)
        if existing is not None:
            return existing.attribute_id, existing.id
        norm = normalize(text)
        attribute = self.store.upsert_attribute(
            key="generated",
            value=text,
            label=text,
            group=f"generated:{norm}",
            is_exclusive=False,
            source="generated",
        )
        if attribute is None:
            return None, None
        question = self.store.upsert_question(attribute.id, text)
        return attribute.id, question.id if question else None

    async def from_generator(self, ctx: TurnContext) -> Optional[Move]:
        if not getattr(self.llm, "available", False):
            return None
        evidence = None
        if getattr(self.search, "available", False) and any(i.answer is AnswerKind.YES for i in ctx.items):
            evidence = await self.search.search(build_search_query(list(ctx.items)))

        avoid: list[str] = []
        rejected = ctx.rejected_norms
        for attempt in range(2):
            result = await self.llm.generate_json(
                self._generation_prompt(ctx, avoid, evidence),
                system_prompt=GENERATION_SYSTEM_PROMPT,
                schema=GeneratedMove,
                stage="fallback_generate",
            )
            if not result.ok:
                continue
            proposal: GeneratedMove = result.value
            content = " ".join(proposal.content.split())
            if proposal.type == "guess":
                if normalize(content) in rejected:
                    avoid.append(content)
                    continue
                return GuessMove(
                    entity_name=content,
                    confidence=round(proposal.confidence if proposal.confidence is not None else 0.5, 4),
                    source="generative",
                    meta={"attempt": attempt + 1, "reason": proposal.reason},
                )
            if is_banned_question(content) or self._is_asked(ctx, content) or is_near_duplicate(
                content, avoid, self.settings.near_duplicate_threshold
            ):
                avoid.append(content)
                continue
            try:
                attribute_id, question_id = await asyncio.to_thread(self._register_generated, content)
            except UpstreamUnavailable as exc:
                print(f"[fallback:generative] could not register question: {exc}")
                attribute_id, question_id = None, None
            return QuestionMove(
                text=content,
                attribute_id=attribute_id,
                question_id=question_id,
                source="generative",
                meta={"attempt": attempt + 1, "reason": proposal.reason},
            )
        return None

    # --------------- 5. static bank ---------------

    def static_bank_question(self, asked_norms) -> str:
        threshold = self.settings.near_duplicate_threshold
        for text in FALLBACK_QUESTIONS:
            if not is_near_duplicate(text, asked_norms, threshold):
                return text
        fresh = [t for t in STRATEGIC_QUESTIONS if not is_near_duplicate(t, asked_norms, threshold)]
        if fresh:
            return self.rng.choice(fresh)
        return self.rng.choice(FALLBACK_QUESTIONS + STRATEGIC_QUESTIONS)

    async def from_static_bank(self, ctx: TurnContext) -> Move:
        return self._question(self.static_bank_question(ctx.constraints.asked_norms), "static_bank")
