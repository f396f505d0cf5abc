"""Value types shared by the engine, the store gateway and the routes."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class UpstreamUnavailable(Exception):
    """A store, generation or search collaborator did not answer in time."""


class AnswerKind(str, Enum):
    YES = "yes"
    NO = "no"
    MAYBE = "maybe"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value) -> Optional["AnswerKind"]:
        if isinstance(value, AnswerKind):
            return value
        if isinstance(value, bool):
            return cls.YES if value else cls.NO
        v = " ".join(str(value or "").split()).strip().lower()
        if not v:
            return None
        return _ANSWER_ALIASES.get(v)

    @property
    def as_bool(self) -> Optional[bool]:
        if self is AnswerKind.YES:
            return True
        if self is AnswerKind.NO:
            return False
        return None


_ANSWER_ALIASES = {
    "yes": AnswerKind.YES, "y": AnswerKind.YES, "true": AnswerKind.YES, "نعم": AnswerKind.YES,
    "no": AnswerKind.NO, "n": AnswerKind.NO, "false": AnswerKind.NO, "لا": AnswerKind.NO,
    "maybe": AnswerKind.MAYBE, "ربما": AnswerKind.MAYBE, "جزئيا": AnswerKind.MAYBE, "جزئياً": AnswerKind.MAYBE,
    "unknown": AnswerKind.UNKNOWN, "idk": AnswerKind.UNKNOWN, "لا اعرف": AnswerKind.UNKNOWN, "لا أعرف": AnswerKind.UNKNOWN,
}


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    WON = "won"
    LOST = "lost"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class HistoryItem:
    question: str
    normalized_question: str
    answer: AnswerKind
    attribute_id: Optional[int] = None
    question_id: Optional[int] = None
    response_time: Optional[float] = None

    def to_json(self) -> dict:
        return {
            "question": self.question,
            "normalized_question": self.normalized_question,
            "answer": self.answer.value,
            "feature_id": self.attribute_id,
            "question_id": self.question_id,
            "response_time": self.response_time,
        }


# --------------- Moves ---------------

@dataclass(frozen=True)
class QuestionMove:
    text: str
    attribute_id: Optional[int] = None
    question_id: Optional[int] = None
    source: str = "selector"
    meta: dict = field(default_factory=dict)

    kind = "question"


@dataclass(frozen=True)
class GuessMove:
    entity_name: str
    confidence: float
    entity_id: Optional[int] = None
    source: str = "selector"
    meta: dict = field(default_factory=dict)

    kind = "guess"


Move = Union[QuestionMove, GuessMove]


# --------------- Store records ---------------

@dataclass(frozen=True)
class EntityRecord:
    id: int
    name: str
    normalized_name: str
    prior_weight: float = 1.0
    image_url: Optional[str] = None


@dataclass(frozen=True)
class AttributeRecord:
    id: int
    key: str
    value: str
    label: str
    group: str
    is_exclusive: bool
    source: str = "seed"

    @property
    def is_generated(self) -> bool:
        return self.source == "generated"


@dataclass(frozen=True)
class QuestionRecord:
    id: int
    attribute_id: int
    text: str
    normalized_text: str
    manual_weight: float = 0.0
    success_count: int = 0


@dataclass(frozen=True)
class CandidateSummary:
    candidate_count: int
    top_entity_id: Optional[int]
    top_entity_name: Optional[str]
    total_weight: float
    top_weight: float

    @classmethod
    def empty(cls) -> "CandidateSummary":
        return cls(0, None, None, 0.0, 0.0)


@dataclass(frozen=True)
class AttributeStat:
    attribute_id: int
    true_count: int
    known_count: int
    total_count: int


@dataclass(frozen=True)
class TransitionRecord:
    id: int
    from_question_norm: str
    answer: str
    next_type: str
    next_text: str
    next_question_id: Optional[int]
    seen_count: int
    success_count: int
    updated_at: Optional[datetime]


@dataclass(frozen=True)
class CompletedPath:
    session_id: str
    guessed_name: str
    steps: tuple  # ((normalized_question, answer, question_text), ...)
    updated_at: Optional[datetime]

    @property
    def pairs(self) -> frozenset:
        return frozenset((norm, answer) for norm, answer, _ in self.steps)
