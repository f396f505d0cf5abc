from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import Any, Optional, Union


# Game Schemas
class HistoryEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    question: Optional[str] = ""
    answer: Union[str, bool, None] = None
    feature_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("feature_id", "featureId"))
    question_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("question_id", "questionId"))
    normalized_question: Optional[str] = None
    response_time: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("response_time", "responseTime")
    )


class GameRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    history: list[HistoryEntry] = Field(default_factory=list)
    rejected_guesses: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("rejectedGuesses", "rejected_guesses")
    )
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sessionId", "session_id"))


class GameResponse(BaseModel):
    type: str  # question | guess
    content: str
    session_id: str
    question_id: Optional[int] = None
    feature_id: Optional[int] = None
    confidence: Optional[float] = None
    meta: Optional[dict[str, Any]] = None
    imageUrl: Optional[str] = None


class ConfirmRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    history: list[HistoryEntry] = Field(default_factory=list)
    guess: str = Field(min_length=1)
    correct: bool
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sessionId", "session_id"))
    give_up: bool = Field(default=False, validation_alias=AliasChoices("giveUp", "give_up"))


class ConfirmResponse(BaseModel):
    ok: bool
    correct: bool
    stored: bool
    reviewRequired: bool
    verification: Optional[dict[str, Any]] = None
    imageUrl: Optional[str] = None
    sessionId: Optional[str] = None
    playerId: Optional[int] = None
    reason: Optional[str] = None  # wrong_guess | high_confidence_reject
    rejectedGuesses: Optional[list[str]] = None


class ConfirmFinalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    history: list[HistoryEntry] = Field(default_factory=list)
    guess: str = Field(min_length=1)
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sessionId", "session_id"))


class ConfirmFinalResponse(BaseModel):
    ok: bool
    stored: bool
    playerId: Optional[int] = None
    imageUrl: Optional[str] = None
    sessionId: Optional[str] = None


# Health / admin Schemas
class HealthResponse(BaseModel):
    status: str
    llmConfigured: bool
    serperConfigured: bool
    searchProvider: str
    gapFillEnabled: bool
    catalogLoaded: bool
    matrixLoaded: bool
