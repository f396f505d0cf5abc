from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, Float, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base


class Entity(Base):
    __tablename__ = "entities"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    normalized_name = Column(String(200), unique=True, index=True, nullable=False)
    prior_weight = Column(Float, nullable=False, default=1.0)
    image_url = Column(Text, nullable=True)
    win_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    facts = relationship("EntityAttribute", back_populates="entity", cascade="all, delete-orphan")


class Attribute(Base):
    __tablename__ = "attributes"
    __table_args__ = (UniqueConstraint("normalized_key", "normalized_value", name="uq_attribute_key_value"),)

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), nullable=False)  # position, league, club ...
    value = Column(String(200), nullable=False)
    label = Column(String(200), nullable=False)
    group_name = Column(String(100), nullable=False, index=True)
    is_exclusive = Column(Boolean, nullable=False, default=False)
    normalized_key = Column(String(100), nullable=False)
    normalized_value = Column(String(200), nullable=False)
    source = Column(String(32), nullable=False, default="seed")  # seed | generated
    success_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    questions = relationship("Question", back_populates="attribute", cascade="all, delete-orphan")
    facts = relationship("EntityAttribute", back_populates="attribute", cascade="all, delete-orphan")


class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (UniqueConstraint("attribute_id", "normalized_text", name="uq_question_attribute_text"),)

    id = Column(Integer, primary_key=True, index=True)
    attribute_id = Column(Integer, ForeignKey("attributes.id"), nullable=False, index=True)
    text = Column(Text, nullable=False)
    normalized_text = Column(String(400), nullable=False, index=True)
    manual_weight = Column(Float, nullable=False, default=0.0)
    seen_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    attribute = relationship("Attribute", back_populates="questions")


class EntityAttribute(Base):
    __tablename__ = "entity_attributes"
    __table_args__ = (UniqueConstraint("entity_id", "attribute_id", name="uq_entity_attribute"),)

    id = Column(Integer, primary_key=True, index=True)
    entity_id = Column(Integer, ForeignKey("entities.id"), nullable=False, index=True)
    attribute_id = Column(Integer, ForeignKey("attributes.id"), nullable=False, index=True)
    value = Column(Boolean, nullable=False)
    source = Column(String(32), nullable=False, default="seed")  # seed | confirmed | llm
    confidence = Column(Float, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    entity = relationship("Entity", back_populates="facts")
    attribute = relationship("Attribute", back_populates="facts")


class GameSession(Base):
    __tablename__ = "game_sessions"

    id = Column(String(36), primary_key=True, index=True)  # uuid4
    status = Column(String(16), nullable=False, default="in_progress", index=True)
    history = Column(JSON, nullable=False, default=list)
    rejected_names = Column(JSON, nullable=False, default=list)
    question_count = Column(Integer, nullable=False, default=0)
    guessed_name = Column(String(200), nullable=True)
    guessed_entity_id = Column(Integer, ForeignKey("entities.id"), nullable=True)
    correct = Column(Boolean, nullable=True)
    behavior_profile = Column(String(32), nullable=True)  # impulsive | analytical | normal
    consistency_score = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), index=True)


class SessionSnapshot(Base):
    __tablename__ = "session_snapshots"

    session_id = Column(String(36), ForeignKey("game_sessions.id"), primary_key=True)
    constraints = Column(JSON, nullable=False, default=dict)
    asked_attribute_ids = Column(JSON, nullable=False, default=list)
    asked_question_norms = Column(JSON, nullable=False, default=list)
    rejected_names = Column(JSON, nullable=False, default=list)
    candidate_count = Column(Integer, nullable=False, default=0)
    top_candidate = Column(String(200), nullable=True)
    top_probability = Column(Float, nullable=False, default=0.0)
    last_move = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class TransitionEdge(Base):
    __tablename__ = "transition_edges"
    __table_args__ = (
        UniqueConstraint("from_question_norm", "answer", "next_type", "next_key", name="uq_transition"),
    )

    id = Column(Integer, primary_key=True, index=True)
    from_question_norm = Column(String(400), nullable=False, index=True)
    answer = Column(String(16), nullable=False)
    next_type = Column(String(16), nullable=False)  # question | guess
    next_key = Column(String(400), nullable=False)
    next_text = Column(Text, nullable=False)
    next_question_id = Column(Integer, ForeignKey("questions.id"), nullable=True)
    seen_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class LearningQueueItem(Base):
    __tablename__ = "learning_queue"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(36), nullable=True, index=True)
    guess_name = Column(String(200), nullable=False)
    reason = Column(String(32), nullable=False)  # high_confidence_reject | wrong_guess
    confidence = Column(Float, nullable=False, default=0.0)
    history = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
