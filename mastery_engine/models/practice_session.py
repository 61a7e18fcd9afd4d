from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from mastery_engine.database import Base
from mastery_engine.models.types import SessionConfigType, OptionList
from mastery_engine.schemas import SessionConfig

class PracticeSession(Base):
    """Generated practice session for a concept or the daily review bundle"""
    __tablename__ = "practice_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    concept_id = Column(String, nullable=False, index=True)  # or "review" for review bundles
    book_id = Column(String, nullable=False, index=True)
    session_type = Column(String, nullable=False)  # lesson_practice or review_practice
    status = Column(String, nullable=False, default="generating")

    config = Column(SessionConfigType, nullable=False, default=lambda: SessionConfig())
    config_version = Column(Integer, default=1)
    error_message = Column(Text)

    current_index = Column(Integer, default=0)
    attention_pauses = Column(Integer, default=0)
    brain_calories = Column(Integer)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)

    questions = relationship(
        "SessionQuestion",
        back_populates="session",
        order_by="SessionQuestion.order_index",
        cascade="all, delete-orphan"
    )
    responses = relationship(
        "SessionResponse",
        back_populates="session",
        cascade="all, delete-orphan"
    )


class SessionQuestion(Base):
    """One ordered question inside a practice session"""
    __tablename__ = "session_questions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String, ForeignKey("practice_sessions.id"), nullable=False, index=True)
    concept_id = Column(String, nullable=False)
    order_index = Column(Integer, nullable=False)

    question_type = Column(String, nullable=False)
    difficulty = Column(String, nullable=False)
    category = Column(String, nullable=False)
    text = Column(Text, nullable=False)
    options = Column(OptionList)
    correct_index = Column(Integer)

    is_review = Column(Boolean, default=False)
    is_curveball = Column(Boolean, default=False)
    is_spaced_follow_up = Column(Boolean, default=False)
    source_queue_item_id = Column(String)  # review_queue_items.id, repaired by reconciliation

    session = relationship("PracticeSession", back_populates="questions")
