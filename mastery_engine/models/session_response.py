from sqlalchemy import Column, Integer, String, Text, Float, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from mastery_engine.database import Base

class SessionResponse(Base):
    """Write-once answer snapshot for one question attempt"""
    __tablename__ = "session_responses"
    __table_args__ = (UniqueConstraint("question_id", "attempt_number", name="uq_response_attempt"),)

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String, ForeignKey("practice_sessions.id"), nullable=False, index=True)
    question_id = Column(String, ForeignKey("session_questions.id"), nullable=False)
    attempt_number = Column(Integer, nullable=False, default=1)

    is_correct = Column(Boolean, nullable=False)
    latency_seconds = Column(Float)  # None: default latency per question type
    hint_used = Column(Boolean, default=False)
    answer_changes = Column(Integer, default=0)
    answer_text = Column(Text)
    answered_at = Column(DateTime, default=datetime.utcnow)

    session = relationship("PracticeSession", back_populates="responses")
    question = relationship("SessionQuestion")
