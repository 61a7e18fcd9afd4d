from sqlalchemy import Column, String, Text, Boolean, DateTime
from datetime import datetime
import uuid
from mastery_engine.database import Base

class ReviewQueueItem(Base):
    """Missed question or scheduled probe awaiting re-presentation"""
    __tablename__ = "review_queue_items"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    concept_id = Column(String, nullable=False, index=True)
    concept_title = Column(String, default="")
    book_id = Column(String, nullable=False, index=True)

    question_type = Column(String, nullable=False)  # MCQ or OpenEnded
    difficulty = Column(String, nullable=False)
    category = Column(String, nullable=False)
    concept_tested = Column(String, nullable=False)  # "<Category>-<Difficulty>"
    original_question_text = Column(Text, default="")

    is_curveball = Column(Boolean, default=False)
    is_spaced_follow_up = Column(Boolean, default=False)
    is_completed = Column(Boolean, default=False, index=True)

    added_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)

    @property
    def is_probe(self) -> bool:
        return bool(self.is_curveball or self.is_spaced_follow_up)
