from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, UniqueConstraint
from mastery_engine.database import Base
from mastery_engine.models.types import CategorySet, ReviewStateType

class ConceptCoverage(Base):
    """Per-concept category coverage plus the spaced follow-up and curveball tracks"""
    __tablename__ = "concept_coverage"
    __table_args__ = (UniqueConstraint("concept_id", "book_id", name="uq_coverage_concept_book"),)

    id = Column(Integer, primary_key=True, index=True)
    concept_id = Column(String, nullable=False, index=True)
    book_id = Column(String, nullable=False, index=True)

    covered_categories = Column(CategorySet, nullable=False, default=lambda: set())
    total_questions_seen = Column(Integer, default=0)
    total_questions_correct = Column(Integer, default=0)
    mistakes_count = Column(Integer, default=0)
    current_accuracy = Column(Float, default=0.0)  # percent

    # Spaced follow-up track
    spaced_follow_up_due_date = Column(DateTime)
    spaced_follow_up_passed_at = Column(DateTime)
    spaced_follow_up_bloom = Column(String)  # category snapshot of the hardest correct answer
    spaced_follow_up_difficulty = Column(String)

    # Curveball track
    curveball_due_date = Column(DateTime)
    curveball_passed = Column(Boolean, default=False)
    curveball_passed_at = Column(DateTime)
    curveball_failed_at = Column(DateTime)

    review_state = Column(ReviewStateType)  # memory model, set at first full coverage

    first_attempt_at = Column(DateTime)
    last_attempt_at = Column(DateTime)
    covered_at = Column(DateTime)
    mastered_at = Column(DateTime)  # sticky; also marks the celebration as shown

    @property
    def coverage_percentage(self) -> float:
        return len(self.covered_categories or ()) / 8 * 100
