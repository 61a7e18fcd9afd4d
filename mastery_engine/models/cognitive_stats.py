from sqlalchemy import Column, Integer, Date
from mastery_engine.database import Base

class DailyCognitiveStats(Base):
    """Per-day BCal, accuracy and attention totals"""
    __tablename__ = "daily_cognitive_stats"

    id = Column(Integer, primary_key=True, index=True)
    day = Column(Date, nullable=False, unique=True, index=True)
    bcal_total = Column(Integer, default=0)
    answered_count = Column(Integer, default=0)
    correct_count = Column(Integer, default=0)
    attention_pauses = Column(Integer, default=0)
    attention_percent_sum = Column(Integer, default=0)  # per-session attention %, summed
    sessions_completed = Column(Integer, default=0)
