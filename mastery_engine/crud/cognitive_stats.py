from sqlalchemy.orm import Session
from mastery_engine.models import DailyCognitiveStats
from mastery_engine.schemas import DailySummary
from mastery_engine.database import commit_or_raise, utcnow
from datetime import date
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class AttentionConfig:
    """Maps attention pauses in a session to an attention percentage"""
    PAUSE_PERCENT = {0: 100, 1: 80, 2: 50}

    @staticmethod
    def percent_for_pauses(pauses: int) -> int:
        return AttentionConfig.PAUSE_PERCENT.get(max(0, pauses), 0)


def get_or_create_day(db: Session, day: date) -> DailyCognitiveStats:
    """Get the stats row of a day, creating it on first use"""
    stats = db.query(DailyCognitiveStats).filter(DailyCognitiveStats.day == day).first()
    if stats:
        return stats
    stats = DailyCognitiveStats(
        day=day,
        bcal_total=0,
        answered_count=0,
        correct_count=0,
        attention_pauses=0,
        attention_percent_sum=0,
        sessions_completed=0
    )
    db.add(stats)
    return stats

def add_session_totals(
    db: Session,
    bcal: int,
    correct: int,
    total: int,
    attention_pauses: int = 0,
    day: Optional[date] = None
) -> DailyCognitiveStats:
    """Add a completed session's BCal, accuracy and attention to the day's totals"""
    day = day or utcnow().date()
    stats = get_or_create_day(db, day)
    stats.bcal_total += max(0, bcal)
    stats.answered_count += max(0, total)
    stats.correct_count += max(0, correct)
    stats.attention_pauses += max(0, attention_pauses)
    stats.attention_percent_sum += AttentionConfig.percent_for_pauses(attention_pauses)
    stats.sessions_completed += 1
    commit_or_raise(db, "add daily cognitive stats")
    db.refresh(stats)
    logger.debug("Day %s: %d BCal over %d session(s)", day, stats.bcal_total, stats.sessions_completed)
    return stats

def get_day_totals(db: Session, day: Optional[date] = None) -> DailySummary:
    """Get BCal, accuracy and attention totals for a day; zeros when nothing was recorded"""
    day = day or utcnow().date()
    stats = db.query(DailyCognitiveStats).filter(DailyCognitiveStats.day == day).first()
    if stats is None:
        return DailySummary(
            day=day,
            bcal_total=0,
            answered_count=0,
            correct_count=0,
            accuracy_percent=0,
            attention_pauses=0,
            attention_percent=100,
            sessions_completed=0
        )

    accuracy = round(100 * stats.correct_count / stats.answered_count) if stats.answered_count else 0
    attention = round(stats.attention_percent_sum / stats.sessions_completed) if stats.sessions_completed else 100
    return DailySummary(
        day=day,
        bcal_total=stats.bcal_total,
        answered_count=stats.answered_count,
        correct_count=stats.correct_count,
        accuracy_percent=accuracy,
        attention_pauses=stats.attention_pauses,
        attention_percent=attention,
        sessions_completed=stats.sessions_completed
    )
