from mastery_engine.models.book import Book, Concept
from mastery_engine.models.coverage import ConceptCoverage
from mastery_engine.models.review_queue import ReviewQueueItem
from mastery_engine.models.practice_session import PracticeSession, SessionQuestion
from mastery_engine.models.session_response import SessionResponse
from mastery_engine.models.cognitive_stats import DailyCognitiveStats

__all__ = [
    "Book",
    "Concept",
    "ConceptCoverage",
    "ReviewQueueItem",
    "PracticeSession",
    "SessionQuestion",
    "SessionResponse",
    "DailyCognitiveStats"
]
