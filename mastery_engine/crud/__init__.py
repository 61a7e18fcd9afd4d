from mastery_engine.crud.concept import (
    create_book,
    get_book,
    create_concept,
    get_concept,
    list_concepts
)
from mastery_engine.crud.coverage import (
    get_coverage,
    get_or_create_coverage,
    list_coverage,
    is_fully_covered,
    is_mastered,
    record_responses,
    mark_mastered_if_earned,
    delete_concept_data,
    delete_book_data
)
from mastery_engine.crud.review_queue import (
    DailyReviewItems,
    add_mistakes,
    add_probe_item,
    completion_outcome,
    get_daily_items,
    get_queue_statistics,
    mark_completed
)
from mastery_engine.crud.cognitive_stats import AttentionConfig, add_session_totals, get_day_totals

__all__ = [
    "create_book",
    "get_book",
    "create_concept",
    "get_concept",
    "list_concepts",
    "get_coverage",
    "get_or_create_coverage",
    "list_coverage",
    "is_fully_covered",
    "is_mastered",
    "record_responses",
    "mark_mastered_if_earned",
    "delete_concept_data",
    "delete_book_data",
    "DailyReviewItems",
    "add_mistakes",
    "add_probe_item",
    "completion_outcome",
    "get_daily_items",
    "get_queue_statistics",
    "mark_completed",
    "AttentionConfig",
    "add_session_totals",
    "get_day_totals"
]
