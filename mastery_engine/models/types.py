"""
Column types for structured fields.

Category sets, memory-model state, session config fingerprints and MCQ
options are plain Python values on the ORM objects; they are converted to
JSON only when bound to or read from the database.
"""

from sqlalchemy.types import TypeDecorator, JSON

from mastery_engine.fsrs import ReviewState
from mastery_engine.schemas import Category, SessionConfig


class CategorySet(TypeDecorator):
    """set[Category] stored as a sorted JSON list"""
    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return []
        return sorted(Category(c).value for c in value)

    def process_result_value(self, value, dialect):
        return {Category(c) for c in (value or [])}


class ReviewStateType(TypeDecorator):
    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return value.model_dump(mode="json")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return ReviewState.model_validate(value)


class SessionConfigType(TypeDecorator):
    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return (value or SessionConfig()).model_dump(mode="json")

    def process_result_value(self, value, dialect):
        return SessionConfig.model_validate(value or {})


class OptionList(TypeDecorator):
    """Optional list of MCQ option strings"""
    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return list(value) if value is not None else None

    def process_result_value(self, value, dialect):
        return list(value) if value is not None else None
