import random
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import mastery_engine.models  # noqa: F401
from mastery_engine.bcal import BCalEngine
from mastery_engine.config import Settings
from mastery_engine.crud import create_book, create_concept
from mastery_engine.database import Base
from mastery_engine.generator import BaseQuestionGenerator
from mastery_engine.practice import PracticeSessionManager
from mastery_engine.schemas import (
    LESSON_SLOTS,
    BookCreate,
    Category,
    ConceptCreate,
    Difficulty,
    Importance,
    QuestionType,
    ScoredResponse
)
from mastery_engine.spaced_retrieval import SpacedRetrievalScheduler

NOW = datetime(2026, 3, 10, 9, 0, 0)


def mcq_payload(category: str, difficulty: str, text: str = None) -> dict:
    return {
        "category": category,
        "question_type": "MCQ",
        "difficulty": difficulty,
        "text": text or f"Which statement best fits the {category} view of the idea?",
        "options": [f"{category} answer choice {n}" for n in range(1, 5)],
        "correct_index": 0,
    }


def open_payload(category: str, difficulty: str, text: str = None) -> dict:
    return {
        "category": category,
        "question_type": "OpenEnded",
        "difficulty": difficulty,
        "text": text or f"Explain the idea from the {category} angle.",
        "options": None,
        "correct_index": None,
    }


def lesson_payload() -> dict:
    questions = []
    for slot in LESSON_SLOTS:
        if slot.question_type == QuestionType.MCQ:
            questions.append(mcq_payload(slot.category.value, slot.difficulty.value))
        else:
            questions.append(open_payload(slot.category.value, slot.difficulty.value))
    return {"questions": questions}


class FakeGenerator(BaseQuestionGenerator):
    """Generator whose model calls return scripted payloads"""

    def __init__(self, scripted=None, fail_all=False):
        super().__init__(max_attempts=2, rng=random.Random(7))
        self.scripted = {kind: list(items) for kind, items in (scripted or {}).items()}
        self.fail_all = fail_all
        self.calls = []

    async def _invoke(self, kind, system_prompt, human_prompt, parser, variables):
        self.calls.append(kind)
        if self.fail_all:
            raise RuntimeError("model unavailable")
        queue = self.scripted.get(kind)
        if queue:
            result = queue.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return self.default_payload(kind, variables)

    @staticmethod
    def default_payload(kind, variables):
        if kind == "concept":
            return lesson_payload()
        if kind == "probe":
            return open_payload(variables["category"], variables["difficulty"], f"Recall {variables['title']}")
        if variables["question_type"] == "MCQ":
            return mcq_payload(variables["category"], variables["difficulty"])
        return open_payload(variables["category"], variables["difficulty"])


def make_response(
    concept_id: str,
    category,
    is_correct: bool = True,
    difficulty=Difficulty.MEDIUM,
    question_type=QuestionType.MCQ,
    **kwargs
) -> ScoredResponse:
    return ScoredResponse(
        question_id=kwargs.pop("question_id", f"q-{concept_id}-{Category(category).value}"),
        concept_id=concept_id,
        category=category,
        question_type=question_type,
        difficulty=difficulty,
        is_correct=is_correct,
        **kwargs
    )


def full_coverage_responses(concept_id: str):
    """One correct response per lesson slot"""
    return [
        make_response(concept_id, slot.category, True, slot.difficulty, slot.question_type)
        for slot in LESSON_SLOTS
    ]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        session_poll_attempts=3,
        session_poll_interval_seconds=0.0,
        curveball_retry_days=None
    )


@pytest.fixture
def book(db):
    book = create_book(db, BookCreate(id="b1", title="Deep Work", author="Cal Newport"))
    for n, importance in [(1, Importance.FOUNDATION), (2, None), (3, Importance.ENHANCEMENT), (10, None)]:
        create_concept(db, ConceptCreate(
            id=f"b1i{n}",
            book_id="b1",
            title=f"Idea {n}",
            description=f"Description of idea {n}",
            importance=importance
        ))
    return book


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def scheduler(test_settings):
    return SpacedRetrievalScheduler(test_settings)


@pytest.fixture
def manager(db, generator, scheduler, test_settings, session_factory):
    return PracticeSessionManager(
        db,
        generator,
        scheduler=scheduler,
        scorer=BCalEngine(),
        settings=test_settings,
        session_factory=session_factory
    )
