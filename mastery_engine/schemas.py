from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, NamedTuple
from datetime import date, datetime
from enum import Enum


class Category(str, Enum):
    """The fixed taxonomy of cognitive-skill labels a question is classified under"""
    RECALL = "Recall"
    APPLY = "Apply"
    WHY_IMPORTANT = "WhyImportant"
    WHEN_USE = "WhenUse"
    CONTRAST = "Contrast"
    REFRAME = "Reframe"
    CRITIQUE = "Critique"
    HOW_WIELD = "HowWield"


ALL_CATEGORIES = frozenset(Category)


class QuestionType(str, Enum):
    MCQ = "MCQ"
    OPEN_ENDED = "OpenEnded"


class Difficulty(str, Enum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"

    @property
    def point_value(self) -> int:
        return {"Easy": 10, "Medium": 15, "Hard": 25}[self.value]


class SessionStatus(str, Enum):
    GENERATING = "generating"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


RESUMABLE_STATUSES = (SessionStatus.READY, SessionStatus.IN_PROGRESS, SessionStatus.PAUSED)


class SessionType(str, Enum):
    LESSON_PRACTICE = "lesson_practice"
    REVIEW_PRACTICE = "review_practice"


# Key used in place of a concept id for review-bundle sessions
REVIEW_BUNDLE_KEY = "review"


class Importance(str, Enum):
    FOUNDATION = "foundation"
    BUILDING_BLOCK = "building_block"
    ENHANCEMENT = "enhancement"


class SlotSpec(NamedTuple):
    category: Category
    difficulty: Difficulty
    question_type: QuestionType


# Fixed layout of the 8 fresh questions generated for a concept (Q1..Q8)
LESSON_SLOTS = [
    SlotSpec(Category.RECALL, Difficulty.EASY, QuestionType.MCQ),
    SlotSpec(Category.APPLY, Difficulty.EASY, QuestionType.MCQ),
    SlotSpec(Category.WHY_IMPORTANT, Difficulty.MEDIUM, QuestionType.MCQ),
    SlotSpec(Category.WHEN_USE, Difficulty.MEDIUM, QuestionType.MCQ),
    SlotSpec(Category.CONTRAST, Difficulty.MEDIUM, QuestionType.MCQ),
    SlotSpec(Category.REFRAME, Difficulty.MEDIUM, QuestionType.OPEN_ENDED),
    SlotSpec(Category.CRITIQUE, Difficulty.HARD, QuestionType.MCQ),
    SlotSpec(Category.HOW_WIELD, Difficulty.HARD, QuestionType.OPEN_ENDED),
]


def numeric_id_sort_key(concept_id: str):
    """
    Natural ordering for concept ids such as "i3", "b1i3" or "b5i10".

    Uses the number after the last "i"; ids without one sort first.
    """
    _, sep, tail = concept_id.rpartition("i")
    return (int(tail) if sep and tail.isdigit() else 0, concept_id)


class BookCreate(BaseModel):
    """Schema for registering a book"""
    id: str
    title: str
    author: Optional[str] = None


class ConceptCreate(BaseModel):
    """Schema for registering a concept extracted from a book"""
    id: str
    book_id: str
    title: str
    description: str = ""
    importance: Optional[Importance] = None


class QuestionDraft(BaseModel):
    """A validated question descriptor returned by the generator"""
    question_type: QuestionType
    difficulty: Difficulty
    category: Category
    text: str
    options: Optional[List[str]] = None
    correct_index: Optional[int] = None


class ScoredResponse(BaseModel):
    """One answered question, as consumed by the coverage store and review queue"""
    question_id: str
    concept_id: str
    category: Category
    question_type: QuestionType
    difficulty: Difficulty
    is_correct: bool
    question_text: str = ""
    is_review: bool = False
    is_curveball: bool = False
    is_spaced_follow_up: bool = False
    latency_seconds: Optional[float] = None
    hint_used: bool = False
    answer_changes: int = 0


class SessionConfig(BaseModel):
    """Fingerprint of the review items bundled into a session"""
    review_item_ids: List[str] = Field(default_factory=list)

    @classmethod
    def from_item_ids(cls, item_ids) -> "SessionConfig":
        return cls(review_item_ids=sorted(set(item_ids)))


class QueueStatistics(BaseModel):
    """Pending review counts for a book"""
    total_mcqs: int
    total_open_ended: int

    @property
    def total(self) -> int:
        return self.total_mcqs + self.total_open_ended


class QuestionView(BaseModel):
    """Schema for a session question shown to the learner"""
    id: str
    concept_id: str
    order_index: int
    question_type: QuestionType
    difficulty: Difficulty
    category: Category
    text: str
    options: Optional[List[str]] = None
    is_review: bool
    is_curveball: bool
    is_spaced_follow_up: bool

    model_config = ConfigDict(from_attributes=True)


class SessionView(BaseModel):
    """Current session state and ordered question list"""
    id: str
    concept_id: str
    book_id: str
    session_type: SessionType
    status: SessionStatus
    current_index: int
    questions: List[QuestionView]
    answered_question_ids: List[str]
    error_message: Optional[str] = None


class SessionOutcome(BaseModel):
    """Result of completing a practice session"""
    session_id: str
    brain_calories: int
    correct: int
    total: int
    attention_pauses: int
    touched_concept_ids: List[str]
    celebration_queue: List[str]  # concept ids newly mastered, natural numeric order
    new_review_items: int

    @property
    def accuracy_percent(self) -> int:
        return round(100 * self.correct / self.total) if self.total else 0


class ConceptProgress(BaseModel):
    """Per-concept coverage summary for list rendering"""
    concept_id: str
    title: str
    coverage_percentage: float
    current_accuracy: float
    is_fully_covered: bool
    is_mastered: bool
    spaced_follow_up_due_date: Optional[datetime] = None
    curveball_due_date: Optional[datetime] = None
    next_review_date: Optional[datetime] = None


class DailySummary(BaseModel):
    """Daily aggregate totals"""
    day: date
    bcal_total: int
    answered_count: int
    correct_count: int
    accuracy_percent: int
    attention_pauses: int
    attention_percent: int
    sessions_completed: int
