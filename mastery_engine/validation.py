import random
import re
from typing import List, Optional

from mastery_engine.config import settings
from mastery_engine.exceptions import InvalidQuestionError
from mastery_engine.schemas import QuestionDraft, QuestionType

MCQ_OPTION_COUNT = 4

# Meta answers that can be reasoned about without knowing the content
DISALLOWED_OPTIONS = {
    "all of the above",
    "none of the above",
    "both a and b",
    "all of these",
    "none of these",
}

_LABEL_PREFIX = re.compile(
    r"^\s*(?:\(\s*(?:option\s*)?[a-d1-4]\s*\)|(?:option\s*)?[a-d1-4]\s*[\.\):\-](?=\s|$))\s*",
    re.IGNORECASE
)
_LABEL_ONLY = re.compile(r"^\s*\(?\s*(?:option\s*)?[a-d1-4]\s*[\.\):\-]?\s*$", re.IGNORECASE)


class OptionSanitizer:
    """Strips answer labels such as "A." or "Option 1)" from MCQ options"""

    @staticmethod
    def is_label_only(option: str) -> bool:
        return bool(_LABEL_ONLY.match(option))

    @staticmethod
    def sanitize(option: str) -> str:
        if OptionSanitizer.is_label_only(option):
            return ""
        return _LABEL_PREFIX.sub("", option, count=1).strip()

    @staticmethod
    def sanitize_all(options: List[str]) -> List[str]:
        return [OptionSanitizer.sanitize(str(o)) for o in options]


def validate_draft(
    draft: QuestionDraft,
    expected_type: Optional[QuestionType] = None,
    ratio_limit: Optional[float] = None
) -> QuestionDraft:
    """
    Check a generated question's shape and return a sanitized copy.

    MCQs need exactly 4 distinct, non-empty options after label stripping,
    no meta answers, lengths within `ratio_limit` of each other and a single
    correct index in range. Open-ended questions carry no options.

    Raises:
        InvalidQuestionError: the draft cannot be used
    """
    ratio_limit = settings.option_length_ratio_limit if ratio_limit is None else ratio_limit

    if expected_type is not None and draft.question_type != expected_type:
        raise InvalidQuestionError(f"expected {expected_type.value}, got {draft.question_type.value}")

    text = (draft.text or "").strip()
    if not text:
        raise InvalidQuestionError("empty question text")

    if draft.question_type == QuestionType.OPEN_ENDED:
        return draft.model_copy(update={"text": text, "options": None, "correct_index": None})

    if not draft.options or len(draft.options) != MCQ_OPTION_COUNT:
        raise InvalidQuestionError(f"expected {MCQ_OPTION_COUNT} options")

    options = OptionSanitizer.sanitize_all(draft.options)
    if any(not o for o in options):
        raise InvalidQuestionError("empty or label-only option")

    lowered = [o.lower() for o in options]
    if any(o.rstrip(".") in DISALLOWED_OPTIONS for o in lowered):
        raise InvalidQuestionError("disallowed option")
    if len(set(lowered)) != len(lowered):
        raise InvalidQuestionError("duplicate options")

    lengths = [len(o) for o in options]
    if max(lengths) / min(lengths) > ratio_limit:
        raise InvalidQuestionError("option lengths too uneven")

    if draft.correct_index is None or not 0 <= draft.correct_index < MCQ_OPTION_COUNT:
        raise InvalidQuestionError("correct index out of range")

    return draft.model_copy(update={"text": text, "options": options})


def randomize_options(draft: QuestionDraft, rng: Optional[random.Random] = None) -> QuestionDraft:
    """Shuffle MCQ options, remapping the correct index"""
    if draft.question_type != QuestionType.MCQ or not draft.options:
        return draft
    rng = rng or random.Random()
    order = list(range(len(draft.options)))
    rng.shuffle(order)
    return draft.model_copy(update={
        "options": [draft.options[i] for i in order],
        "correct_index": order.index(draft.correct_index)
    })
