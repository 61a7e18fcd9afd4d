from langchain_ollama import ChatOllama
from langchain_anthropic import ChatAnthropic
from langchain_core.prompts import ChatPromptTemplate
from langchain_core.output_parsers import JsonOutputParser
from pydantic import BaseModel, Field, ValidationError
from typing import Any, Dict, List, Optional
import logging
import random

from mastery_engine.config import settings
from mastery_engine.exceptions import GenerationError, InvalidQuestionError
from mastery_engine.models import Concept, ReviewQueueItem
from mastery_engine.schemas import (
    LESSON_SLOTS,
    Category,
    Difficulty,
    QuestionDraft,
    QuestionType,
    SlotSpec
)
from mastery_engine.validation import randomize_options, validate_draft

logger = logging.getLogger(__name__)


def get_generator():
    """Factory function to return the appropriate generator based on config"""
    if settings.ai_provider.lower() == "claude":
        return ClaudeQuestionGenerator()
    else:
        return OllamaQuestionGenerator()


class GeneratedQuestion(BaseModel):
    """Schema for a single generated question"""
    category: str = Field(description="One of: Recall, Apply, WhyImportant, WhenUse, Contrast, Reframe, Critique, HowWield")
    question_type: str = Field(description="MCQ or OpenEnded")
    difficulty: str = Field(description="Easy, Medium or Hard")
    text: str = Field(description="The question shown to the learner")
    options: Optional[List[str]] = Field(default=None, description="Exactly 4 answer options for MCQ, without labels; null for OpenEnded")
    correct_index: Optional[int] = Field(default=None, description="0-based index of the single correct option for MCQ; null for OpenEnded")


class QuestionSetOutput(BaseModel):
    """Schema for the 8 questions of a concept lesson"""
    questions: List[GeneratedQuestion] = Field(description="8 questions, one per requested slot, in slot order")


# Open-ended slots fall back to these prompts when generation keeps failing
OPEN_ENDED_TEMPLATES = {
    Category.REFRAME: "In your own words, explain '{title}' as if you were telling a friend.",
    Category.HOW_WIELD: (
        "Describe a concrete situation in your own life or work where you would apply '{title}'. "
        "What would you do differently because of it?"
    ),
}
DEFAULT_OPEN_ENDED_TEMPLATE = "Explain '{title}' in your own words and give one example of it in practice."

CURVEBALL_TEMPLATE = (
    "Without looking back at the book, write down everything you remember about '{title}': "
    "what it is, why it matters, and one way you could use it."
)
SPACED_FOLLOW_UP_TEMPLATE = "Explain '{title}' from memory and describe one situation where it applies."


class BaseQuestionGenerator:
    """
    Base class for AI-powered question generation.

    Every generated question is validated before it leaves this class.
    Invalid output is retried as a batch, then slot by slot; open-ended
    slots finally fall back to fixed templates. GenerationError is raised
    only when an MCQ slot cannot be filled at all.
    """

    def __init__(self, max_attempts: Optional[int] = None, rng: Optional[random.Random] = None):
        self.llm = None
        self.max_attempts = max_attempts or settings.generation_max_attempts
        self.rng = rng or random.Random()
        self.set_parser = JsonOutputParser(pydantic_object=QuestionSetOutput)
        self.question_parser = JsonOutputParser(pydantic_object=GeneratedQuestion)

    async def _invoke(
        self,
        kind: str,
        system_prompt: str,
        human_prompt: str,
        parser: JsonOutputParser,
        variables: Dict[str, Any]
    ) -> Any:
        """Run one prompt through the model and parse the JSON answer"""
        prompt = ChatPromptTemplate.from_messages([
            ("system", system_prompt),
            ("human", human_prompt + "\n\n{format_instructions}")
        ])

        chain = prompt | self.llm | parser

        logger.debug("Invoking %s for %s generation", self.__class__.__name__, kind)
        return await chain.ainvoke({
            **variables,
            "format_instructions": parser.get_format_instructions()
        })

    async def generate_concept_questions(self, concept: Concept) -> List[QuestionDraft]:
        """
        Generate the 8 fresh lesson questions of a concept.

        Returns:
            Drafts in slot order Q1..Q8 with MCQ options shuffled
        """
        drafts: Dict[int, QuestionDraft] = {}
        variables = self._concept_variables(concept)
        variables["slots"] = self._format_slots(LESSON_SLOTS)

        for attempt in range(1, self.max_attempts + 1):
            try:
                raw = await self._invoke(
                    "concept", self._build_system_prompt(), CONCEPT_PROMPT, self.set_parser, variables
                )
            except Exception as e:
                logger.warning("Batch generation for %s failed (attempt %d): %s", concept.id, attempt, e)
                continue

            for index, item in enumerate(self._question_list(raw)):
                slot_index = self._match_slot(item, index, drafts)
                if slot_index is None:
                    continue
                draft = self._to_draft(item, LESSON_SLOTS[slot_index])
                if draft is not None:
                    drafts[slot_index] = draft

            if len(drafts) == len(LESSON_SLOTS):
                break
            logger.info(
                "Batch generation for %s produced %d/%d valid questions (attempt %d)",
                concept.id, len(drafts), len(LESSON_SLOTS), attempt
            )

        for slot_index, slot in enumerate(LESSON_SLOTS):
            if slot_index not in drafts:
                drafts[slot_index] = await self._generate_slot(concept, slot)

        return [randomize_options(drafts[i], self.rng) for i in range(len(LESSON_SLOTS))]

    async def generate_review_question(self, item: ReviewQueueItem, concept: Concept) -> QuestionDraft:
        """Generate a rewritten variant of a missed question, same skill and difficulty"""
        slot = SlotSpec(Category(item.category), Difficulty(item.difficulty), QuestionType(item.question_type))
        variables = self._concept_variables(concept)
        variables.update(self._slot_variables(slot))
        variables["original_question"] = item.original_question_text or "(not recorded)"

        draft = await self._generate_single("review", REVIEW_PROMPT, variables, slot, concept.id)
        if draft is not None:
            return randomize_options(draft, self.rng)
        if slot.question_type == QuestionType.OPEN_ENDED:
            return self._template_draft(slot, concept)
        raise GenerationError(f"no valid review variant for {concept.id} ({item.concept_tested})")

    async def generate_recall_probe(self, item: ReviewQueueItem, concept: Concept) -> QuestionDraft:
        """Generate the single free-recall prompt of a curveball or spaced follow-up"""
        slot = SlotSpec(
            Category(item.category) if not item.is_curveball else Category.REFRAME,
            Difficulty(item.difficulty) if not item.is_curveball else Difficulty.HARD,
            QuestionType.OPEN_ENDED
        )
        variables = self._concept_variables(concept)
        variables.update(self._slot_variables(slot))
        variables["probe_kind"] = "curveball" if item.is_curveball else "spaced follow-up"

        draft = await self._generate_single("probe", PROBE_PROMPT, variables, slot, concept.id)
        if draft is not None:
            return draft
        template = CURVEBALL_TEMPLATE if item.is_curveball else SPACED_FOLLOW_UP_TEMPLATE
        logger.info("Using template %s for %s", variables["probe_kind"], concept.id)
        return QuestionDraft(
            question_type=QuestionType.OPEN_ENDED,
            difficulty=slot.difficulty,
            category=slot.category,
            text=template.format(title=concept.title)
        )

    async def _generate_slot(self, concept: Concept, slot: SlotSpec) -> QuestionDraft:
        variables = self._concept_variables(concept)
        variables.update(self._slot_variables(slot))

        draft = await self._generate_single("slot", SLOT_PROMPT, variables, slot, concept.id)
        if draft is not None:
            return draft
        if slot.question_type == QuestionType.OPEN_ENDED:
            return self._template_draft(slot, concept)
        raise GenerationError(f"no valid {slot.category.value} question for {concept.id}")

    async def _generate_single(
        self,
        kind: str,
        human_prompt: str,
        variables: Dict[str, Any],
        slot: SlotSpec,
        concept_id: str
    ) -> Optional[QuestionDraft]:
        for attempt in range(1, self.max_attempts + 1):
            try:
                raw = await self._invoke(
                    kind, self._build_system_prompt(), human_prompt, self.question_parser, variables
                )
            except Exception as e:
                logger.warning("%s generation for %s failed (attempt %d): %s", kind, concept_id, attempt, e)
                continue
            draft = self._to_draft(raw, slot)
            if draft is not None:
                return draft
        return None

    def _to_draft(self, raw: Any, slot: SlotSpec) -> Optional[QuestionDraft]:
        """Validate one raw question against its slot; None when unusable"""
        if not isinstance(raw, dict):
            return None
        if self._contradicts(raw.get("category"), Category, slot.category) or \
                self._contradicts(raw.get("question_type"), QuestionType, slot.question_type):
            logger.debug(
                "Rejected %s/%s output for %s slot",
                raw.get("category"), raw.get("question_type"), slot.category.value
            )
            return None
        try:
            draft = QuestionDraft(
                question_type=slot.question_type,
                difficulty=slot.difficulty,
                category=slot.category,
                text=str(raw.get("text") or ""),
                options=raw.get("options") if slot.question_type == QuestionType.MCQ else None,
                correct_index=raw.get("correct_index") if slot.question_type == QuestionType.MCQ else None
            )
            return validate_draft(draft, expected_type=slot.question_type)
        except (ValidationError, InvalidQuestionError) as e:
            logger.debug("Rejected %s question: %s", slot.category.value, e)
            return None

    def _template_draft(self, slot: SlotSpec, concept: Concept) -> QuestionDraft:
        template = OPEN_ENDED_TEMPLATES.get(slot.category, DEFAULT_OPEN_ENDED_TEMPLATE)
        logger.info("Using template %s question for %s", slot.category.value, concept.id)
        return QuestionDraft(
            question_type=QuestionType.OPEN_ENDED,
            difficulty=slot.difficulty,
            category=slot.category,
            text=template.format(title=concept.title)
        )

    @staticmethod
    def _question_list(raw: Any) -> List[Any]:
        if isinstance(raw, dict):
            raw = raw.get("questions")
        return raw if isinstance(raw, list) else []

    @staticmethod
    def _contradicts(value: Any, enum_type, expected) -> bool:
        """True when `value` names a known member of `enum_type` other than `expected`"""
        try:
            return enum_type(value) != expected
        except ValueError:
            return False

    @staticmethod
    def _match_slot(item: Any, index: int, filled: Dict[int, QuestionDraft]) -> Optional[int]:
        """
        Slot of a batch item.

        An item naming a known category only ever fills that category's slot.
        Items without a recognizable category fall back to their position.
        """
        category = item.get("category") if isinstance(item, dict) else None
        try:
            category = Category(category)
        except ValueError:
            category = None
        if category is not None:
            for slot_index, slot in enumerate(LESSON_SLOTS):
                if slot.category == category:
                    return None if slot_index in filled else slot_index
        if index < len(LESSON_SLOTS) and index not in filled:
            return index
        return None

    @staticmethod
    def _concept_variables(concept: Concept) -> Dict[str, Any]:
        return {
            "title": concept.title,
            "description": concept.description or "No description available.",
        }

    @staticmethod
    def _slot_variables(slot: SlotSpec) -> Dict[str, Any]:
        return {
            "category": slot.category.value,
            "difficulty": slot.difficulty.value,
            "question_type": slot.question_type.value,
        }

    @staticmethod
    def _format_slots(slots: List[SlotSpec]) -> str:
        return "\n".join(
            f"  Q{i}: {s.category.value} / {s.difficulty.value} / {s.question_type.value}"
            for i, s in enumerate(slots, start=1)
        )

    def _build_system_prompt(self) -> str:
        """Build system prompt for LLM"""
        return """You write retrieval-practice questions that test whether a reader truly understands an idea from a book.

**Question categories:**
- Recall: state the idea accurately
- Apply: use the idea in a new, concrete situation
- WhyImportant: explain why the idea matters
- WhenUse: recognize when the idea applies and when it does not
- Contrast: distinguish the idea from a similar or opposing one
- Reframe: restate the idea in different terms
- Critique: find the limits or weaknesses of the idea
- HowWield: plan how to put the idea to work

**Rules for MCQ:**
- Exactly 4 options, exactly one correct
- Options must be plausible and of similar length
- Never label options (no "A.", "1)", "Option B")
- Never use "All of the above" or "None of the above"

**Rules for OpenEnded:**
- A single prompt answered in a few sentences
- No options and no correct_index

Return JSON only."""


CONCEPT_PROMPT = """**Idea:** {title}

**Description:**
{description}

Write one question for each slot below (category / difficulty / type):
{slots}"""

SLOT_PROMPT = """**Idea:** {title}

**Description:**
{description}

Write one {question_type} question in the {category} category at {difficulty} difficulty."""

REVIEW_PROMPT = """**Idea:** {title}

**Description:**
{description}

The learner previously missed this question:
{original_question}

Write a NEW {question_type} question testing the same skill ({category}, {difficulty}).
Do not reuse the wording or the answer options of the original."""

PROBE_PROMPT = """**Idea:** {title}

**Description:**
{description}

Write a single open-ended free-recall prompt for a {probe_kind} check at {difficulty} difficulty.
The learner must answer from memory; do not hint at the answer or quote the book."""


class OllamaQuestionGenerator(BaseQuestionGenerator):
    """Generator using local Ollama for development"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.llm = ChatOllama(
            model=settings.ollama_model,
            base_url=settings.ollama_base_url,
            temperature=0.0,
            format="json"
        )


class ClaudeQuestionGenerator(BaseQuestionGenerator):
    """Generator using Claude API for production"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if not settings.claude_api_key:
            raise ValueError("CLAUDE_API_KEY not set in environment variables")

        self.llm = ChatAnthropic(
            model=settings.claude_model,
            api_key=settings.claude_api_key,
            temperature=0.0
        )
