from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from . import repository
from .context import ContextBundle, build_context
from .difficulty import adapt_difficulty, response_for
from .llm_client import ChatCompletionClient, message, structured_completion
from .models import Level, Subject

logger = logging.getLogger(__name__)

QUIZ_LENGTH = 6
CHOICES_PER_ITEM = 4
GENERATION_ATTEMPTS = 2
MAX_QUESTION = 400
MAX_EXPLANATION = 600
MAX_CHOICE = 120
MAX_TOPIC = 80


class QuizItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    question: str
    choices: List[str]
    answer_index: int = Field(ge=0, le=CHOICES_PER_ITEM - 1)
    explanation: str
    topic: str = "general"
    difficulty: Level

    def wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def extract_json(text: Optional[str]) -> Any:
    """Parse JSON that may be wrapped in prose or code fences; None when nothing parses."""
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass
    starts = [i for i in (text.find("["), text.find("{")) if i != -1]
    if not starts:
        return None
    start = min(starts)
    end = max(text.rfind("]"), text.rfind("}"))
    if end <= start:
        return None
    try:
        return json.loads(text[start : end + 1])
    except ValueError:
        return None


def _clean_choices(raw: Any) -> List[str]:
    choices: List[str] = []
    seen = set()
    for c in raw if isinstance(raw, list) else []:
        if c is None or c == "":
            continue
        text = str(c).strip()
        key = text.lower()
        if not text or key in seen:
            continue
        seen.add(key)
        choices.append(text)
        if len(choices) == CHOICES_PER_ITEM:
            break
    while len(choices) < CHOICES_PER_ITEM:
        choices.append(f"Option {len(choices) + 1}")
    return [c[:MAX_CHOICE] for c in choices]


def _clean_answer_index(raw: Any) -> int:
    if isinstance(raw, bool):
        return 0
    # JSON numbers like 2.0 are integral
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    if not isinstance(raw, int):
        return 0
    if raw < 0 or raw > CHOICES_PER_ITEM - 1:
        return 0
    return raw


def _clean_level(raw: Any, default: Level) -> Level:
    try:
        return Level(raw)
    except (TypeError, ValueError):
        return default


def sanitize_items(items_in: Sequence[Any], level: Level) -> List[QuizItem]:
    """Coerce untrusted item dicts into valid four-choice items; non-dict entries are dropped."""
    out: List[QuizItem] = []
    for it in items_in or []:
        if not isinstance(it, dict):
            continue
        out.append(
            QuizItem(
                question=str(it.get("question") or "Untitled question")[:MAX_QUESTION],
                choices=_clean_choices(it.get("choices")),
                answer_index=_clean_answer_index(it.get("answerIndex")),
                explanation=str(it.get("explanation") or "Explanation unavailable.")[:MAX_EXPLANATION],
                topic=str(it.get("topic") or "general")[:MAX_TOPIC],
                difficulty=_clean_level(it.get("difficulty"), Level(level)),
            )
        )
    return out


_DATABASE_BANK: List[Dict[str, Any]] = [
    {
        "question": "What is a primary key?",
        "choices": ["Allows NULL duplicates", "Uniquely identifies each row", "References another table", "Used only for sorting"],
        "answerIndex": 1,
        "explanation": "A primary key uniquely identifies rows and cannot be NULL.",
        "topic": "keys",
    },
    {
        "question": "Which statement inserts a new row?",
        "choices": ["ADD ROW", "INSERT INTO", "CREATE ROW", "APPEND"],
        "answerIndex": 1,
        "explanation": "`INSERT INTO` adds new rows.",
        "topic": "sql-dml",
    },
    {
        "question": "A foreign key enforces…",
        "choices": ["Uniqueness inside same table", "Referential integrity to a parent table", "Automatic indexes", "Faster full scans"],
        "answerIndex": 1,
        "explanation": "Foreign keys ensure child values exist in the parent table.",
        "topic": "keys",
    },
    {
        "question": "Which JOIN returns only matches in both tables?",
        "choices": ["LEFT JOIN", "RIGHT JOIN", "FULL OUTER JOIN", "INNER JOIN"],
        "answerIndex": 3,
        "explanation": "INNER JOIN keeps rows that match on both sides.",
        "topic": "joins",
    },
    {
        "question": "Which clause filters aggregated groups?",
        "choices": ["WHERE", "HAVING", "ORDER BY", "LIMIT/FETCH"],
        "answerIndex": 1,
        "explanation": "HAVING filters after GROUP BY; WHERE filters rows before grouping.",
        "topic": "aggregation",
    },
    {
        "question": "What is 3NF about?",
        "choices": ["Combining all data into one table", "Encrypting data", "Reducing redundancy with well-structured tables", "Only using denormalization"],
        "answerIndex": 2,
        "explanation": "3NF reduces redundancy and anomalies via proper dependencies.",
        "topic": "normalization",
    },
]

_MATHS_BANK: List[Dict[str, Any]] = [
    {
        "question": "What is 2 + 2?",
        "choices": ["1", "2", "3", "4"],
        "answerIndex": 3,
        "explanation": "2 + 2 = 4.",
        "topic": "arithmetic",
    },
    {
        "question": "What is 1/2 + 1/4?",
        "choices": ["2/6", "3/4", "1/8", "2/4"],
        "answerIndex": 1,
        "explanation": "Write 1/2 as 2/4, then 2/4 + 1/4 = 3/4.",
        "topic": "fractions",
    },
    {
        "question": "Solve 3x + 5 = 20 for x.",
        "choices": ["x = 3", "x = 5", "x = 15", "x = 25/3"],
        "answerIndex": 1,
        "explanation": "Subtract 5 to get 3x = 15, then divide by 3: x = 5.",
        "topic": "basic-algebra",
    },
    {
        "question": "What are the roots of x² − 5x + 6 = 0?",
        "choices": ["x = 1 and x = 6", "x = −2 and x = −3", "x = 2 and x = 3", "x = 5 and x = 6"],
        "answerIndex": 2,
        "explanation": "x² − 5x + 6 factorises as (x − 2)(x − 3), so x = 2 or x = 3.",
        "topic": "quadratics",
    },
    {
        "question": "What is the derivative of x³?",
        "choices": ["x²", "3x²", "3x³", "x⁴/4"],
        "answerIndex": 1,
        "explanation": "By the power rule, d/dx xⁿ = n·xⁿ⁻¹, so d/dx x³ = 3x².",
        "topic": "calculus",
    },
    {
        "question": "A fair six-sided die is rolled once. What is the probability of an even number?",
        "choices": ["1/6", "1/3", "1/2", "2/3"],
        "answerIndex": 2,
        "explanation": "Three of the six outcomes (2, 4, 6) are even, so the probability is 3/6 = 1/2.",
        "topic": "probability",
    },
]

_MIDGE_BANK: List[Dict[str, Any]] = [
    {
        "question": "Which study technique is most effective for long-term retention?",
        "choices": ["Re-reading notes once", "Spaced retrieval practice", "Highlighting everything", "Cramming the night before"],
        "answerIndex": 1,
        "explanation": "Testing yourself at spaced intervals strengthens memory far more than passive review.",
        "topic": "intro",
    },
    {
        "question": "What should you do first when you receive a new coursework brief?",
        "choices": ["Start writing immediately", "Read the brief and marking criteria carefully", "Search for a finished example to copy", "Wait until the week before the deadline"],
        "answerIndex": 1,
        "explanation": "Understanding what is asked and how it is marked shapes every later step.",
        "topic": "intro",
    },
    {
        "question": "Which is the best way to use a worked example?",
        "choices": ["Copy its final answer", "Skip it and go straight to exercises", "Follow each step, then try a similar problem unaided", "Memorise it word for word"],
        "answerIndex": 2,
        "explanation": "Studying the steps and then attempting a variation turns the example into transferable skill.",
        "topic": "core",
    },
    {
        "question": "What does citing a source in your work acknowledge?",
        "choices": ["That the idea is your own", "That you used someone else's work or idea", "That the source is always correct", "That the marker must read the source"],
        "answerIndex": 1,
        "explanation": "Citations credit the original author and let readers trace your evidence.",
        "topic": "core",
    },
    {
        "question": "When reviewing a draft, what is the most useful kind of feedback to ask for?",
        "choices": ["\"Is it good?\"", "Specific comments against the marking criteria", "A rewritten version of the draft", "Only spelling corrections"],
        "answerIndex": 1,
        "explanation": "Criteria-based comments tell you exactly where and how to improve.",
        "topic": "advanced",
    },
    {
        "question": "Which plan best balances revision across several modules?",
        "choices": ["One module per week, never revisited", "Interleaving short sessions across modules with regular self-tests", "Only revising the module you enjoy most", "Revising everything in a single long session"],
        "answerIndex": 1,
        "explanation": "Interleaving and self-testing keep every module active and expose weak spots early.",
        "topic": "advanced",
    },
]

FALLBACK_BANKS: Dict[Subject, List[Dict[str, Any]]] = {
    Subject.DATABASE_SYSTEMS: _DATABASE_BANK,
    Subject.MATHS: _MATHS_BANK,
    Subject.MIDGE: _MIDGE_BANK,
}


def fallback_bank(subject: Subject, level: Level) -> List[QuizItem]:
    """Hand-written items for the subject, stamped with the requested level."""
    bank = FALLBACK_BANKS.get(Subject(subject), _DATABASE_BANK)
    return sanitize_items([{**item, "difficulty": Level(level).value} for item in bank], level)


def exact_six(items: Sequence[QuizItem], subject: Subject, level: Level) -> List[QuizItem]:
    """Truncate to six items or pad with fallback-bank items not already asked."""
    out = list(items[:QUIZ_LENGTH])
    if len(out) == QUIZ_LENGTH:
        return out
    bank = fallback_bank(subject, level)
    asked = {item.question for item in out}
    filler = [item for item in bank if item.question not in asked] or bank
    i = 0
    while len(out) < QUIZ_LENGTH:
        out.append(filler[i % len(filler)])
        i += 1
    return out


def grade(items: Sequence[QuizItem], answers: Mapping[Any, Any]) -> Dict[str, int]:
    score = sum(1 for idx, it in enumerate(items) if response_for(answers, idx) == it.answer_index)
    return {"score": score, "max": len(items)}


_QUALITY_RULES = "; ".join([
    "Exactly 6 questions",
    "Each question has exactly 4 plausible options and 1 correct answer",
    "Mix recall + understanding + application (not all definition-only)",
    "Clear, one-paragraph explanation for each answer",
    "Vary topics; avoid duplicates",
])


def build_quiz_prompt(subject: Subject, level: Level, has_documents: bool, guiding_topics: Sequence[str]) -> str:
    subject = Subject(subject).value
    level = Level(level).value
    if has_documents:
        context_instruction = (
            'Use ONLY the "Documents" AND the student\'s "Questions". '
            f"If a detail isn't in those, rely on general {subject} knowledge to keep quality high."
        )
    else:
        context_instruction = f"No documents available. Use widely accepted {subject} core syllabus for {level} level."
    if guiding_topics:
        topic_instruction = f"Prioritise these topics (≥3 questions across them): {', '.join(guiding_topics)}."
    else:
        topic_instruction = f"Cover 2–3 distinct core topics appropriate for {level}."
    return "\n".join([
        f"Create a high-quality multiple-choice quiz for Higher Education {subject} at {level} difficulty.",
        context_instruction,
        topic_instruction,
        f"Quality rules: {_QUALITY_RULES}.",
        'Respond as a SINGLE JSON object: { "items": [ { "question": string, "choices": [string,string,string,string], '
        f'"answerIndex": 0|1|2|3, "explanation": string, "topic": string, "difficulty": "{level}" }} ... ] }}',
        "No extra text, no code fences.",
    ])


def _parse_items(level: Level):
    def parse(raw: str) -> Optional[List[QuizItem]]:
        data = extract_json(raw)
        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return None
        cleaned = sanitize_items(items, level)
        return cleaned or None
    return parse


async def generate_items(
    client: Optional[ChatCompletionClient],
    subject: Subject,
    level: Level,
    context: ContextBundle,
    guiding_topics: Sequence[str],
) -> List[QuizItem]:
    """Exactly six items: model output when usable, the fallback bank otherwise."""
    messages = [
        message("system", "You are a strict quiz generator that returns valid JSON only."),
        message("user", f"Documents:\n{context.documents_text or '(none)'}"),
        message("user", f"Student Questions:\n{context.recent_questions_text or '(none)'}"),
        message("user", build_quiz_prompt(subject, level, context.has_documents, guiding_topics)),
    ]
    items = await structured_completion(
        client,
        messages,
        parse=_parse_items(level),
        fallback=[],
        temperature=0.1,
        json_mode=True,
        attempts=GENERATION_ATTEMPTS,
        label="quiz",
    )
    if not items:
        logger.info("quiz: using fallback bank for %s/%s", Subject(subject).value, Level(level).value)
        items = fallback_bank(subject, level)
    return exact_six(items, subject, level)


async def compose_quiz(
    db: Session,
    client: Optional[ChatCompletionClient],
    email: str,
    subject: Subject,
    mode: str = "new",
) -> Dict[str, Any]:
    base_level = repository.get_level(db, email, subject) or Level.BEGINNER
    attempts = repository.recent_attempts(db, subject, email=email, take=3)
    plan = adapt_difficulty(attempts, base_level)

    context = build_context(db, email, subject, plan.target_level)
    if mode == "focus" and plan.weak_topics:
        guiding = plan.weak_topics
    else:
        guiding = context.cohort_weak_topics or context.global_topics

    items = await generate_items(client, subject, plan.target_level, context, guiding)
    return {
        "available": True,
        "items": [it.wire() for it in items],
        "weakTopics": plan.weak_topics,
        "targetLevel": plan.target_level.value,
    }
