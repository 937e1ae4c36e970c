# prompts.py
import os
import string
from typing import Iterable, List, Tuple

from schemas import QuestionType

PROMPT_PATH = os.path.join(os.path.dirname(__file__), "prompts", "quiz_prompt.md")
with open(PROMPT_PATH, "r", encoding="utf-8") as f:
    QUIZ_PROMPT = string.Template(f.read())

TYPE_INSTRUCTIONS = {
    QuestionType.MCQ: "\n".join([
        "Generate exactly $n multiple-choice questions. Each question must have:",
        '- "question": "question text"',
        '- "options": ["option A", "option B", "option C", "option D"]',
        '- "answer_index": 0 (must be 0, 1, 2, or 3)',
        '- "type": "mcq"',
    ]),
    QuestionType.TRUE_FALSE: "\n".join([
        "Generate exactly $n true/false questions. Each question must have:",
        '- "question": "statement text"',
        '- "answer": true or false (boolean)',
        '- "type": "true_false"',
    ]),
    QuestionType.FILL_IN: "\n".join([
        "Generate exactly $n fill-in-the-blank questions. Each question must have:",
        '- "question": "Sentence with a ____ blank"',
        '- "answer": "missing_word_or_phrase" (string)',
        '- "type": "fill_in"',
    ]),
}


def split_counts(types: Iterable[QuestionType], count: int) -> List[Tuple[QuestionType, int]]:
    """
    Spread `count` over `types` as evenly as possible.
    The first `count % len(types)` types (in the given order) get one extra.
    """
    types = list(types)
    if not types:
        raise ValueError("At least one test type must be selected")
    base, remainder = divmod(count, len(types))
    return [(t, base + (1 if i < remainder else 0)) for i, t in enumerate(types)]


def build_quiz_prompt(types: Iterable[QuestionType], count: int, page_text: str) -> str:
    requirements = [
        string.Template(TYPE_INSTRUCTIONS[QuestionType(t)]).substitute(n=n)
        for t, n in split_counts(types, count)
    ]
    return QUIZ_PROMPT.substitute(
        count=count,
        requirements="\n\n".join(requirements),
        content=page_text,
    )
