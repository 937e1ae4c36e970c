# fallback.py
"""Offline quiz generation for hosts without a language model."""
import re
from typing import Iterable, List

from prompts import split_counts
from schemas import (
    FillInQuestion,
    McqQuestion,
    PageContent,
    QuestionType,
    Quiz,
    TrueFalseQuestion,
)

SENTENCE_SPLIT_RE = re.compile(r"[.\n]\s+")
SENTENCE_CHARS = 80
PLACEHOLDER_OPTIONS = ["Option A", "Option B", "Option C", "Option D"]


def split_sentences(text: str) -> List[str]:
    return [s for s in SENTENCE_SPLIT_RE.split(text or "") if s]


def _make_question(qtype: QuestionType, number: int, sentence: str):
    if qtype == QuestionType.MCQ:
        return McqQuestion(
            question=f"Question {number}: What does this statement refer to? {sentence}",
            options=list(PLACEHOLDER_OPTIONS),
            answer_index=0,
        )
    if qtype == QuestionType.TRUE_FALSE:
        return TrueFalseQuestion(question=f"True or False: {sentence}?", answer=True)
    return FillInQuestion(question=f"Fill in the blank: {sentence} ____", answer="answer")


def generate_fallback_quiz(page: PageContent, types: Iterable[QuestionType], count: int) -> Quiz:
    sentences = split_sentences(page.text)
    questions = []
    cursor = 0
    for qtype, n in split_counts(types, count):
        for _ in range(n):
            if cursor < len(sentences):
                sentence = sentences[cursor][:SENTENCE_CHARS]
            else:
                sentence = f"Placeholder sentence {cursor + 1}"
            cursor += 1
            questions.append(_make_question(QuestionType(qtype), len(questions) + 1, sentence))

    return Quiz(source_title=page.title or "Untitled Page", questions=questions)
