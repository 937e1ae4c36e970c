# scoring.py
from typing import Any, Dict, Optional

from schemas import IncorrectAnswer, McqQuestion, Quiz, ScoreOut, TrueFalseQuestion

# (threshold %, message), checked top-down
PERFORMANCE_MESSAGES = [
    (90, "Excellent!"),
    (70, "Well done!"),
    (50, "Keep practicing!"),
    (0, "Try again!"),
]


def _answer_for(user_answers: Dict[Any, Any], index: int) -> Optional[Any]:
    if index in user_answers:
        return user_answers[index]
    return user_answers.get(str(index))


def is_correct(question, answer: Any) -> bool:
    if answer is None:
        return False
    if isinstance(question, McqQuestion):
        return not isinstance(answer, bool) and answer == question.answer_index
    if isinstance(question, TrueFalseQuestion):
        return answer is question.answer
    return isinstance(answer, str) and answer.strip().lower() == question.answer.strip().lower()


def correct_answer(question) -> Any:
    if isinstance(question, McqQuestion):
        return question.options[question.answer_index]
    return question.answer


def performance_message(percentage: float) -> str:
    for threshold, message in PERFORMANCE_MESSAGES:
        if percentage >= threshold:
            return message
    return PERFORMANCE_MESSAGES[-1][1]


def score_quiz(quiz: Quiz, user_answers: Dict[Any, Any]) -> ScoreOut:
    """Answers are keyed by question index; JSON clients send the keys as strings."""
    score = 0
    incorrect = []
    for idx, q in enumerate(quiz.questions):
        answer = _answer_for(user_answers or {}, idx)
        if is_correct(q, answer):
            score += 1
            continue
        incorrect.append(IncorrectAnswer(
            index=idx,
            question=q.question,
            user_answer=answer,
            correct_answer=correct_answer(q),
        ))

    total = len(quiz.questions)
    percentage = round(score / total * 100, 1) if total else 0.0
    return ScoreOut(
        score=score,
        total=total,
        percentage=percentage,
        incorrect=incorrect,
        message=performance_message(percentage),
    )
