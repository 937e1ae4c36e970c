# utils.py
import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from schemas import Quiz

logger = logging.getLogger(__name__)

FENCE_RE = re.compile(r"```json\s*", re.IGNORECASE)
BARE_FENCE_RE = re.compile(r"```\s*")
TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


class ExtractionError(Exception):
    pass


class QuizValidationError(Exception):
    pass


def strip_code_fences(text: str) -> str:
    return BARE_FENCE_RE.sub("", FENCE_RE.sub("", text))


def repair_json(text: str) -> str:
    """Drop trailing commas and flatten line breaks/tabs that models leave in JSON."""
    fixed = TRAILING_COMMA_RE.sub(r"\1", text)
    return fixed.replace("\n", " ").replace("\r", "").replace("\t", " ")


def extract_json(text: str) -> Any:
    """
    Parse model output into JSON, trying progressively more aggressive recoveries:
    raw text, fence-stripped text, the outermost {...} slice, then a repaired slice.
    Raises ExtractionError if nothing parses.
    """
    text = (text or "").strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.debug("Direct parse failed: %s", e)

    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.debug("Parse after fence stripping failed: %s", e)

    first, last = cleaned.find("{"), cleaned.rfind("}")
    if first == -1 or last == -1:
        logger.warning("No JSON found in response. Raw: %s", text[:400])
        raise ExtractionError("No JSON found in response")

    candidate = cleaned[first:last + 1]
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        logger.debug("Parse of brace slice failed: %s", e)

    try:
        return json.loads(repair_json(candidate))
    except json.JSONDecodeError as e:
        logger.warning("JSON repair failed: %s. Raw: %s", e, text[:400])
        raise ExtractionError(f"Failed to parse response as JSON: {e}") from e


def check_questions_present(payload: Any) -> None:
    if not isinstance(payload, dict):
        raise QuizValidationError("Invalid question format")
    questions = payload.get("questions")
    if not isinstance(questions, list) or not questions:
        raise QuizValidationError("Invalid question format")


def _describe(err: ValidationError) -> str:
    first = err.errors()[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"{loc}: {first.get('msg')}" if loc else first.get("msg", str(err))


def validate_quiz(payload: Any, default_title: str = "") -> Quiz:
    """
    Turn extracted JSON into a Quiz. Every question must match the shape of its
    declared type; a missing source_title falls back to `default_title`.
    """
    check_questions_present(payload)

    data = dict(payload)
    title = data.get("source_title")
    if not isinstance(title, str) or not title.strip():
        data["source_title"] = default_title or "Untitled Page"

    try:
        return Quiz.model_validate(data)
    except ValidationError as e:
        raise QuizValidationError(f"Invalid question format: {_describe(e)}") from e
