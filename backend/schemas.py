# schemas.py
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, HttpUrl, StrictBool, StrictStr, field_validator

from config import DEFAULT_QUESTIONS, MAX_QUESTIONS, MIN_QUESTIONS


class QuestionType(str, Enum):
    MCQ = "mcq"
    TRUE_FALSE = "true_false"
    FILL_IN = "fill_in"


# -----------------------------------------------------------------------------
# Quiz payload (what the model must return)
# -----------------------------------------------------------------------------
class McqQuestion(BaseModel):
    type: Literal["mcq"] = "mcq"
    question: StrictStr
    options: List[StrictStr] = Field(min_length=4, max_length=4)
    answer_index: Annotated[int, Field(strict=True, ge=0, le=3)]

    class Config:
        frozen = True


class TrueFalseQuestion(BaseModel):
    type: Literal["true_false"] = "true_false"
    question: StrictStr
    answer: StrictBool

    class Config:
        frozen = True


class FillInQuestion(BaseModel):
    type: Literal["fill_in"] = "fill_in"
    question: StrictStr
    answer: StrictStr

    class Config:
        frozen = True


Question = Annotated[
    Union[McqQuestion, TrueFalseQuestion, FillInQuestion],
    Field(discriminator="type"),
]


class Quiz(BaseModel):
    source_title: str
    questions: List[Question] = Field(min_length=1)

    class Config:
        frozen = True


# -----------------------------------------------------------------------------
# Generation inputs / state
# -----------------------------------------------------------------------------
class PageContent(BaseModel):
    title: str = ""
    text: str = ""
    favicon: str = ""

    class Config:
        frozen = True


class GenerationConfig(BaseModel):
    # Order matters: the even split hands the remainder to the first types.
    selected_types: List[QuestionType] = Field(default_factory=list)
    question_count: int = DEFAULT_QUESTIONS

    @field_validator("selected_types")
    @classmethod
    def dedupe_types(cls, v):
        return list(dict.fromkeys(v))

    @field_validator("question_count")
    @classmethod
    def clamp_count(cls, v):
        return max(MIN_QUESTIONS, min(MAX_QUESTIONS, v))


class GenerationAttempt(BaseModel):
    config: GenerationConfig
    page: PageContent
    attempts_made: int = 0
    cancelled: bool = False


class GenerationState(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    PROMPTING = "prompting"
    VALIDATING = "validating"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    FAILED = "failed"


class GenerationOutcome(BaseModel):
    state: GenerationState
    quiz: Optional[Quiz] = None
    error: Optional[str] = None
    attempts_made: int = 0
    used_fallback: bool = False


class ModelParams(BaseModel):
    default_temperature: float
    default_top_k: int
    max_top_k: int


# -----------------------------------------------------------------------------
# API
# -----------------------------------------------------------------------------
class GenerateIn(BaseModel):
    url: Optional[HttpUrl] = None
    page: Optional[PageContent] = None
    selected_types: List[QuestionType] = Field(default_factory=list)
    question_count: int = DEFAULT_QUESTIONS


class GenerationStatusOut(BaseModel):
    state: GenerationState = GenerationState.IDLE
    loading: bool = False
    quiz: Optional[Quiz] = None
    error: Optional[str] = None
    needs_restart: bool = False


class AskIn(BaseModel):
    prompt: str
    temperature: Optional[float] = None
    top_k: Optional[int] = None


class AskOut(BaseModel):
    ok: bool = True
    route: Literal["answer", "generate"] = "answer"
    content: str = ""


class ScoreIn(BaseModel):
    quiz: Quiz
    user_answers: Dict[str, Any] = Field(default_factory=dict)


class IncorrectAnswer(BaseModel):
    index: int
    question: str
    user_answer: Any = None
    correct_answer: Any = None


class ScoreOut(BaseModel):
    score: int
    total: int
    percentage: float
    incorrect: List[IncorrectAnswer]
    message: str


class SaveTestIn(BaseModel):
    quiz: Quiz
    title: Optional[str] = None


class ProgressIn(BaseModel):
    user_answers: Dict[str, Any] = Field(default_factory=dict)
    current_question: Optional[int] = None
    time_left: Optional[int] = None


class SubmitIn(BaseModel):
    user_answers: Dict[str, Any] = Field(default_factory=dict)


class SavedTestOut(BaseModel):
    id: str
    title: str
    quiz: Quiz
    saved_at: str
    is_completed: bool
    is_archived: bool
    user_answers: Dict[str, Any]
    current_question: Optional[int] = None
    time_left: Optional[int] = None
    score: Optional[int] = None
    percentage: Optional[float] = None
    completed_at: Optional[str] = None


HistoryTab = Literal["active", "completed", "archived"]


class HistoryOut(BaseModel):
    items: List[SavedTestOut]
