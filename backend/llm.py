# llm.py  - uses google-generativeai directly (no LangChain wrapper)
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional

import google.generativeai as genai

from config import GEMINI_MODEL, GOOGLE_API_KEY, MAX_TOP_K
from schemas import ModelParams

logger = logging.getLogger(__name__)

MAX_TEMPERATURE = 2.0
# Interactive answers never sample from more than this many tokens by default.
DEFAULT_ASK_TOP_K = 3

JSON_SYSTEM_PROMPT = "You generate valid JSON with no additional text."
ASSISTANT_SYSTEM_PROMPT = "You are a helpful and friendly assistant."

TEST_REQUEST_RE = re.compile(
    r"\b(generate|create|make|build|give me)\b.*\b(test|quiz|questions?|mcqs?)\b"
    r"|\b(test|quiz) me\b",
    re.IGNORECASE,
)

if GOOGLE_API_KEY:
    genai.configure(api_key=GOOGLE_API_KEY)


class LLMError(Exception):
    pass


@dataclass(frozen=True)
class SessionOptions:
    temperature: float
    top_k: int
    system_prompt: str


# Quiz generation must be parseable, so sample as deterministically as possible.
JSON_SESSION_OPTIONS = SessionOptions(temperature=0.0, top_k=1, system_prompt=JSON_SYSTEM_PROMPT)


class GeminiSession:
    """One conversation with the model; keeps context until destroyed."""

    def __init__(self, model_name: str, options: SessionOptions):
        self.model_name = model_name
        model = genai.GenerativeModel(
            model_name,
            system_instruction=options.system_prompt,
            generation_config=genai.GenerationConfig(
                temperature=options.temperature,
                top_k=options.top_k,
            ),
        )
        self._chat = model.start_chat()

    async def prompt(self, text: str) -> str:
        if self._chat is None:
            raise LLMError("Session has been destroyed")
        resp = await self._chat.send_message_async(text)
        # Handle blocked/empty responses
        if not hasattr(resp, "text") or not resp.text:
            raise LLMError(f"Model {self.model_name} returned empty response.")
        return resp.text

    def destroy(self) -> None:
        self._chat = None


class GeminiLanguageModel:
    """The language-model capability: sampling defaults plus session factory."""

    def __init__(self, model_name: str = GEMINI_MODEL):
        self.model_name = model_name
        self._params: Optional[ModelParams] = None

    def params(self) -> ModelParams:
        if self._params is None:
            info = genai.get_model(f"models/{self.model_name}")
            default_top_k = info.top_k or 1
            self._params = ModelParams(
                default_temperature=info.temperature if info.temperature is not None else 1.0,
                default_top_k=default_top_k,
                max_top_k=max(MAX_TOP_K, default_top_k),
            )
        return self._params

    async def create(self, options: SessionOptions) -> GeminiSession:
        return GeminiSession(self.model_name, options)


def get_language_model() -> Optional[GeminiLanguageModel]:
    """None when the host has no model configured; callers fall back to offline generation."""
    if not GOOGLE_API_KEY:
        return None
    return GeminiLanguageModel(GEMINI_MODEL)


class GenerationSession:
    """
    Owns at most one live model session for quiz generation.
    The session is created on first use and reused until reset() or a failure.
    """

    def __init__(self, model, options: SessionOptions = JSON_SESSION_OPTIONS):
        self.model = model
        self.options = options
        self._session = None

    @property
    def active(self) -> bool:
        return self._session is not None

    async def run(self, prompt: str) -> str:
        try:
            if self._session is None:
                self._session = await self.model.create(self.options)
            return await self._session.prompt(prompt)
        except Exception as e:
            logger.error("Prompt failed: %s", e)
            self.reset()
            raise

    def reset(self) -> None:
        if self._session is None:
            return
        session, self._session = self._session, None
        session.destroy()


def is_test_generation_request(prompt: str) -> bool:
    return bool(TEST_REQUEST_RE.search(prompt or ""))


async def ask(model, prompt: str, temperature: Optional[float] = None, top_k: Optional[int] = None) -> str:
    """Answer a free-form question in a throwaway session, never the quiz session."""
    params = await asyncio.to_thread(model.params)
    if temperature is None:
        temperature = params.default_temperature
    temperature = max(0.0, min(MAX_TEMPERATURE, temperature))
    if top_k is None:
        top_k = min(params.default_top_k, DEFAULT_ASK_TOP_K)
    top_k = max(1, min(params.max_top_k, top_k))

    session = await model.create(SessionOptions(temperature, top_k, ASSISTANT_SYSTEM_PROMPT))
    try:
        return await session.prompt(prompt)
    finally:
        session.destroy()


# --- Simple ping for /api/llm-test
async def ping_llm(model) -> dict:
    """
    Returns {"ok": True, "model": <model_used>, "content": "..."} on success,
            or {"ok": False, "error": "..."} on failure.
    """
    if model is None:
        return {"ok": False, "error": "No language model configured; offline fallback is active."}
    try:
        text = (await ask(model, "Reply with OK")).strip()
    except Exception as e:
        return {"ok": False, "model": model.model_name, "error": str(e)}
    return {"ok": True, "model": model.model_name, "content": text[:200]}
