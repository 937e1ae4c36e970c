# orchestrator.py
"""
Quiz generation pipeline: prepare -> prompt -> extract/validate, with bounded
retries. Progress is written to the key-value store after every transition so
a client that went away can pick the result up later, or a fresh process can
restart an interrupted run from the persisted page snapshot.
"""
import asyncio
import logging
from typing import Optional

from pydantic import ValidationError

from config import GENERATION_MAX_ATTEMPTS, GENERATION_RETRY_DELAY, MAX_PAGE_CHARS
from fallback import generate_fallback_quiz
from llm import GenerationSession
from prompts import build_quiz_prompt
from schemas import (
    GenerationAttempt,
    GenerationConfig,
    GenerationOutcome,
    GenerationState,
    GenerationStatusOut,
    Quiz,
)
from scraper import PageContentError, StaticPageProvider
from store import (
    ERROR,
    GENERATION_ATTEMPT,
    GENERATION_COMPLETE,
    GENERATION_STATE,
    LOADING,
    PROGRESS_KEYS,
    TEST_DATA,
)
from utils import extract_json, validate_quiz

logger = logging.getLogger(__name__)

NO_TYPES_ERROR = "Please select at least one test type"
NO_PAGE_ACCESS_ERROR = "Page content access is not available"
CANCELLED_MESSAGE = "Generation cancelled by user"
INTERRUPTED_ERROR = "Generation was interrupted before the page was captured; please try again"


class GenerationInProgressError(Exception):
    pass


class CancellationToken:
    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class GenerationOrchestrator:
    def __init__(
        self,
        store,
        model=None,
        session=None,
        max_attempts: int = GENERATION_MAX_ATTEMPTS,
        retry_delay: float = GENERATION_RETRY_DELAY,
        max_page_chars: int = MAX_PAGE_CHARS,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.model = model
        if session is None and model is not None:
            session = GenerationSession(model)
        self.session = session
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.max_page_chars = max_page_chars
        self.sleep = sleep
        self.state = GenerationState.IDLE
        self._token: Optional[CancellationToken] = None

    @property
    def running(self) -> bool:
        return self._token is not None

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------
    def reserve(self) -> CancellationToken:
        """Claim the single generation slot; a second concurrent run is rejected."""
        if self._token is not None:
            raise GenerationInProgressError("A test is already being generated")
        self._token = CancellationToken()
        return self._token

    def cancel(self) -> bool:
        """Cancel the live run, or mark a persisted interrupted run so it is never restarted."""
        live = self._token is not None
        if live:
            logger.info("Cancellation requested")
            self._token.cancel()
        raw = self.store.get(GENERATION_ATTEMPT)
        if isinstance(raw, dict) and (live or self.store.get(LOADING)):
            self.store.set(GENERATION_ATTEMPT, {**raw, "cancelled": True})
            if not live:
                logger.info("Cancellation recorded for interrupted generation")
            return True
        return live

    async def generate(self, config: GenerationConfig, provider, token: Optional[CancellationToken] = None) -> GenerationOutcome:
        if token is None:
            token = self.reserve()
        try:
            return await self._run(config, provider, token)
        finally:
            self._release(token)

    async def resume(self, token: Optional[CancellationToken] = None) -> Optional[GenerationOutcome]:
        """Restart an interrupted run from its persisted config and page snapshot."""
        if token is None:
            token = self.reserve()
        try:
            raw = await asyncio.to_thread(self.store.get, GENERATION_ATTEMPT)
            if raw is None:
                return None
            try:
                attempt = GenerationAttempt.model_validate(raw)
            except ValidationError as e:
                logger.error("Discarding unreadable generation snapshot: %s", e)
                return await self._finish(GenerationState.FAILED, error=INTERRUPTED_ERROR)
            if attempt.cancelled:
                return await self._finish(GenerationState.CANCELLED, attempt)
            logger.info("Restarting interrupted generation for %r", attempt.page.title)
            return await self._run(attempt.config, StaticPageProvider(attempt.page), token)
        finally:
            self._release(token)

    def reattach(self) -> GenerationStatusOut:
        data = self.store.get_many(LOADING, GENERATION_STATE, GENERATION_COMPLETE, GENERATION_ATTEMPT, TEST_DATA, ERROR)
        quiz = Quiz.model_validate(data[TEST_DATA]) if data.get(TEST_DATA) else None
        state = GenerationState(data.get(GENERATION_STATE) or GenerationState.IDLE.value)

        if data.get(GENERATION_COMPLETE) and quiz is not None:
            self.store.remove(*PROGRESS_KEYS)
            return GenerationStatusOut(state=GenerationState.SUCCEEDED, quiz=quiz)

        if data.get(LOADING):
            if self.running:
                return GenerationStatusOut(state=self.state, loading=True)
            snapshot = data.get(GENERATION_ATTEMPT)
            if isinstance(snapshot, dict) and snapshot.get("cancelled"):
                self._persist(GenerationState.CANCELLED, _final_values(), drop_attempt=True)
                return GenerationStatusOut(state=GenerationState.CANCELLED, quiz=quiz)
            if snapshot is not None:
                return GenerationStatusOut(state=state, loading=True, needs_restart=True)
            # Died while fetching the page: nothing to restart from.
            self._persist(GenerationState.FAILED, _final_values(error=INTERRUPTED_ERROR))
            return GenerationStatusOut(state=GenerationState.FAILED, quiz=quiz, error=INTERRUPTED_ERROR)

        return GenerationStatusOut(state=state, quiz=quiz, error=data.get(ERROR) or None)

    def clear(self) -> None:
        self.cancel()
        self.store.clear()
        self.state = GenerationState.IDLE

    def _release(self, token: CancellationToken) -> None:
        if self.session is not None:
            self.session.reset()
        if self._token is token:
            self._token = None

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    async def _run(self, config: GenerationConfig, provider, token: CancellationToken) -> GenerationOutcome:
        if not config.selected_types:
            return await self._finish(GenerationState.FAILED, error=NO_TYPES_ERROR)
        if provider is None:
            return await self._finish(GenerationState.FAILED, error=NO_PAGE_ACCESS_ERROR)

        await self._transition(GenerationState.PREPARING, {LOADING: True, GENERATION_COMPLETE: False, ERROR: ""})
        try:
            page = await provider.fetch()
        except PageContentError as e:
            logger.error("Page content unavailable: %s", e)
            return await self._finish(GenerationState.FAILED, error=str(e))

        attempt = GenerationAttempt(config=config, page=page, cancelled=token.cancelled)
        await asyncio.to_thread(self.store.set, GENERATION_ATTEMPT, attempt.model_dump(mode="json"))

        page_text = f"{page.title}\n\n{page.text}"[: self.max_page_chars]
        prompt = build_quiz_prompt(config.selected_types, config.question_count, page_text)

        if self.session is None:
            logger.info("No language model available; using fallback generator")
            quiz = generate_fallback_quiz(page, config.selected_types, config.question_count)
            return await self._commit(quiz, attempt, token, used_fallback=True)

        while True:
            if token.cancelled:
                return await self._finish(GenerationState.CANCELLED, attempt)

            await self._transition(GenerationState.PROMPTING)
            try:
                raw = await self.session.run(prompt)
                logger.info("Attempt %d - raw output (first 200): %s", attempt.attempts_made + 1, raw[:200])
                await self._transition(GenerationState.VALIDATING)
                quiz = validate_quiz(extract_json(raw), default_title=page.title)
            except Exception as e:
                attempt = attempt.model_copy(
                    update={"attempts_made": attempt.attempts_made + 1, "cancelled": token.cancelled}
                )
                logger.warning("Attempt %d failed: %s", attempt.attempts_made, e)
                if attempt.attempts_made >= self.max_attempts:
                    return await self._finish(
                        GenerationState.EXHAUSTED,
                        attempt,
                        error=f"Failed after {self.max_attempts} attempts: {e}",
                    )
                self.session.reset()
                await self._transition(GenerationState.RETRYING, {GENERATION_ATTEMPT: attempt.model_dump(mode="json")})
                await self.sleep(self.retry_delay)
                continue

            return await self._commit(quiz, attempt, token)

    async def _commit(self, quiz: Quiz, attempt: GenerationAttempt, token: CancellationToken, used_fallback: bool = False) -> GenerationOutcome:
        if token.cancelled:
            return await self._finish(GenerationState.CANCELLED, attempt)
        logger.info("Generated %d questions for %r", len(quiz.questions), quiz.source_title)
        return await self._finish(GenerationState.SUCCEEDED, attempt, quiz=quiz, used_fallback=used_fallback)

    def _persist(self, state: GenerationState, extra: Optional[dict] = None, drop_attempt: bool = False) -> None:
        self.state = state
        values = {GENERATION_STATE: state.value}
        values.update(extra or {})
        self.store.set_many(values)
        if drop_attempt:
            self.store.remove(GENERATION_ATTEMPT)
        logger.debug("Generation state -> %s", state.value)

    async def _transition(self, state: GenerationState, extra: Optional[dict] = None) -> None:
        # SQLAlchemy calls are blocking; keep them off the event loop.
        await asyncio.to_thread(self._persist, state, extra)

    async def _finish(
        self,
        state: GenerationState,
        attempt: Optional[GenerationAttempt] = None,
        quiz: Optional[Quiz] = None,
        error: Optional[str] = None,
        used_fallback: bool = False,
    ) -> GenerationOutcome:
        await asyncio.to_thread(self._persist, state, _final_values(quiz, error), True)

        if error:
            logger.error("Generation %s: %s", state.value, error)
        attempts_made = attempt.attempts_made if attempt is not None else 0
        return GenerationOutcome(
            state=state,
            quiz=quiz,
            error=CANCELLED_MESSAGE if state == GenerationState.CANCELLED else error,
            attempts_made=attempts_made,
            used_fallback=used_fallback,
        )


def _final_values(quiz: Optional[Quiz] = None, error: Optional[str] = None) -> dict:
    # The completion marker must track this run, never an earlier success.
    values = {LOADING: False, ERROR: error or "", GENERATION_COMPLETE: quiz is not None}
    if quiz is not None:
        values[TEST_DATA] = quiz.model_dump(mode="json")
    return values
