import asyncio
import json
import threading

import pytest

from orchestrator import (
    CANCELLED_MESSAGE,
    INTERRUPTED_ERROR,
    NO_PAGE_ACCESS_ERROR,
    NO_TYPES_ERROR,
    GenerationInProgressError,
    GenerationOrchestrator,
)
from schemas import GenerationAttempt, GenerationConfig, GenerationState, QuestionType, Quiz
from scraper import MissingPageProvider, StaticPageProvider
from store import (
    ERROR,
    GENERATION_ATTEMPT,
    GENERATION_COMPLETE,
    GENERATION_STATE,
    KeyValueStore,
    LOADING,
    TEST_DATA,
)

from conftest import FakeLanguageModel, quiz_json, quiz_payload

MCQ_TF = [QuestionType.MCQ, QuestionType.TRUE_FALSE]


class RecordingSleep:
    def __init__(self, hook=None):
        self.delays = []
        self.hook = hook

    async def __call__(self, delay):
        self.delays.append(delay)
        if self.hook is not None:
            self.hook()


class RecordingStore(KeyValueStore):
    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.states = []

    def set_many(self, values):
        if GENERATION_STATE in values:
            self.states.append(values[GENERATION_STATE])
        super().set_many(values)


class AlwaysFailingSession:
    def __init__(self):
        self.events = []

    async def run(self, prompt):
        self.events.append("run")
        raise RuntimeError("model exploded")

    def reset(self):
        self.events.append("reset")


def _run(orchestrator, config, page):
    return asyncio.run(orchestrator.generate(config, StaticPageProvider(page)))


# -----------------------------------------------------------------------------
# Happy path
# -----------------------------------------------------------------------------
def test_end_to_end_first_try_success(store, page):
    reply = quiz_json(n_mcq=3, n_tf=2)
    model = FakeLanguageModel(replies=[reply])
    sleep = RecordingSleep()
    orch = GenerationOrchestrator(store, model, sleep=sleep)

    outcome = _run(orch, GenerationConfig(selected_types=MCQ_TF, question_count=5), page)

    assert outcome.state == GenerationState.SUCCEEDED
    assert outcome.attempts_made == 0
    assert not outcome.used_fallback
    assert len(outcome.quiz.questions) == 5
    assert sleep.delays == []

    prompt = model.prompts[0]
    assert "Generate exactly 3 multiple-choice questions" in prompt
    assert "Generate exactly 2 true/false questions" in prompt
    assert prompt.rstrip().endswith(page.text)

    assert store.get(TEST_DATA) == json.loads(reply)
    assert store.get(GENERATION_COMPLETE) is True
    assert store.get(LOADING) is False
    assert store.get(GENERATION_ATTEMPT) is None
    assert not orch.running


def test_every_transition_is_persisted(session_factory, page):
    store = RecordingStore(session_factory)
    model = FakeLanguageModel(replies=["garbage", quiz_json(n_tf=3)])
    orch = GenerationOrchestrator(store, model, sleep=RecordingSleep())

    outcome = _run(orch, GenerationConfig(selected_types=[QuestionType.TRUE_FALSE], question_count=3), page)

    assert outcome.state == GenerationState.SUCCEEDED
    assert outcome.attempts_made == 1
    assert store.states == [
        "preparing", "prompting", "validating", "retrying", "prompting", "validating", "succeeded",
    ]


def test_fenced_reply_without_title_uses_page_title(store, page):
    payload = quiz_payload(n_fill=3)
    del payload["source_title"]
    model = FakeLanguageModel(replies=["```json\n" + json.dumps(payload) + "\n```"])
    orch = GenerationOrchestrator(store, model, sleep=RecordingSleep())

    outcome = _run(orch, GenerationConfig(selected_types=[QuestionType.FILL_IN], question_count=3), page)

    assert outcome.quiz.source_title == page.title


def test_page_text_is_truncated(store, page):
    model = FakeLanguageModel(replies=[quiz_json(n_tf=3)])
    orch = GenerationOrchestrator(store, model, max_page_chars=50, sleep=RecordingSleep())

    _run(orch, GenerationConfig(selected_types=[QuestionType.TRUE_FALSE], question_count=3), page)

    expected = f"{page.title}\n\n{page.text}"[:50]
    assert model.prompts[0].endswith("Content:\n" + expected + "\n")


# -----------------------------------------------------------------------------
# Retries
# -----------------------------------------------------------------------------
def test_retry_bound_with_session_that_always_throws(store, page):
    session = AlwaysFailingSession()
    sleep = RecordingSleep()
    orch = GenerationOrchestrator(store, session=session, retry_delay=0.5, sleep=sleep)

    outcome = _run(orch, GenerationConfig(selected_types=MCQ_TF, question_count=5), page)

    assert outcome.state == GenerationState.EXHAUSTED
    assert outcome.attempts_made == 3
    assert outcome.error == "Failed after 3 attempts: model exploded"
    assert outcome.quiz is None
    assert session.events.count("run") == 3
    assert session.events[:5] == ["run", "reset", "run", "reset", "run"]
    assert sleep.delays == [0.5, 0.5]

    assert store.get(ERROR) == outcome.error
    assert store.get(LOADING) is False
    assert store.get(GENERATION_ATTEMPT) is None
    assert store.get(TEST_DATA) is None


def test_max_attempts_is_configurable(store, page):
    session = AlwaysFailingSession()
    orch = GenerationOrchestrator(store, session=session, max_attempts=5, sleep=RecordingSleep())
    outcome = _run(orch, GenerationConfig(selected_types=MCQ_TF), page)
    assert outcome.attempts_made == 5
    assert session.events.count("run") == 5


def test_invalid_shape_is_retried_with_fresh_session(store, page):
    bad = json.dumps({"source_title": "t", "questions": [{"question": "q", "type": "mcq", "options": ["a"]}]})
    model = FakeLanguageModel(replies=[bad, quiz_json(n_mcq=3)])
    orch = GenerationOrchestrator(store, model, sleep=RecordingSleep())

    outcome = _run(orch, GenerationConfig(selected_types=[QuestionType.MCQ], question_count=3), page)

    assert outcome.state == GenerationState.SUCCEEDED
    assert outcome.attempts_made == 1
    assert len(model.sessions) == 2
    assert model.sessions[0].destroyed


def test_failed_run_keeps_previous_quiz(store, page):
    previous = quiz_payload(n_tf=3, title="Earlier page")
    store.set(TEST_DATA, previous)
    model = FakeLanguageModel(default_reply="never json")
    orch = GenerationOrchestrator(store, model, sleep=RecordingSleep())

    outcome = _run(orch, GenerationConfig(selected_types=MCQ_TF), page)

    assert outcome.state == GenerationState.EXHAUSTED
    assert "No JSON found in response" in outcome.error
    assert store.get(TEST_DATA) == previous


# -----------------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------------
def test_cancel_before_first_retry_stops_model_calls(store, page):
    model = FakeLanguageModel(replies=["bad", quiz_json(n_mcq=3)])
    holder = {}
    orch = GenerationOrchestrator(store, model, sleep=RecordingSleep(hook=lambda: holder["orch"].cancel()))
    holder["orch"] = orch

    outcome = _run(orch, GenerationConfig(selected_types=[QuestionType.MCQ], question_count=3), page)

    assert outcome.state == GenerationState.CANCELLED
    assert outcome.error == CANCELLED_MESSAGE
    assert outcome.quiz is None
    assert len(model.prompts) == 1
    assert store.get(TEST_DATA) is None
    assert store.get(ERROR) == ""


def test_cancel_before_start_makes_no_model_calls(store, page):
    model = FakeLanguageModel(replies=[quiz_json(n_mcq=3)])
    orch = GenerationOrchestrator(store, model, sleep=RecordingSleep())
    token = orch.reserve()
    assert orch.cancel() is True

    outcome = asyncio.run(orch.generate(GenerationConfig(selected_types=[QuestionType.MCQ]), StaticPageProvider(page), token))

    assert outcome.state == GenerationState.CANCELLED
    assert model.prompts == []


def test_cancel_during_model_call_discards_result(store, page):
    holder = {}
    model = FakeLanguageModel(replies=[quiz_json(n_mcq=3)], on_prompt=lambda: holder["orch"].cancel())
    orch = GenerationOrchestrator(store, model, sleep=RecordingSleep())
    holder["orch"] = orch

    outcome = _run(orch, GenerationConfig(selected_types=[QuestionType.MCQ], question_count=3), page)

    assert outcome.state == GenerationState.CANCELLED
    assert outcome.quiz is None
    assert store.get(TEST_DATA) is None
    assert store.get(GENERATION_COMPLETE) is not True


def test_cancel_when_idle_is_a_noop(store):
    assert GenerationOrchestrator(store).cancel() is False


# -----------------------------------------------------------------------------
# Preconditions, page errors, fallback
# -----------------------------------------------------------------------------
def test_no_selected_types_fails_immediately(store, page):
    model = FakeLanguageModel()
    orch = GenerationOrchestrator(store, model)
    outcome = _run(orch, GenerationConfig(selected_types=[]), page)

    assert outcome.state == GenerationState.FAILED
    assert outcome.error == NO_TYPES_ERROR
    assert model.events == []
    assert store.get(ERROR) == NO_TYPES_ERROR


def test_missing_page_access_fails_immediately(store):
    orch = GenerationOrchestrator(store, FakeLanguageModel())
    outcome = asyncio.run(orch.generate(GenerationConfig(selected_types=MCQ_TF), None))
    assert outcome.state == GenerationState.FAILED
    assert outcome.error == NO_PAGE_ACCESS_ERROR


def test_page_errors_are_fatal_without_retry(store):
    model = FakeLanguageModel()
    orch = GenerationOrchestrator(store, model, sleep=RecordingSleep())
    outcome = asyncio.run(orch.generate(GenerationConfig(selected_types=MCQ_TF), MissingPageProvider()))

    assert outcome.state == GenerationState.FAILED
    assert outcome.error == "No active tab found"
    assert model.prompts == []
    assert store.get(LOADING) is False


def test_without_model_the_fallback_generator_is_used(store, page, all_types):
    orch = GenerationOrchestrator(store, None)
    outcome = _run(orch, GenerationConfig(selected_types=all_types, question_count=7), page)

    assert outcome.state == GenerationState.SUCCEEDED
    assert outcome.used_fallback
    assert [q.type for q in outcome.quiz.questions] == ["mcq"] * 3 + ["true_false"] * 2 + ["fill_in"] * 2
    assert store.get(GENERATION_COMPLETE) is True


def test_second_concurrent_run_is_rejected(store, page):
    orch = GenerationOrchestrator(store, None)
    orch.reserve()
    with pytest.raises(GenerationInProgressError):
        _run(orch, GenerationConfig(selected_types=MCQ_TF), page)


# -----------------------------------------------------------------------------
# Re-attachment and restart
# -----------------------------------------------------------------------------
def test_reattach_after_success_loads_quiz_and_clears_markers(store, page):
    orch = GenerationOrchestrator(store, FakeLanguageModel(replies=[quiz_json(n_tf=3)]), sleep=RecordingSleep())
    _run(orch, GenerationConfig(selected_types=[QuestionType.TRUE_FALSE], question_count=3), page)

    status = orch.reattach()
    assert status.state == GenerationState.SUCCEEDED
    assert not status.loading
    assert len(status.quiz.questions) == 3
    assert store.get(GENERATION_COMPLETE) is None
    assert store.get(GENERATION_STATE) is None

    again = orch.reattach()
    assert again.state == GenerationState.IDLE
    assert again.quiz == status.quiz


def test_reattach_reports_terminal_error(store, page):
    orch = GenerationOrchestrator(store, session=AlwaysFailingSession(), sleep=RecordingSleep())
    _run(orch, GenerationConfig(selected_types=MCQ_TF), page)

    status = orch.reattach()
    assert status.state == GenerationState.EXHAUSTED
    assert status.error.startswith("Failed after 3 attempts")
    assert not status.loading


def test_interrupted_run_is_restarted_from_snapshot(store, page):
    config = GenerationConfig(selected_types=[QuestionType.FILL_IN], question_count=3)
    store.set_many({
        LOADING: True,
        GENERATION_STATE: "retrying",
        GENERATION_ATTEMPT: GenerationAttempt(config=config, page=page, attempts_made=2).model_dump(mode="json"),
    })
    model = FakeLanguageModel(replies=[quiz_json(n_fill=3)])
    orch = GenerationOrchestrator(store, model, sleep=RecordingSleep())

    status = orch.reattach()
    assert status.loading and status.needs_restart

    outcome = asyncio.run(orch.resume())
    assert outcome.state == GenerationState.SUCCEEDED
    # A restart begins a fresh pipeline rather than continuing the old retry count.
    assert outcome.attempts_made == 0
    assert page.text in model.prompts[0]
    assert "Generate exactly 3 fill-in-the-blank questions" in model.prompts[0]
    assert Quiz.model_validate(store.get(TEST_DATA)) == outcome.quiz


def test_interrupted_before_page_capture_is_reported_as_failure(store):
    store.set_many({LOADING: True, GENERATION_STATE: "preparing"})
    orch = GenerationOrchestrator(store, None)

    status = orch.reattach()

    assert status.state == GenerationState.FAILED
    assert status.error == INTERRUPTED_ERROR
    assert store.get(LOADING) is False


def test_resume_without_snapshot_does_nothing(store):
    orch = GenerationOrchestrator(store, None)
    token = orch.reserve()
    assert asyncio.run(orch.resume(token)) is None
    assert not orch.running


def test_clear_forgets_everything(store, page):
    orch = GenerationOrchestrator(store, None)
    _run(orch, GenerationConfig(selected_types=MCQ_TF), page)
    orch.clear()
    assert store.get(TEST_DATA) is None
    assert orch.reattach().state == GenerationState.IDLE


def _seed_interrupted_run(store, page, **snapshot):
    config = GenerationConfig(selected_types=[QuestionType.TRUE_FALSE], question_count=3)
    store.set_many({
        LOADING: True,
        GENERATION_STATE: "prompting",
        GENERATION_ATTEMPT: GenerationAttempt(config=config, page=page, **snapshot).model_dump(mode="json"),
    })


def test_cancel_of_interrupted_run_is_persisted(store, page):
    _seed_interrupted_run(store, page)
    model = FakeLanguageModel(replies=[quiz_json(n_tf=3)])
    orch = GenerationOrchestrator(store, model, sleep=RecordingSleep())

    assert orch.cancel() is True
    assert store.get(GENERATION_ATTEMPT)["cancelled"] is True

    status = orch.reattach()
    assert status.state == GenerationState.CANCELLED
    assert not status.loading
    assert not status.needs_restart
    assert model.events == []
    assert store.get(LOADING) is False
    assert store.get(GENERATION_ATTEMPT) is None
    assert store.get(TEST_DATA) is None


def test_resume_honours_cancelled_snapshot(store, page):
    _seed_interrupted_run(store, page, cancelled=True)
    model = FakeLanguageModel(replies=[quiz_json(n_tf=3)])
    orch = GenerationOrchestrator(store, model, sleep=RecordingSleep())

    outcome = asyncio.run(orch.resume(orch.reserve()))

    assert outcome.state == GenerationState.CANCELLED
    assert outcome.quiz is None
    assert model.prompts == []
    assert store.get(TEST_DATA) is None
    assert not orch.running


def test_unreadable_snapshot_fails_and_frees_the_slot(store):
    store.set_many({LOADING: True, GENERATION_STATE: "prompting", GENERATION_ATTEMPT: {"config": "garbage"}})
    orch = GenerationOrchestrator(store, None)

    assert orch.reattach().needs_restart
    outcome = asyncio.run(orch.resume(orch.reserve()))

    assert outcome.state == GenerationState.FAILED
    assert outcome.error == INTERRUPTED_ERROR
    assert not orch.running
    assert store.get(GENERATION_ATTEMPT) is None
    assert store.get(LOADING) is False
    orch.reserve()


def test_failure_after_unread_success_is_not_reported_as_success(store, page):
    orch = GenerationOrchestrator(store, None)
    _run(orch, GenerationConfig(selected_types=MCQ_TF), page)

    outcome = _run(orch, GenerationConfig(selected_types=[]), page)
    assert outcome.state == GenerationState.FAILED

    status = orch.reattach()
    assert status.state == GenerationState.FAILED
    assert status.error == NO_TYPES_ERROR
    assert store.get(GENERATION_COMPLETE) is False


class ThreadRecordingStore(KeyValueStore):
    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.threads = set()

    def set_many(self, values):
        self.threads.add(threading.get_ident())
        super().set_many(values)

    def remove(self, *keys):
        self.threads.add(threading.get_ident())
        super().remove(*keys)


def test_store_writes_run_off_the_event_loop(session_factory, page):
    store = ThreadRecordingStore(session_factory)
    model = FakeLanguageModel(replies=["garbage", quiz_json(n_tf=3)])
    orch = GenerationOrchestrator(store, model, sleep=RecordingSleep())

    outcome = _run(orch, GenerationConfig(selected_types=[QuestionType.TRUE_FALSE], question_count=3), page)

    assert outcome.state == GenerationState.SUCCEEDED
    assert store.threads
    assert threading.get_ident() not in store.threads
