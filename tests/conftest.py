import json
import os
import tempfile

# Must run before any backend module reads config.
_TMP_DIR = tempfile.mkdtemp(prefix="manifestest-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_TMP_DIR, "app.db")
os.environ["GOOGLE_API_KEY"] = ""

import pytest
from sqlalchemy.orm import sessionmaker

import models  # noqa: F401
from db import Base, make_engine
from schemas import ModelParams, PageContent, QuestionType
from store import KeyValueStore


class FakeSession:
    def __init__(self, model):
        self.model = model
        self.destroyed = False

    async def prompt(self, text):
        self.model.prompts.append(text)
        self.model.events.append("prompt")
        if self.model.on_prompt is not None:
            self.model.on_prompt()
        reply = self.model.replies.pop(0) if self.model.replies else self.model.default_reply
        if isinstance(reply, Exception):
            raise reply
        return reply

    def destroy(self):
        self.destroyed = True
        self.model.events.append("destroy")


class FakeLanguageModel:
    """Stands in for the Gemini capability: scripted replies, recorded calls."""

    model_name = "fake-model"

    def __init__(self, replies=(), default_reply="", on_prompt=None):
        self.replies = list(replies)
        self.default_reply = default_reply
        self.on_prompt = on_prompt
        self.prompts = []
        self.events = []
        self.sessions = []
        self.options = []

    def params(self):
        return ModelParams(default_temperature=0.8, default_top_k=8, max_top_k=8)

    async def create(self, options):
        self.options.append(options)
        self.events.append("create")
        session = FakeSession(self)
        self.sessions.append(session)
        return session


def quiz_payload(n_mcq=0, n_tf=0, n_fill=0, title="Photosynthesis"):
    questions = []
    for i in range(n_mcq):
        questions.append({
            "question": f"Which pigment absorbs light? ({i})",
            "type": "mcq",
            "options": ["Chlorophyll", "Keratin", "Hemoglobin", "Melanin"],
            "answer_index": 0,
        })
    for i in range(n_tf):
        questions.append({
            "question": f"Plants release oxygen. ({i})",
            "type": "true_false",
            "answer": True,
        })
    for i in range(n_fill):
        questions.append({
            "question": f"Photosynthesis happens in the ____. ({i})",
            "type": "fill_in",
            "answer": "chloroplast",
        })
    return {"source_title": title, "questions": questions}


def quiz_json(**kwargs):
    return json.dumps(quiz_payload(**kwargs))


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return KeyValueStore(session_factory)


@pytest.fixture
def page():
    return PageContent(
        title="Photosynthesis - Wikipedia",
        text=(
            "Photosynthesis is a process used by plants. It converts light energy into chemical energy.\n"
            "Chlorophyll absorbs light. Oxygen is released as a by-product. Glucose stores energy"
        ),
        favicon="https://en.wikipedia.org/favicon.ico",
    )


@pytest.fixture
def all_types():
    return [QuestionType.MCQ, QuestionType.TRUE_FALSE, QuestionType.FILL_IN]
