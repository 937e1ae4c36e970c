# main.py
import asyncio
import logging

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, HttpUrl

from config import LOG_LEVEL
from db import Base, engine
import models  # noqa: F401  (registers tables on Base)
import schemas
from history import SavedTestHistory, SavedTestNotFoundError
from llm import ask, get_language_model, is_test_generation_request, ping_llm
from orchestrator import GenerationInProgressError, GenerationOrchestrator
from scoring import score_quiz
from scraper import MissingPageProvider, PageContentError, StaticPageProvider, UrlPageProvider, scrape_page
from store import KeyValueStore

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# App & CORS
# -----------------------------------------------------------------------------
app = FastAPI(title="ManifesTest - Page Quiz Generator")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # the popup calls from a chrome-extension:// origin
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Create tables at startup
Base.metadata.create_all(bind=engine)

store = KeyValueStore()
history = SavedTestHistory()
language_model = get_language_model()
orchestrator = GenerationOrchestrator(store, language_model)

if language_model is None:
    logger.warning("GOOGLE_API_KEY not set; quizzes will come from the offline fallback generator")

# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------
@app.get("/api/health")
def health():
    return {"status": "ok", "model_available": language_model is not None}

# -----------------------------------------------------------------------------
# LLM smoke test (quick check that Gemini works)
# -----------------------------------------------------------------------------
@app.get("/api/llm-test")
async def llm_test():
    return await ping_llm(language_model)


@app.get("/api/model-params", response_model=schemas.ModelParams)
async def model_params():
    if language_model is None:
        raise HTTPException(status_code=503, detail="No language model available")
    return await asyncio.to_thread(language_model.params)

# -----------------------------------------------------------------------------
# Scraper smoke test (quick check that page fetch works)
# -----------------------------------------------------------------------------
class UrlIn(BaseModel):
    url: HttpUrl

@app.post("/api/scrape")
def scrape_only(payload: UrlIn):
    try:
        page = scrape_page(str(payload.url))
        return {
            "ok": True,
            "title": page.title,
            "favicon": page.favicon,
            "text_len": len(page.text),
        }
    except PageContentError as e:
        return {"ok": False, "error": str(e)}

# -----------------------------------------------------------------------------
# Generate quiz (page -> LLM -> validate, runs in the background)
# -----------------------------------------------------------------------------
def _provider_for(payload: schemas.GenerateIn):
    if payload.page is not None:
        return StaticPageProvider(payload.page)
    if payload.url is not None:
        return UrlPageProvider(str(payload.url))
    return MissingPageProvider()


@app.post("/api/generate", response_model=schemas.GenerationStatusOut, status_code=202)
async def generate_quiz(payload: schemas.GenerateIn, background_tasks: BackgroundTasks):
    config = schemas.GenerationConfig(
        selected_types=payload.selected_types,
        question_count=payload.question_count,
    )
    try:
        token = orchestrator.reserve()
    except GenerationInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if not config.selected_types:
        # Precondition failure: answer now instead of via the status endpoint.
        outcome = await orchestrator.generate(config, _provider_for(payload), token=token)
        raise HTTPException(status_code=400, detail=outcome.error)

    # Runs after the response is sent, so the popup may close without killing it.
    background_tasks.add_task(orchestrator.generate, config, _provider_for(payload), token)
    return schemas.GenerationStatusOut(state=schemas.GenerationState.PREPARING, loading=True)


@app.get("/api/generate/status", response_model=schemas.GenerationStatusOut)
async def generation_status(background_tasks: BackgroundTasks):
    status = await asyncio.to_thread(orchestrator.reattach)
    if status.needs_restart:
        try:
            token = orchestrator.reserve()
        except GenerationInProgressError:
            logger.info("Restart already in progress")
        else:
            background_tasks.add_task(orchestrator.resume, token)
    return status


@app.post("/api/generate/cancel")
async def cancel_generation():
    return {"ok": await asyncio.to_thread(orchestrator.cancel)}


@app.post("/api/reset")
async def reset_state():
    await asyncio.to_thread(orchestrator.clear)
    return {"ok": True}

# -----------------------------------------------------------------------------
# Free-form questions to the model
# -----------------------------------------------------------------------------
@app.post("/api/ask", response_model=schemas.AskOut)
async def ask_model(payload: schemas.AskIn):
    prompt = payload.prompt.strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="Prompt is empty")
    if is_test_generation_request(prompt):
        return schemas.AskOut(route="generate")
    if language_model is None:
        raise HTTPException(status_code=503, detail="No language model available")
    try:
        content = await ask(language_model, prompt, payload.temperature, payload.top_k)
    except Exception as e:
        logger.error("Ask failed: %s", e)
        raise HTTPException(status_code=502, detail=str(e))
    return schemas.AskOut(content=content)

# -----------------------------------------------------------------------------
# Scoring
# -----------------------------------------------------------------------------
@app.post("/api/score", response_model=schemas.ScoreOut)
def score(payload: schemas.ScoreIn):
    return score_quiz(payload.quiz, payload.user_answers)

# -----------------------------------------------------------------------------
# Saved tests (history)
# -----------------------------------------------------------------------------
@app.get("/api/tests", response_model=schemas.HistoryOut)
def list_tests(tab: schemas.HistoryTab = "active"):
    return {"items": history.list_tests(tab)}


@app.post("/api/tests", response_model=schemas.SavedTestOut, status_code=201)
def save_test(payload: schemas.SaveTestIn):
    return history.save_test(payload.quiz, payload.title)


def _saved_test_call(fn, *args):
    try:
        return fn(*args)
    except SavedTestNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/api/tests/{test_id}", response_model=schemas.SavedTestOut)
def get_test(test_id: str):
    return _saved_test_call(history.get_test, test_id)


@app.put("/api/tests/{test_id}/progress", response_model=schemas.SavedTestOut)
def update_progress(test_id: str, payload: schemas.ProgressIn):
    return _saved_test_call(
        history.update_progress, test_id, payload.user_answers, payload.current_question, payload.time_left
    )


@app.post("/api/tests/{test_id}/submit", response_model=schemas.SavedTestOut)
def submit_test(test_id: str, payload: schemas.SubmitIn):
    return _saved_test_call(history.submit_test, test_id, payload.user_answers)


@app.post("/api/tests/{test_id}/retake", response_model=schemas.SavedTestOut)
def retake_test(test_id: str):
    return _saved_test_call(history.retake_test, test_id)


@app.post("/api/tests/{test_id}/archive", response_model=schemas.SavedTestOut)
def archive_test(test_id: str):
    return _saved_test_call(history.archive_test, test_id)


@app.post("/api/tests/{test_id}/unarchive", response_model=schemas.SavedTestOut)
def unarchive_test(test_id: str):
    return _saved_test_call(history.unarchive_test, test_id)


@app.delete("/api/tests/{test_id}", status_code=204)
def delete_test(test_id: str):
    _saved_test_call(history.delete_test, test_id)
