# store.py
"""Durable key-value store for generation progress (last write wins)."""
import logging
from typing import Any, Dict

from db import SessionLocal, get_session
from models import KeyValueEntry

logger = logging.getLogger(__name__)

# Well-known keys
LOADING = "loading"
GENERATION_STATE = "generation_state"
GENERATION_ATTEMPT = "generation_attempt"
GENERATION_COMPLETE = "generation_complete"
TEST_DATA = "test_data"
ERROR = "error"

PROGRESS_KEYS = (LOADING, GENERATION_STATE, GENERATION_ATTEMPT, GENERATION_COMPLETE)


class KeyValueStore:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def get(self, key: str, default: Any = None) -> Any:
        with get_session(self.session_factory) as db:
            row = db.get(KeyValueEntry, key)
            return row.value if row is not None else default

    def get_many(self, *keys: str) -> Dict[str, Any]:
        with get_session(self.session_factory) as db:
            rows = db.query(KeyValueEntry).filter(KeyValueEntry.key.in_(keys)).all()
            return {r.key: r.value for r in rows}

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, values: Dict[str, Any]) -> None:
        with get_session(self.session_factory) as db:
            for key, value in values.items():
                db.merge(KeyValueEntry(key=key, value=value))
            db.commit()

    def remove(self, *keys: str) -> None:
        with get_session(self.session_factory) as db:
            db.query(KeyValueEntry).filter(KeyValueEntry.key.in_(keys)).delete(synchronize_session=False)
            db.commit()

    def clear(self) -> None:
        with get_session(self.session_factory) as db:
            db.query(KeyValueEntry).delete()
            db.commit()
        logger.info("Cleared persisted generation state")
