# history.py
"""Saved tests: the records a generated quiz seeds once the user keeps it."""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from db import SessionLocal, get_session
from models import SavedTest
from schemas import Quiz, SavedTestOut
from scoring import score_quiz

logger = logging.getLogger(__name__)


class SavedTestNotFoundError(Exception):
    pass


def to_out(row: SavedTest) -> SavedTestOut:
    return SavedTestOut(
        id=row.id,
        title=row.title,
        quiz=Quiz.model_validate(row.quiz),
        saved_at=row.saved_at.isoformat(),
        is_completed=row.is_completed,
        is_archived=row.is_archived,
        user_answers=row.user_answers or {},
        current_question=row.current_question,
        time_left=row.time_left,
        score=row.score,
        percentage=row.percentage,
        completed_at=row.completed_at.isoformat() if row.completed_at else None,
    )


class SavedTestHistory:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def _get(self, db, test_id: str) -> SavedTest:
        row = db.get(SavedTest, test_id)
        if row is None:
            raise SavedTestNotFoundError(f"Saved test {test_id} not found")
        return row

    def _update(self, test_id: str, **fields) -> SavedTestOut:
        with get_session(self.session_factory) as db:
            row = self._get(db, test_id)
            for name, value in fields.items():
                setattr(row, name, value)
            db.commit()
            db.refresh(row)
            return to_out(row)

    def save_test(self, quiz: Quiz, title: Optional[str] = None) -> SavedTestOut:
        with get_session(self.session_factory) as db:
            row = SavedTest(
                id=str(uuid.uuid4()),
                title=title or quiz.source_title or "Untitled Test",
                quiz=quiz.model_dump(mode="json"),
                saved_at=datetime.utcnow(),
                user_answers={},
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            logger.info("Saved test %s (%d questions)", row.id, len(quiz.questions))
            return to_out(row)

    def get_test(self, test_id: str) -> SavedTestOut:
        with get_session(self.session_factory) as db:
            return to_out(self._get(db, test_id))

    def list_tests(self, tab: str = "active") -> List[SavedTestOut]:
        with get_session(self.session_factory) as db:
            q = db.query(SavedTest)
            if tab == "active":
                q = q.filter(SavedTest.is_completed.is_(False), SavedTest.is_archived.is_(False))
            elif tab == "completed":
                q = q.filter(SavedTest.is_completed.is_(True), SavedTest.is_archived.is_(False))
            elif tab == "archived":
                q = q.filter(SavedTest.is_archived.is_(True))
            else:
                raise ValueError(f"Unknown history tab: {tab}")
            return [to_out(r) for r in q.order_by(SavedTest.saved_at.desc()).all()]

    def update_progress(
        self,
        test_id: str,
        user_answers: Dict[str, Any],
        current_question: Optional[int] = None,
        time_left: Optional[int] = None,
    ) -> SavedTestOut:
        return self._update(
            test_id,
            user_answers=dict(user_answers),
            current_question=current_question,
            time_left=time_left,
        )

    def submit_test(self, test_id: str, user_answers: Dict[str, Any]) -> SavedTestOut:
        quiz = self.get_test(test_id).quiz
        result = score_quiz(quiz, user_answers)
        return self._update(
            test_id,
            user_answers=dict(user_answers),
            is_completed=True,
            completed_at=datetime.utcnow(),
            score=result.score,
            percentage=result.percentage,
        )

    def retake_test(self, test_id: str) -> SavedTestOut:
        return self._update(
            test_id,
            user_answers={},
            is_completed=False,
            completed_at=None,
            score=None,
            percentage=None,
            current_question=0,
            time_left=None,
        )

    def archive_test(self, test_id: str) -> SavedTestOut:
        return self._update(test_id, is_archived=True)

    def unarchive_test(self, test_id: str) -> SavedTestOut:
        return self._update(test_id, is_archived=False)

    def delete_test(self, test_id: str) -> None:
        with get_session(self.session_factory) as db:
            db.delete(self._get(db, test_id))
            db.commit()
        logger.info("Deleted test %s", test_id)
