# models.py
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String
from db import Base


class KeyValueEntry(Base):
    __tablename__ = "kv_entries"

    key = Column(String(128), primary_key=True)
    value = Column(JSON)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SavedTest(Base):
    __tablename__ = "saved_tests"

    id = Column(String(36), primary_key=True)
    title = Column(String(512), nullable=False)
    quiz = Column(JSON, nullable=False)           # Quiz as produced by generation, never edited
    saved_at = Column(DateTime, default=datetime.utcnow, index=True)
    is_completed = Column(Boolean, default=False, nullable=False)
    is_archived = Column(Boolean, default=False, nullable=False)
    user_answers = Column(JSON)                   # {"0": 2, "1": true, "2": "word"}
    current_question = Column(Integer)
    time_left = Column(Integer)                   # seconds
    score = Column(Integer)
    percentage = Column(Float)
    completed_at = Column(DateTime)
