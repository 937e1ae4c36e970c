# db.py
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from config import DATABASE_URL


def make_engine(url: str):
    if url.startswith("sqlite"):
        # The generation task and request handlers share the engine across threads.
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, pool_recycle=3600)


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


@contextmanager
def get_session(factory=None):
    db = (factory or SessionLocal)()
    try:
        yield db
    finally:
        db.close()
