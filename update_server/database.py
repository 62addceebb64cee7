from fastapi import Depends
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from update_server.settings import get_settings


def build_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False  # Needed for SQLite + multithreaded FastAPI
    return create_engine(url, connect_args=connect_args)


engine = build_engine(get_settings().database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_session_factory():
    return SessionLocal


def get_db(factory=Depends(get_session_factory)):
    db = factory()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    # Register the tables on Base before creating them
    import update_server.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
