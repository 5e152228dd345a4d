"""
Database configuration and session management using SQLAlchemy.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from cooccur import config


def make_engine(database_url: str = None):
    """
    Build an engine for the given URL (defaults to DATABASE_URL).
    SQLite gets check_same_thread=False so the worker's classifier threads
    and FastAPI's threadpool can share it.
    """
    url = database_url or config.DATABASE_URL
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
        if url.startswith("sqlite:///") and ":memory:" not in url:
            config.DATA_DIR.mkdir(parents=True, exist_ok=True)
    return create_engine(
        url,
        connect_args=connect_args,
        echo=False  # Set to True for SQL debug logging
    )


engine = make_engine()

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


def get_db():
    """
    Dependency for FastAPI routes to get a DB session.
    Usage:
        @app.get("/endpoint")
        def endpoint(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """
    Initialize database tables.
    Import models before calling this to ensure tables are registered.
    """
    from cooccur import models  # Import here to avoid circular imports
    Base.metadata.create_all(bind=bind or engine)
