# tenderly/database.py
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from .config import get_settings

logger = logging.getLogger(__name__)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


database_url = get_settings().database_url

# Create engine
engine = create_engine(database_url, echo=False, **_engine_kwargs(database_url))

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()

# Dependency to get database session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def create_tables():
    """Create all database tables - MUST import models first!"""
    from . import models  # registers tables on Base.metadata

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")
