# -*- coding: utf-8 -*-
"""
Database models for Story Studio
Uses SQLAlchemy with SQLite (easily upgradeable to PostgreSQL)
"""

import os
from datetime import datetime
from typing import Optional
from sqlalchemy import create_engine, Column, String, Text, DateTime
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import NullPool, StaticPool
from contextlib import contextmanager

from config import app_config

Base = declarative_base()


class Setting(Base):
    """Key-value table for small persisted application state"""
    __tablename__ = "settings"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


engine = None
SessionLocal = None


def init_db(database_url: str = None):
    """Initialize database connection"""
    global engine, SessionLocal

    if database_url is None:
        database_url = os.environ.get("DATABASE_URL")

        # Render/Heroku uses postgres:// but SQLAlchemy needs postgresql://
        if database_url and database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)

    if database_url is None:
        app_config.ensure_dirs()
        database_url = app_config.database_url

    is_sqlite = "sqlite" in database_url
    is_memory = is_sqlite and ":memory:" in database_url

    print(f"[Database] Using: {'SQLite' if is_sqlite else 'PostgreSQL' if 'postgresql' in database_url else 'Other'}", flush=True)

    engine_kwargs = {
        "connect_args": {"check_same_thread": False} if is_sqlite else {},
    }

    if is_memory:
        # All connections must share the one in-memory database
        engine_kwargs["poolclass"] = StaticPool
    elif is_sqlite:
        engine_kwargs["poolclass"] = NullPool
    else:
        engine_kwargs["pool_pre_ping"] = True

    engine = create_engine(database_url, **engine_kwargs)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    Base.metadata.create_all(bind=engine)

    return engine


@contextmanager
def get_db() -> Session:
    """Get database session as context manager"""
    if SessionLocal is None:
        init_db()

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Helper functions

def get_setting(db: Session, key: str) -> Optional[str]:
    """Read a raw setting value (None if missing)"""
    row = db.get(Setting, key)
    return row.value if row else None


def set_setting(db: Session, key: str, value: str):
    """Insert or replace a setting value"""
    row = db.get(Setting, key)
    if row is None:
        row = Setting(key=key, value=value)
        db.add(row)
    else:
        row.value = value
    db.commit()
    return row


def delete_setting(db: Session, key: str) -> bool:
    """Remove a setting; returns True if it existed"""
    row = db.get(Setting, key)
    if row is None:
        return False
    db.delete(row)
    db.commit()
    return True
