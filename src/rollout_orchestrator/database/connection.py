"""
Database connection and session management
"""

import os
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

DEFAULT_DATABASE_URL = 'sqlite:///./data/rollouts.db'


def create_db_engine(database_url: str = None) -> Engine:
    """Create engine; in-memory SQLite shares one connection across threads"""
    database_url = database_url or os.getenv('ROLLOUT_DATABASE_URL', DEFAULT_DATABASE_URL)

    if database_url.startswith('sqlite'):
        if database_url in ('sqlite://', 'sqlite:///:memory:'):
            return create_engine(
                database_url,
                connect_args={'check_same_thread': False},
                poolclass=StaticPool,
            )
        db_path = database_url.split(':///', 1)[-1]
        if db_path:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(database_url, connect_args={'check_same_thread': False})

    return create_engine(
        database_url,
        echo=False,  # Set to True for SQL query logging
        pool_pre_ping=True
    )


def create_tables(engine: Engine):
    """Create all database tables"""
    Base.metadata.create_all(bind=engine)


def create_session_factory(database_url: str = None) -> sessionmaker:
    engine = create_db_engine(database_url)
    create_tables(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
