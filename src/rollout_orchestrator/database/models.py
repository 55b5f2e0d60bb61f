"""
SQLAlchemy models for the rollout revision store
"""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class RolloutRevision(Base):
    """One immutable revision of a RolloutState; rows are only ever inserted"""
    __tablename__ = 'rollout_revisions'
    __table_args__ = (
        UniqueConstraint('rollout_id', 'revision', name='uq_rollout_revision'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    rollout_id = Column(String(64), nullable=False, index=True)
    revision = Column(Integer, nullable=False)
    service = Column(String(255), nullable=False, index=True)
    phase = Column(String(32), nullable=False)
    is_terminal = Column(Boolean, nullable=False, default=False)
    payload = Column(Text, nullable=False)  # RolloutState.to_dict() as JSON
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
