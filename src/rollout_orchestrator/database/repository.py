"""
Append-only RolloutState revision store
"""

import json
import logging
from typing import List, Optional

from sqlalchemy import and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ..orchestration.models import RolloutState
from ..utils.error_handling import InvalidTransitionError
from .models import RolloutRevision

logger = logging.getLogger("rollout.app")


class RolloutRepository:
    """Every status change is a new row keyed by (rollout_id, revision); nothing is updated in place"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def append(self, state: RolloutState):
        row = RolloutRevision(
            rollout_id=state.id,
            revision=state.revision,
            service=state.service,
            phase=state.phase.value,
            is_terminal=state.is_terminal,
            payload=json.dumps(state.to_dict()),
            created_at=state.updated_at,
        )
        session = self.session_factory()
        try:
            session.add(row)
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise InvalidTransitionError(
                f"Revision {state.revision} of rollout {state.id} already recorded",
                cause=e,
            ) from e
        finally:
            session.close()

    def latest(self, rollout_id: str) -> Optional[RolloutState]:
        session = self.session_factory()
        try:
            row = (
                session.query(RolloutRevision)
                .filter(RolloutRevision.rollout_id == rollout_id)
                .order_by(RolloutRevision.revision.desc())
                .first()
            )
            return RolloutState.from_dict(json.loads(row.payload)) if row else None
        finally:
            session.close()

    def history(self, rollout_id: str) -> List[RolloutState]:
        session = self.session_factory()
        try:
            rows = (
                session.query(RolloutRevision)
                .filter(RolloutRevision.rollout_id == rollout_id)
                .order_by(RolloutRevision.revision.asc())
                .all()
            )
            return [RolloutState.from_dict(json.loads(row.payload)) for row in rows]
        finally:
            session.close()

    def _latest_rows(self, session, service: Optional[str] = None):
        latest = session.query(
            RolloutRevision.rollout_id,
            func.max(RolloutRevision.revision).label("revision"),
        )
        if service is not None:
            latest = latest.filter(RolloutRevision.service == service)
        latest = latest.group_by(RolloutRevision.rollout_id).subquery()

        return session.query(RolloutRevision).join(
            latest,
            and_(
                RolloutRevision.rollout_id == latest.c.rollout_id,
                RolloutRevision.revision == latest.c.revision,
            ),
        )

    def active_for_service(self, service: str) -> Optional[RolloutState]:
        session = self.session_factory()
        try:
            row = (
                self._latest_rows(session, service)
                .filter(RolloutRevision.is_terminal.is_(False))
                .order_by(RolloutRevision.created_at.desc())
                .first()
            )
            return RolloutState.from_dict(json.loads(row.payload)) if row else None
        finally:
            session.close()

    def non_terminal(self) -> List[RolloutState]:
        session = self.session_factory()
        try:
            rows = self._latest_rows(session).filter(RolloutRevision.is_terminal.is_(False)).all()
            return [RolloutState.from_dict(json.loads(row.payload)) for row in rows]
        finally:
            session.close()

    def list_rollouts(self, service: Optional[str] = None, limit: int = 50) -> List[RolloutState]:
        session = self.session_factory()
        try:
            rows = (
                self._latest_rows(session, service)
                .order_by(RolloutRevision.created_at.desc())
                .limit(limit)
                .all()
            )
            return [RolloutState.from_dict(json.loads(row.payload)) for row in rows]
        finally:
            session.close()
