#!/usr/bin/env python3
"""
Rollout Repository Tests
Append-only revision storage on SQLite
"""

import pytest

from conftest import make_request
from rollout_orchestrator.database.connection import create_session_factory
from rollout_orchestrator.database.models import RolloutRevision
from rollout_orchestrator.database.repository import RolloutRepository
from rollout_orchestrator.orchestration.models import Phase
from rollout_orchestrator.orchestration.state_machine import RolloutStateMachine
from rollout_orchestrator.utils.error_handling import InvalidTransitionError


@pytest.fixture
def repository():
    return RolloutRepository(create_session_factory("sqlite://"))


@pytest.fixture
def machine():
    return RolloutStateMachine()


def store_rollout(repository, machine, rollout_id, *phases, **request):
    state = RolloutStateMachine.initial(rollout_id, make_request(**request))
    repository.append(state)
    for phase in phases:
        state = machine.transition(state, phase)
        repository.append(state)
    return state


class TestRolloutRepository:
    """Revision history, latest state and service queries"""

    def test_latest_and_history(self, repository, machine):
        final = store_rollout(repository, machine, "r-1", Phase.ARTIFACT_READY, Phase.FAILED)

        assert repository.latest("r-1").to_dict() == final.to_dict()
        history = repository.history("r-1")
        assert [s.revision for s in history] == [1, 2, 3]
        assert [s.phase for s in history] == [Phase.PENDING, Phase.ARTIFACT_READY, Phase.FAILED]

    def test_unknown_rollout(self, repository):
        assert repository.latest("missing") is None
        assert repository.history("missing") == []

    def test_duplicate_revision_rejected(self, repository, machine):
        """Test a revision can be written only once"""
        state = store_rollout(repository, machine, "r-1")

        with pytest.raises(InvalidTransitionError):
            repository.append(state)

    def test_rows_are_never_updated(self, repository, machine):
        """Test each change adds a row instead of rewriting the previous one"""
        store_rollout(repository, machine, "r-1", Phase.ARTIFACT_READY, Phase.CANDIDATE_DEPLOYED)

        session = repository.session_factory()
        try:
            phases = [row.phase for row in session.query(RolloutRevision).order_by(RolloutRevision.revision)]
        finally:
            session.close()
        assert phases == ["pending", "artifact_ready", "candidate_deployed"]

    def test_active_for_service(self, repository, machine):
        """Test only the non-terminal rollout of the service is reported active"""
        store_rollout(repository, machine, "done", Phase.FAILED)
        active = store_rollout(repository, machine, "running", Phase.ARTIFACT_READY)
        store_rollout(repository, machine, "other", service="embeddings")

        assert repository.active_for_service("llm-chat").id == active.id
        assert repository.active_for_service("embeddings").id == "other"
        assert repository.active_for_service("unknown") is None

    def test_non_terminal(self, repository, machine):
        store_rollout(repository, machine, "done", Phase.ABORTED)
        store_rollout(repository, machine, "running", Phase.ARTIFACT_READY)
        store_rollout(repository, machine, "other", service="embeddings")

        assert sorted(s.id for s in repository.non_terminal()) == ["other", "running"]

    def test_list_rollouts(self, repository, machine):
        """Test listing returns one latest record per rollout, filtered by service and limited"""
        store_rollout(repository, machine, "a", Phase.ARTIFACT_READY)
        store_rollout(repository, machine, "b", Phase.FAILED)
        store_rollout(repository, machine, "c", service="embeddings")

        listed = repository.list_rollouts()
        assert sorted(s.id for s in listed) == ["a", "b", "c"]
        assert {s.id: s.phase for s in listed}["b"] is Phase.FAILED

        assert [s.id for s in repository.list_rollouts(service="embeddings")] == ["c"]
        assert len(repository.list_rollouts(limit=2)) == 2

    def test_file_database_persists(self, tmp_path, machine):
        """Test a file-backed store is readable from a fresh repository"""
        url = f"sqlite:///{tmp_path}/db/rollouts.db"
        store_rollout(RolloutRepository(create_session_factory(url)), machine, "r-1", Phase.ARTIFACT_READY)

        reopened = RolloutRepository(create_session_factory(url))

        assert reopened.latest("r-1").phase is Phase.ARTIFACT_READY
