"""
Rollout State Machine
Closed transition table over rollout phases; every accepted change yields a new revision
"""

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from ..utils.error_handling import InvalidTransitionError
from .models import PROGRESS_ORDER, Phase, PhaseRecord, RolloutState

ALLOWED_TRANSITIONS: Dict[Phase, FrozenSet[Phase]] = {
    Phase.PENDING: frozenset({Phase.ARTIFACT_READY, Phase.FAILED, Phase.ABORTED}),
    Phase.ARTIFACT_READY: frozenset({Phase.CANDIDATE_DEPLOYED, Phase.FAILED, Phase.ABORTED}),
    # validation failure is an expected outcome and rolls the candidate back
    Phase.CANDIDATE_DEPLOYED: frozenset({Phase.VALIDATED, Phase.ROLLED_BACK, Phase.FAILED, Phase.ABORTED}),
    Phase.VALIDATED: frozenset({Phase.BENCHMARKED, Phase.FAILED, Phase.ABORTED}),
    Phase.BENCHMARKED: frozenset({Phase.SWITCHED, Phase.ROLLED_BACK, Phase.FAILED, Phase.ABORTED}),
    Phase.SWITCHED: frozenset(),
    Phase.ROLLED_BACK: frozenset(),
    Phase.FAILED: frozenset(),
    Phase.ABORTED: frozenset(),
}


def can_transition(current: Phase, target: Phase) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def next_progress_phase(current: Phase) -> Optional[Phase]:
    """The forward phase after `current`, or None past BENCHMARKED"""
    if current not in PROGRESS_ORDER:
        return None
    index = PROGRESS_ORDER.index(current)
    return PROGRESS_ORDER[index + 1] if index + 1 < len(PROGRESS_ORDER) else None


class RolloutStateMachine:
    """
    Applies transitions to RolloutState records.

    Both operations return a new RolloutState with the revision bumped; the
    input record is never mutated, so a persisted revision stays exactly as
    it was written.
    """

    def transition(
        self,
        state: RolloutState,
        target: Phase,
        reason: Optional[str] = None,
        **changes
    ) -> RolloutState:
        if not can_transition(state.phase, target):
            raise InvalidTransitionError(
                f"Rollout {state.id}: transition {state.phase.value} -> {target.value} is not allowed",
                context={"rollout_id": state.id, "from": state.phase.value, "to": target.value},
            )

        new_state = self._revise(state, **changes)
        now = new_state.updated_at

        if target not in (Phase.FAILED, Phase.ABORTED):
            new_state.last_successful_phase = target

        new_state.phase = target
        new_state.awaiting_confirmation = False
        new_state.phase_history.append(PhaseRecord(target, now))
        if reason is not None:
            new_state.reason = reason
        return new_state

    def record(self, state: RolloutState, **changes) -> RolloutState:
        """New revision without a phase change (retry counts, confirmation wait, traffic state)"""
        if state.is_terminal:
            raise InvalidTransitionError(
                f"Rollout {state.id} is terminal ({state.phase.value}) and cannot be updated",
                context={"rollout_id": state.id, "phase": state.phase.value},
            )
        return self._revise(state, **changes)

    @staticmethod
    def _revise(state: RolloutState, **changes) -> RolloutState:
        new_state = state.copy()
        for key, value in changes.items():
            if not hasattr(new_state, key):
                raise AttributeError(f"RolloutState has no field {key!r}")
            setattr(new_state, key, value)
        new_state.revision = state.revision + 1
        new_state.updated_at = datetime.utcnow()
        return new_state

    @staticmethod
    def initial(rollout_id: str, request) -> RolloutState:
        now = datetime.utcnow()
        return RolloutState(
            id=rollout_id,
            request=request,
            phase=Phase.PENDING,
            created_at=now,
            updated_at=now,
            revision=1,
            last_successful_phase=Phase.PENDING,
            phase_history=[PhaseRecord(Phase.PENDING, now)],
        )
