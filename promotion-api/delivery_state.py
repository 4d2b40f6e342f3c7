from typing import Dict, FrozenSet

from models import CanaryStatus, DecisionStage


DECISION_TRANSITIONS: Dict[DecisionStage, FrozenSet[DecisionStage]] = {
    DecisionStage.PENDING: frozenset({DecisionStage.BRANCH_VALIDATED, DecisionStage.REJECTED}),
    DecisionStage.BRANCH_VALIDATED: frozenset({DecisionStage.AUTHORIZATION_CHECKED, DecisionStage.REJECTED}),
    DecisionStage.AUTHORIZATION_CHECKED: frozenset({DecisionStage.QUALITY_GATED, DecisionStage.REJECTED}),
    DecisionStage.QUALITY_GATED: frozenset({DecisionStage.APPROVED, DecisionStage.REJECTED}),
    DecisionStage.APPROVED: frozenset(),
    DecisionStage.REJECTED: frozenset(),
}

CANARY_TRANSITIONS: Dict[CanaryStatus, FrozenSet[CanaryStatus]] = {
    CanaryStatus.RAMPING: frozenset({CanaryStatus.COMPLETED, CanaryStatus.ROLLED_BACK, CanaryStatus.ABORTED}),
    # An external rollback may still revert a completed rollout to the previous slot.
    CanaryStatus.COMPLETED: frozenset({CanaryStatus.ROLLED_BACK}),
    CanaryStatus.ROLLED_BACK: frozenset(),
    CanaryStatus.ABORTED: frozenset(),
}

TERMINAL_DECISION_STAGES = {DecisionStage.APPROVED, DecisionStage.REJECTED}
TERMINAL_CANARY_STATES = {CanaryStatus.ROLLED_BACK, CanaryStatus.ABORTED}


class InvalidTransition(ValueError):
    pass


def can_transition(current: DecisionStage, target: DecisionStage) -> bool:
    return target in DECISION_TRANSITIONS.get(current, frozenset())


def require_transition(current: DecisionStage, target: DecisionStage) -> DecisionStage:
    if not can_transition(current, target):
        raise InvalidTransition(f"decision cannot move from {current.value} to {target.value}")
    return target


def require_canary_transition(current: CanaryStatus, target: CanaryStatus) -> CanaryStatus:
    if target not in CANARY_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(f"canary cannot move from {current.value} to {target.value}")
    return target
