"""Incident transition graph.

A directed chain with no skipping:

    triggered -> classified -> routed -> dispatched -> acknowledged
              -> responding -> on_scene -> resolved -> closed

Reclassification is the only edge outside the chain. It re-enters
`classified` from `classified`, `routed` or `dispatched`, i.e. before any
responder has acknowledged.
"""
from typing import Dict, FrozenSet

from rescuecore.shared.errors import InvalidTransitionError
from rescuecore.shared.models import IncidentStatus

S = IncidentStatus

CHAIN = (
    S.TRIGGERED,
    S.CLASSIFIED,
    S.ROUTED,
    S.DISPATCHED,
    S.ACKNOWLEDGED,
    S.RESPONDING,
    S.ON_SCENE,
    S.RESOLVED,
    S.CLOSED,
)

TRANSITIONS: Dict[IncidentStatus, FrozenSet[IncidentStatus]] = {
    current: frozenset({nxt}) for current, nxt in zip(CHAIN, CHAIN[1:])
}
TRANSITIONS[S.CLOSED] = frozenset()

RECLASSIFIABLE: FrozenSet[IncidentStatus] = frozenset({S.CLASSIFIED, S.ROUTED, S.DISPATCHED})

# Targets only an Emergency_Responder may move an incident into
RESPONDER_TARGETS: FrozenSet[IncidentStatus] = frozenset({
    S.ACKNOWLEDGED,
    S.RESPONDING,
    S.ON_SCENE,
    S.RESOLVED,
    S.CLOSED,
})


def successor(status: IncidentStatus):
    nxt = TRANSITIONS[status]
    return next(iter(nxt)) if nxt else None


def is_valid_transition(current: IncidentStatus, new: IncidentStatus) -> bool:
    return new in TRANSITIONS[current]


def validate_transition(incident_id: str, current: IncidentStatus, new: IncidentStatus) -> None:
    """Raise InvalidTransitionError unless `new` follows `current`."""
    if not is_valid_transition(current, new):
        expected = successor(current)
        raise InvalidTransitionError(
            incident_id,
            current.value,
            new.value,
            reason=f"expected {expected.value}" if expected else "incident is closed",
        )


def validate_reclassification(incident_id: str, current: IncidentStatus) -> None:
    if current not in RECLASSIFIABLE:
        raise InvalidTransitionError(
            incident_id,
            current.value,
            S.CLASSIFIED.value,
            reason="reclassification is only allowed before acknowledgement",
        )
