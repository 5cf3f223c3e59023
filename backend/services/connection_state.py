"""Connection status state machine."""

from models.enums import ConnectionStatus

_S = ConnectionStatus

ALLOWED_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    _S.CREATED: frozenset({_S.UPDATING, _S.WAITING_INPUT, _S.LOGIN_ERROR, _S.OUTDATED}),
    _S.UPDATING: frozenset({_S.UPDATED, _S.WAITING_INPUT, _S.LOGIN_ERROR, _S.OUTDATED}),
    _S.WAITING_INPUT: frozenset({_S.UPDATING, _S.LOGIN_ERROR, _S.OUTDATED}),
    _S.UPDATED: frozenset({_S.UPDATING, _S.LOGIN_ERROR, _S.OUTDATED}),
    _S.LOGIN_ERROR: frozenset({_S.UPDATING}),
    _S.OUTDATED: frozenset({_S.UPDATING}),
}


class InvalidStatusTransition(ValueError):
    """A status change that no path in the state machine allows."""

    def __init__(self, current: ConnectionStatus, target: ConnectionStatus):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move connection from {current.value} to {target.value}")


def can_transition(current: ConnectionStatus, target: ConnectionStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


def transition_path(
    current: ConnectionStatus, target: ConnectionStatus
) -> list[ConnectionStatus]:
    """Return the statuses to record, in order, to move from current to target.

    Status is observed by polling, so UPDATING is often skipped between two
    observations (e.g. CREATED then UPDATED). When the target is only
    reachable through UPDATING the path is bridged as ``[UPDATING, target]``.

    Raises:
        InvalidStatusTransition: If no such path exists (anything back to
            CREATED).
    """
    if can_transition(current, target):
        return [target]
    if can_transition(current, _S.UPDATING) and can_transition(_S.UPDATING, target):
        return [_S.UPDATING, target]
    raise InvalidStatusTransition(current, target)
