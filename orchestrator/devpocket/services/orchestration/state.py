"""
Environment Status State Machine

CREATING -> PROVISIONING -> RUNNING <-> {STOPPING -> STOPPED, RESTARTING -> RUNNING}

PROVISIONING may also go straight to STOPPING or RESTARTING.

Any state may move to ERROR on an unrecoverable failure, any state other than
TERMINATED may move to TERMINATED on delete, and TERMINATED is absorbing.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class EnvironmentStatus(str, Enum):
    """Persisted status of an environment record."""

    CREATING = "CREATING"
    PROVISIONING = "PROVISIONING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    RESTARTING = "RESTARTING"
    ERROR = "ERROR"
    TERMINATED = "TERMINATED"

    def __str__(self) -> str:
        return self.value


class ObservedStatus(str, Enum):
    """Status reported by get_info; adds values that are never persisted."""

    NOT_DEPLOYED = "NOT_DEPLOYED"
    PROVISIONING = "PROVISIONING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"
    UNKNOWN = "UNKNOWN"

    def __str__(self) -> str:
        return self.value


class ClusterStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    MAINTENANCE = "MAINTENANCE"


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    TERMINATED = "TERMINATED"


# Pod phase -> observed status
POD_PHASE_STATUS: Dict[str, ObservedStatus] = {
    "Running": ObservedStatus.RUNNING,
    "Pending": ObservedStatus.PROVISIONING,
    "Failed": ObservedStatus.ERROR,
    "Succeeded": ObservedStatus.STOPPED,
}

_S = EnvironmentStatus

# ERROR and TERMINATED are added to every non-terminal state below
_FORWARD: Dict[EnvironmentStatus, FrozenSet[EnvironmentStatus]] = {
    _S.CREATING: frozenset({_S.PROVISIONING}),
    # Provisioned pods start on their own; nothing writes RUNNING back first
    _S.PROVISIONING: frozenset({_S.RUNNING, _S.STOPPING, _S.RESTARTING}),
    _S.RUNNING: frozenset({_S.STOPPING, _S.RESTARTING}),
    _S.STOPPING: frozenset({_S.STOPPED, _S.RUNNING}),
    _S.STOPPED: frozenset({_S.RUNNING}),
    _S.RESTARTING: frozenset({_S.RUNNING}),
    # Re-running the full provisioning pipeline is how a failed create is retried
    _S.ERROR: frozenset({_S.PROVISIONING}),
    _S.TERMINATED: frozenset(),
}


def allowed_transitions(current: EnvironmentStatus) -> FrozenSet[EnvironmentStatus]:
    """Return every status reachable from ``current`` in one step."""
    current = EnvironmentStatus(current)
    if current is _S.TERMINATED:
        return frozenset()
    return _FORWARD[current] | {_S.ERROR, _S.TERMINATED}


def can_transition(current, target) -> bool:
    return EnvironmentStatus(target) in allowed_transitions(EnvironmentStatus(current))


def map_pod_phase(phase) -> ObservedStatus:
    return POD_PHASE_STATUS.get(phase, ObservedStatus.UNKNOWN)


@dataclass
class EnvironmentInfo:
    """Snapshot of an environment as seen on the cluster."""

    id: str
    name: str
    status: str
    namespace: Optional[str] = None
    pod_name: Optional[str] = None
    service_name: Optional[str] = None
    external_url: Optional[str] = None
    pod_phase: Optional[str] = None
    cpu_usage: Optional[float] = None  # cores
    memory_usage: Optional[int] = None  # bytes
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
