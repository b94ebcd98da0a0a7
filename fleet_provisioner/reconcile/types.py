from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, Optional

from .errors import ProvisionError, UnknownInstanceStateError


class InstanceState(str, Enum):
    NOT_EXISTING = "not-existing"
    PENDING = "pending"
    UP = "up"
    DOWN = "down"
    STOPPING = "stopping"
    SHUTTING_DOWN = "shutting-down"


_EC2_STATES = {
    "pending": InstanceState.PENDING,
    "running": InstanceState.UP,
    "stopping": InstanceState.STOPPING,
    "stopped": InstanceState.DOWN,
    "shutting-down": InstanceState.SHUTTING_DOWN,
    "terminated": InstanceState.NOT_EXISTING,
}


def instance_state_from_ec2(state: str) -> InstanceState:
    try:
        return _EC2_STATES[state]
    except KeyError:
        raise UnknownInstanceStateError(f"unsupported instance state {state}") from None


class OutcomeKind(Enum):
    CREATED = "created"
    STARTED = "started"
    ALREADY_UP = "already-up"
    IN_ERROR = "in-error"
    OTHER = "other"


# state observed before bring-up, by outcome
INITIAL_STATES = {
    OutcomeKind.CREATED: InstanceState.NOT_EXISTING,
    OutcomeKind.STARTED: InstanceState.DOWN,
    OutcomeKind.ALREADY_UP: InstanceState.UP,
}


@dataclass(frozen=True)
class Outcome:
    name: str
    kind: OutcomeKind
    error: Optional[ProvisionError] = None

    def __post_init__(self):
        if (self.kind is OutcomeKind.IN_ERROR) != (self.error is not None):
            raise ValueError(f"outcome {self.kind.value} for {self.name} must carry an error only when in error")

    @property
    def in_error(self) -> bool:
        return self.kind is OutcomeKind.IN_ERROR

    @classmethod
    def created(cls, name: str) -> 'Outcome':
        return cls(name, OutcomeKind.CREATED)

    @classmethod
    def started(cls, name: str) -> 'Outcome':
        return cls(name, OutcomeKind.STARTED)

    @classmethod
    def already_up(cls, name: str) -> 'Outcome':
        return cls(name, OutcomeKind.ALREADY_UP)

    @classmethod
    def failed(cls, name: str, error: ProvisionError) -> 'Outcome':
        return cls(name, OutcomeKind.IN_ERROR, error)


@dataclass
class InstanceInfo:
    name: str
    state: InstanceState
    user: str = ""
    external_ip: str = ""
    ip: str = ""
    ssh_port: str = ""
    initial_state: Optional[InstanceState] = None

    def to_dict(self):
        data = asdict(self)
        data["state"] = self.state.value
        data["initial_state"] = self.initial_state.value if self.initial_state else None
        return data


@dataclass
class InitialStatus:
    """Bring-up result, hosts grouped by the state they were in before the command."""
    not_existing: Dict[str, InstanceInfo] = field(default_factory=dict)
    down: Dict[str, InstanceInfo] = field(default_factory=dict)
    up: Dict[str, InstanceInfo] = field(default_factory=dict)
    other: Dict[str, InstanceInfo] = field(default_factory=dict)

    def all(self) -> Dict[str, InstanceInfo]:
        return {**self.not_existing, **self.down, **self.up, **self.other}

    def to_dict(self):
        return {
            "not_existing": {name: info.to_dict() for name, info in self.not_existing.items()},
            "down": {name: info.to_dict() for name, info in self.down.items()},
            "up": {name: info.to_dict() for name, info in self.up.items()},
            "other": {name: info.to_dict() for name, info in self.other.items()},
        }
