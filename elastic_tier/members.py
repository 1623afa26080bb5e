from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


class MemberState(str, Enum):
    LAUNCHING = "Launching"
    IN_SERVICE = "InService"
    DRAINING = "Draining"
    TERMINATED = "Terminated"


# Members that count toward desired capacity
ACTIVE_STATES = (MemberState.LAUNCHING, MemberState.IN_SERVICE)


@dataclass(frozen=True)
class MemberHandle:
    name: str
    address: str
    namespace: str = "default"


@dataclass(frozen=True)
class LaunchSpec:
    image: str
    instance_type: str
    namespace: str
    port: int
    resources: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class Member:
    member_id: str
    state: MemberState
    launched_at: object
    address: Optional[str] = None
    handle: Optional[MemberHandle] = None
    ready: bool = False
    drain_deadline: Optional[object] = None

    def is_active(self):
        return self.state in ACTIVE_STATES
