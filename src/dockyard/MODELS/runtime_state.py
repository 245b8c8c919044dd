"""
Models for observed runtime state: handles, service states and operation reports.
"""
from typing import Dict, FrozenSet, List, Optional
from enum import Enum, IntEnum
from pydantic import BaseModel, ConfigDict

from .service_definition import PortMapping


class RuntimeHandle(BaseModel):
    """
    Opaque reference to a runtime container, network or volume.
    Only the runtime interprets ``id``.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class ServiceState(str, Enum):
    """Lifecycle state of one service."""
    PLANNED = "planned"
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    HEALTHY = "healthy"
    STOPPING = "stopping"
    STOPPED = "stopped"
    REMOVED = "removed"
    FAILED = "failed"


TRANSITIONS: Dict[ServiceState, FrozenSet[ServiceState]] = {
    ServiceState.PLANNED: frozenset({ServiceState.CREATED, ServiceState.REMOVED}),
    ServiceState.CREATED: frozenset({ServiceState.STARTING, ServiceState.STOPPING}),
    ServiceState.STARTING: frozenset({ServiceState.RUNNING, ServiceState.STOPPING}),
    ServiceState.RUNNING: frozenset({ServiceState.HEALTHY, ServiceState.STOPPING}),
    ServiceState.HEALTHY: frozenset({ServiceState.STOPPING}),
    ServiceState.STOPPING: frozenset({ServiceState.STOPPED}),
    ServiceState.STOPPED: frozenset({ServiceState.REMOVED, ServiceState.STARTING, ServiceState.STOPPING}),
    ServiceState.REMOVED: frozenset({ServiceState.PLANNED}),
    ServiceState.FAILED: frozenset({ServiceState.STOPPING, ServiceState.REMOVED, ServiceState.PLANNED}),
}


def can_transition(current: ServiceState, target: ServiceState) -> bool:
    """
    Whether ``current -> target`` is a legal lifecycle step.
    ``Failed`` is reachable from every state except ``Removed`` and itself.
    """
    if target is ServiceState.FAILED:
        return current not in (ServiceState.FAILED, ServiceState.REMOVED)
    return target in TRANSITIONS[current]


class ContainerStatus(str, Enum):
    """Runtime-level container status."""
    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"


class MountBinding(BaseModel):
    """A mount resolved to a runtime volume handle or a host path."""
    model_config = ConfigDict(frozen=True)

    target: str
    volume: Optional[RuntimeHandle] = None
    host_path: Optional[str] = None
    read_only: bool = False
    anonymous: bool = False


class ContainerConfig(BaseModel):
    """Everything the runtime needs to create a container."""
    model_config = ConfigDict(frozen=True)

    name: str
    image: str
    command: List[str] = []
    working_dir: Optional[str] = None
    environment: Dict[str, str] = {}
    ports: List[PortMapping] = []
    mounts: List[MountBinding] = []
    networks: List[RuntimeHandle] = []
    labels: Dict[str, str] = {}


class ContainerInfo(BaseModel):
    """What the runtime reports about an existing container."""
    handle: RuntimeHandle
    status: ContainerStatus
    mounts: List[MountBinding] = []
    exit_code: Optional[int] = None


class ServiceStatus(BaseModel):
    """One row of ``ps``."""
    name: str
    state: ServiceState
    handle: Optional[RuntimeHandle] = None


class ServiceReport(BaseModel):
    """Final outcome of one service in an operation."""
    name: str
    state: ServiceState
    handle: Optional[RuntimeHandle] = None
    attempts: int = 0
    error: Optional[str] = None


class ExitCode(IntEnum):
    """Process exit codes of the command surface."""
    SUCCESS = 0
    PARTIAL_FAILURE = 1
    FATAL_ERROR = 2


class OperationResult(BaseModel):
    """
    Per-service report of an ``up`` or ``down``.
    Always complete, even when the operation failed part way.
    """
    operation: str
    deployment: str
    services: List[ServiceReport] = []
    networks: Dict[str, str] = {}
    volumes: Dict[str, str] = {}
    cancelled: bool = False
    fatal_error: Optional[str] = None

    @property
    def target_state(self) -> ServiceState:
        return ServiceState.HEALTHY if self.operation == "up" else ServiceState.REMOVED

    @property
    def ok(self) -> bool:
        return self.exit_code is ExitCode.SUCCESS

    @property
    def exit_code(self) -> ExitCode:
        if self.fatal_error:
            return ExitCode.FATAL_ERROR
        if self.cancelled or any(s.state != self.target_state for s in self.services):
            return ExitCode.PARTIAL_FAILURE
        return ExitCode.SUCCESS

    def service(self, name: str) -> ServiceReport:
        for report in self.services:
            if report.name == name:
                return report
        raise KeyError(name)
