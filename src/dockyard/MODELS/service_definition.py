"""
Models for defining services, including restart policies, health probes, ports and mounts.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class RestartCondition(str, Enum):
    """
    Conditions under which a failing create/start is retried.
    """
    NONE = "none"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"


class RestartPolicy(BaseModel):
    """
    Defines how often a service is retried when its container cannot be
    created or started.

    ``max_attempts`` of ``None`` means the default for the condition:
    one attempt for ``none``, unlimited for ``always`` and the configured
    default (5) for ``on-failure``.
    """
    model_config = ConfigDict(frozen=True)

    condition: RestartCondition = RestartCondition.NONE
    max_attempts: Optional[int] = None


class ProbeKind(str, Enum):
    """Supported health probes."""
    TCP = "tcp"
    LOG = "log"


class HealthProbe(BaseModel):
    """
    A readiness check a service must pass before its dependents start.

    A ``tcp`` probe connects to the host port published for ``port``
    (or ``port`` itself when unpublished). A ``log`` probe searches the
    container logs for the regular expression ``pattern``.
    """
    model_config = ConfigDict(frozen=True)

    kind: ProbeKind
    port: Optional[int] = None
    pattern: Optional[str] = None
    interval: Optional[float] = None
    timeout: Optional[float] = None


class MountKind(str, Enum):
    """How a volume mount is backed."""
    NAMED = "named"
    ANONYMOUS = "anonymous"
    BIND = "bind"


class VolumeMount(BaseModel):
    """
    Defines a mapping between a volume (or host path) and a container path.
    """
    model_config = ConfigDict(frozen=True)

    kind: MountKind
    source: Optional[str] = None
    target: str
    read_only: bool = False


class PortMapping(BaseModel):
    """
    A published port. ``host_port`` of ``None`` lets the runtime pick one.
    """
    model_config = ConfigDict(frozen=True)

    container_port: int
    host_port: Optional[int] = None
    host_ip: Optional[str] = None
    protocol: str = "tcp"


class BuildSpec(BaseModel):
    """Build context of a service. Carried on the model, never executed."""
    model_config = ConfigDict(frozen=True)

    context: str
    dockerfile: Optional[str] = None


class ServiceSpec(BaseModel):
    """
    The full definition of a single service, as declared in the deployment document.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    image: str
    build: Optional[BuildSpec] = None

    # Execution
    command: List[str] = []
    working_dir: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}

    # Networking
    ports: List[PortMapping] = []
    networks: List[str] = []

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    restart: RestartPolicy = Field(default_factory=RestartPolicy)
    health_check: Optional[HealthProbe] = None
    depends_on: List[str] = []

    # Metadata
    labels: Dict[str, str] = {}
