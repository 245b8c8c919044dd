"""
Models for a complete deployment: services, networks and volumes.
"""
from typing import Dict
from pydantic import BaseModel, ConfigDict
from enum import Enum
from .service_definition import ServiceSpec

DEFAULT_NETWORK = "default"


class VolumeScope(str, Enum):
    """Who owns a volume."""
    DEPLOYMENT = "deployment"
    CONTAINER = "container"


class NetworkSpec(BaseModel):
    """An isolated network. Only the ``bridge`` driver is supported."""
    model_config = ConfigDict(frozen=True)

    name: str
    driver: str = "bridge"


class VolumeSpec(BaseModel):
    """
    A volume. Deployment-scoped (named) volumes outlive containers,
    container-scoped (anonymous) volumes are removed with their container.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    scope: VolumeScope = VolumeScope.DEPLOYMENT


class Deployment(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Equivalent to a parsed docker-compose.yml file.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    services: Dict[str, ServiceSpec]
    networks: Dict[str, NetworkSpec] = {}
    volumes: Dict[str, VolumeSpec] = {}
    base_dir: str = "."

    def container_name(self, service: str) -> str:
        """Runtime name of the (single) container of ``service``."""
        return f"{self.name}-{service}-1"

    def network_name(self, network: str) -> str:
        """Runtime name of a deployment network."""
        return f"{self.name}_{network}"

    def volume_name(self, volume: str) -> str:
        """Runtime name of a named volume."""
        return f"{self.name}_{volume}"

    def service_networks(self, service: str):
        """Networks ``service`` is attached to, falling back to the default network."""
        return self.services[service].networks or [DEFAULT_NETWORK]
