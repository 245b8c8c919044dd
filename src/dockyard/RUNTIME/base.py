# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Contract of the container runtime the orchestrator drives.

Implementations raise ``RuntimeCallError`` subclasses for failures of a
single call and ``RuntimeUnavailable`` when the runtime cannot be reached.
"""
from abc import ABC, abstractmethod
from typing import Dict, Iterator, Optional

from ..MODELS.runtime_state import ContainerConfig, ContainerInfo, RuntimeHandle

# Labels every resource created for a deployment carries.
LABEL_PROJECT = "dockyard.project"
LABEL_SERVICE = "dockyard.service"


class ContainerRuntime(ABC):
    """
    Creates, starts, stops and removes containers, networks and volumes.
    """

    @abstractmethod
    def ping(self) -> None:
        """
        Checks that the runtime is reachable.

        :raises RuntimeUnavailable: If it is not.
        """

    @abstractmethod
    def create_container(self, config: ContainerConfig) -> RuntimeHandle:
        """
        Creates (but does not start) a container.

        :raises ImageNotFound: If the image is not available.
        :raises PortAllocated: If a requested host port is already bound.
        :raises ResourceConflict: If a container with the same name exists.
        """

    @abstractmethod
    def start(self, handle: RuntimeHandle) -> None:
        """Starts a created or stopped container."""

    @abstractmethod
    def stop(self, handle: RuntimeHandle, grace: float) -> None:
        """
        Asks the container to stop, forcing termination once ``grace`` seconds have elapsed.
        Stopping a container that is not running is a no-op.
        """

    @abstractmethod
    def remove(self, handle: RuntimeHandle) -> None:
        """
        Removes a stopped container. Its volumes are left alone.

        :raises ResourceConflict: If the container is still running.
        """

    @abstractmethod
    def inspect_container(self, name: str) -> Optional[ContainerInfo]:
        """Returns the container called ``name``, or ``None``."""

    @abstractmethod
    def create_network(self, name: str, driver: str = "bridge",
                       labels: Optional[Dict[str, str]] = None) -> RuntimeHandle:
        """
        Creates a network.

        :raises ResourceConflict: If a network with the same name exists.
        """

    @abstractmethod
    def find_network(self, name: str) -> Optional[RuntimeHandle]:
        """Returns the network called ``name``, or ``None``."""

    @abstractmethod
    def remove_network(self, handle: RuntimeHandle) -> None:
        """Removes a network."""

    @abstractmethod
    def create_volume(self, name: str, labels: Optional[Dict[str, str]] = None) -> RuntimeHandle:
        """
        Creates a volume.

        :raises ResourceConflict: If a volume with the same name exists.
        """

    @abstractmethod
    def find_volume(self, name: str) -> Optional[RuntimeHandle]:
        """Returns the volume called ``name``, or ``None``."""

    @abstractmethod
    def remove_volume(self, handle: RuntimeHandle) -> None:
        """Removes a volume and its data."""

    @abstractmethod
    def stream_logs(self, handle: RuntimeHandle, follow: bool = False) -> Iterator[bytes]:
        """
        Yields the container output in chunks.

        Without ``follow`` the iterator ends at the current end of the log.
        With ``follow`` it keeps waiting for new output until the container is removed.
        """
