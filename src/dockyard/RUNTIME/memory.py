"""
A deterministic, thread-safe runtime that keeps every resource in memory.

Used by the test suite and by ``dockyard --runtime memory`` to dry-run a
deployment. Failures can be injected per container name.
"""
import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from ..errors import (
    ImageNotFound,
    PortAllocated,
    ResourceConflict,
    ResourceNotFound,
    RuntimeCallError,
    RuntimeUnavailable,
)
from ..MODELS.runtime_state import ContainerConfig, ContainerInfo, ContainerStatus, RuntimeHandle
from .base import ContainerRuntime

FOREVER = -1


@dataclass
class _Container:
    """A container record of the in-memory runtime."""

    handle: RuntimeHandle
    config: ContainerConfig
    status: ContainerStatus = ContainerStatus.CREATED
    logs: List[bytes] = field(default_factory=list)
    exit_code: Optional[int] = None


class InMemoryRuntime(ContainerRuntime):
    """
    Runtime double with the same contract as a real one.

    Every call is appended to ``calls`` as ``(operation, resource name)``,
    failed attempts included.
    """

    def __init__(self, images: Optional[Iterable[str]] = None, create_delay: float = 0.0):
        """
        :param images: Images that exist. ``None`` means every image exists.
        :param create_delay: Seconds every create call takes, to widen race windows.
        """
        self._cond = threading.Condition()
        self._ids = itertools.count(1)
        self.images: Optional[Set[str]] = set(images) if images is not None else None
        self.create_delay = create_delay
        self.available = True

        self.containers: Dict[str, _Container] = {}
        self.networks: Dict[str, RuntimeHandle] = {}
        self.volumes: Dict[str, RuntimeHandle] = {}
        self.volume_data: Dict[str, Dict[str, str]] = {}
        self.host_ports_in_use: Set[int] = set()
        self.calls: List[Tuple[str, str]] = []
        self.stop_graces: Dict[str, float] = {}

        self._create_failures: Dict[str, int] = {}
        self._start_failures: Dict[str, int] = {}
        self._start_gates: Dict[str, threading.Event] = {}

    # Failure injection and inspection

    def fail_create(self, name: str, times: int = FOREVER):
        """Makes the next ``times`` creates of container ``name`` fail (forever by default)."""
        with self._cond:
            self._create_failures[name] = times

    def fail_start(self, name: str, times: int = FOREVER):
        """Makes the next ``times`` starts of container ``name`` fail (forever by default)."""
        with self._cond:
            self._start_failures[name] = times

    def hold_start(self, name: str) -> threading.Event:
        """
        Blocks ``start`` of container ``name`` until the returned event is set.
        """
        gate = threading.Event()
        with self._cond:
            self._start_gates[name] = gate
        return gate

    def emit_log(self, name: str, data: Union[str, bytes]):
        """Appends output to the log of container ``name``."""
        if isinstance(data, str):
            data = data.encode('utf-8')
        with self._cond:
            self._container(name).logs.append(data)
            self._cond.notify_all()

    def exit(self, name: str, exit_code: int = 0):
        """Simulates the main process of container ``name`` exiting."""
        with self._cond:
            container = self._container(name)
            container.status = ContainerStatus.EXITED
            container.exit_code = exit_code

    def calls_of(self, operation: str) -> List[str]:
        """Names passed to ``operation``, in call order."""
        with self._cond:
            return [name for op, name in self.calls if op == operation]

    # ContainerRuntime

    def ping(self) -> None:
        self._check_available()

    def create_container(self, config: ContainerConfig) -> RuntimeHandle:
        self._call("create_container", config.name)
        if self.create_delay:
            time.sleep(self.create_delay)
        with self._cond:
            if self._consume(self._create_failures, config.name):
                raise RuntimeCallError(f"create of {config.name} failed")
            if self.images is not None and config.image not in self.images:
                raise ImageNotFound(f"image {config.image} not found")
            if config.name in self.containers:
                raise ResourceConflict(f"container {config.name} already exists")
            bound = set(self.host_ports_in_use)
            for other in self.containers.values():
                bound.update(p.host_port for p in other.config.ports if p.host_port)
            for port in config.ports:
                if port.host_port and port.host_port in bound:
                    raise PortAllocated(f"port {port.host_port} is already allocated")
            for mount in config.mounts:
                if mount.volume and mount.volume.name not in self.volumes:
                    raise ResourceNotFound(f"volume {mount.volume.name} not found")
            for network in config.networks:
                if network.name not in self.networks:
                    raise ResourceNotFound(f"network {network.name} not found")

            handle = RuntimeHandle(id=f"ctr-{next(self._ids)}", name=config.name)
            self.containers[config.name] = _Container(handle=handle, config=config)
            return handle

    def start(self, handle: RuntimeHandle) -> None:
        self._call("start", handle.name)
        with self._cond:
            gate = self._start_gates.get(handle.name)
        if gate is not None:
            gate.wait()
        with self._cond:
            container = self._lookup(handle)
            if self._consume(self._start_failures, handle.name):
                container.status = ContainerStatus.EXITED
                container.exit_code = 1
                raise RuntimeCallError(f"start of {handle.name} failed")
            container.status = ContainerStatus.RUNNING
            container.exit_code = None

    def stop(self, handle: RuntimeHandle, grace: float) -> None:
        self._call("stop", handle.name)
        with self._cond:
            container = self._lookup(handle)
            self.stop_graces[handle.name] = grace
            if container.status is ContainerStatus.RUNNING:
                container.status = ContainerStatus.EXITED
                container.exit_code = 0

    def remove(self, handle: RuntimeHandle) -> None:
        self._call("remove", handle.name)
        with self._cond:
            container = self._lookup(handle)
            if container.status is ContainerStatus.RUNNING:
                raise ResourceConflict(f"container {handle.name} is running")
            del self.containers[handle.name]
            self._cond.notify_all()

    def inspect_container(self, name: str) -> Optional[ContainerInfo]:
        self._check_available()
        with self._cond:
            container = self.containers.get(name)
            if container is None:
                return None
            return ContainerInfo(
                handle=container.handle,
                status=container.status,
                mounts=container.config.mounts,
                exit_code=container.exit_code,
            )

    def create_network(self, name: str, driver: str = "bridge",
                       labels: Optional[Dict[str, str]] = None) -> RuntimeHandle:
        self._call("create_network", name)
        with self._cond:
            if name in self.networks:
                raise ResourceConflict(f"network {name} already exists")
            handle = RuntimeHandle(id=f"net-{next(self._ids)}", name=name)
            self.networks[name] = handle
            return handle

    def find_network(self, name: str) -> Optional[RuntimeHandle]:
        self._check_available()
        with self._cond:
            return self.networks.get(name)

    def remove_network(self, handle: RuntimeHandle) -> None:
        self._call("remove_network", handle.name)
        with self._cond:
            if self.networks.get(handle.name) != handle:
                raise ResourceNotFound(f"network {handle.name} not found")
            del self.networks[handle.name]

    def create_volume(self, name: str, labels: Optional[Dict[str, str]] = None) -> RuntimeHandle:
        self._call("create_volume", name)
        if self.create_delay:
            time.sleep(self.create_delay)
        with self._cond:
            if name in self.volumes:
                raise ResourceConflict(f"volume {name} already exists")
            handle = RuntimeHandle(id=f"vol-{next(self._ids)}", name=name)
            self.volumes[name] = handle
            self.volume_data[name] = {}
            return handle

    def find_volume(self, name: str) -> Optional[RuntimeHandle]:
        self._check_available()
        with self._cond:
            return self.volumes.get(name)

    def remove_volume(self, handle: RuntimeHandle) -> None:
        self._call("remove_volume", handle.name)
        with self._cond:
            if self.volumes.get(handle.name) != handle:
                raise ResourceNotFound(f"volume {handle.name} not found")
            del self.volumes[handle.name]
            self.volume_data.pop(handle.name, None)

    def stream_logs(self, handle: RuntimeHandle, follow: bool = False) -> Iterator[bytes]:
        self._check_available()
        index = 0
        container: Optional[_Container] = None
        while True:
            with self._cond:
                current = self.containers.get(handle.name)
                if container is None:
                    if current is None or current.handle != handle:
                        raise ResourceNotFound(f"container {handle.name} not found")
                    container = current
                removed = current is not container
                chunks = container.logs[index:]
                index += len(chunks)
                if not chunks and follow and not removed:
                    self._cond.wait(timeout=0.1)
                    continue
            for chunk in chunks:
                yield chunk
            # Output written before removal is still delivered.
            if not follow or removed:
                return

    # Internals

    def _check_available(self):
        if not self.available:
            raise RuntimeUnavailable("in-memory runtime is unavailable")

    def _call(self, operation: str, name: str):
        self._check_available()
        with self._cond:
            self.calls.append((operation, name))

    def _consume(self, failures: Dict[str, int], name: str) -> bool:
        remaining = failures.get(name, 0)
        if remaining == 0:
            return False
        if remaining > 0:
            failures[name] = remaining - 1
        return True

    def _container(self, name: str) -> _Container:
        container = self.containers.get(name)
        if container is None:
            raise ResourceNotFound(f"container {name} not found")
        return container

    def _lookup(self, handle: RuntimeHandle) -> _Container:
        container = self._container(handle.name)
        if container.handle != handle:
            raise ResourceNotFound(f"container {handle.name} not found")
        return container
