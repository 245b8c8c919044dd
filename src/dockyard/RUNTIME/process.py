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
Runtime that runs every container as a native process.

The service ``command`` is executed directly (the image is not pulled),
volumes are directories, and all state lives in ``<state_dir>/state.json``
so separate invocations see the same containers. Networks are recorded
only: processes share the host network.
"""
import os
import shutil
import threading
import time
import uuid
from typing import Dict, Iterator, Optional

from pydantic import BaseModel

from ..errors import (
    ImageNotFound,
    PortAllocated,
    ResourceConflict,
    ResourceNotFound,
    RuntimeCallError,
    RuntimeUnavailable,
)
from ..MODELS.runtime_state import ContainerConfig, ContainerInfo, ContainerStatus, RuntimeHandle
from ..RUNNERS.process_runner import ProcessRunner
from ..UTILS.logging import get_logger
from ..UTILS.port_finder import is_port_free
from .base import ContainerRuntime
from .volume_store import VolumeStore

log = get_logger(__name__)

LOG_POLL_INTERVAL = 0.1


class _ContainerRecord(BaseModel):
    id: str
    config: ContainerConfig
    status: ContainerStatus = ContainerStatus.CREATED
    pid: Optional[int] = None
    create_time: Optional[float] = None
    exit_code: Optional[int] = None


class _State(BaseModel):
    containers: Dict[str, _ContainerRecord] = {}
    networks: Dict[str, str] = {}
    volumes: Dict[str, str] = {}


class ProcessRuntime(ContainerRuntime):
    """
    Container runtime backed by host processes.
    """
    def __init__(self, state_dir: str = ".dockyard"):
        """
        :param state_dir: Directory for the state file, volumes and container roots.
        """
        self.state_dir = os.path.abspath(state_dir)
        self.state_file = os.path.join(self.state_dir, "state.json")
        self.containers_root = os.path.join(self.state_dir, "containers")
        self._volume_store: Optional[VolumeStore] = None
        self._lock = threading.RLock()
        self._runners: Dict[str, ProcessRunner] = {}

    @property
    def volume_store(self) -> VolumeStore:
        if self._volume_store is None:
            self._volume_store = VolumeStore(os.path.join(self.state_dir, "volumes"))
        return self._volume_store

    def ping(self) -> None:
        try:
            os.makedirs(self.state_dir, exist_ok=True)
        except OSError as e:
            raise RuntimeUnavailable(f"state directory {self.state_dir} is not usable: {e}") from e
        if not os.access(self.state_dir, os.W_OK):
            raise RuntimeUnavailable(f"state directory {self.state_dir} is not writable")

    def create_container(self, config: ContainerConfig) -> RuntimeHandle:
        if not config.command:
            raise ImageNotFound(f"image {config.image} cannot run as a process; the service needs a 'command'")
        with self._lock:
            state = self._load()
            if config.name in state.containers:
                raise ResourceConflict(f"container {config.name} already exists")

            claimed = {p.host_port for rec in state.containers.values() for p in rec.config.ports if p.host_port}
            for port in config.ports:
                if port.host_port is None:
                    continue
                if port.host_port in claimed or not is_port_free(port.host_port, port.host_ip or ''):
                    raise PortAllocated(f"port {port.host_port} is already allocated")
            for mount in config.mounts:
                if mount.volume and mount.volume.name not in state.volumes:
                    raise ResourceNotFound(f"volume {mount.volume.name} not found")

            root = self._root(config.name)
            try:
                os.makedirs(root, exist_ok=True)
            except OSError as e:
                raise RuntimeCallError(f"cannot create root of {config.name}: {e}") from e
            self.volume_store.mount_all(config.mounts, root)

            record = _ContainerRecord(id=uuid.uuid4().hex, config=config)
            state.containers[config.name] = record
            self._save(state)
            log.debug("container_created", container=config.name, id=record.id)
            return RuntimeHandle(id=record.id, name=config.name)

    def start(self, handle: RuntimeHandle) -> None:
        with self._lock:
            state = self._load()
            record = self._record(state, handle)
            runner = self._runner(record)
            if runner.is_running():
                return

            root = self._root(handle.name)
            working_dir = root
            if record.config.working_dir:
                working_dir = VolumeStore.resolve_target(record.config.working_dir, root)
            env = dict(os.environ)
            env.update(record.config.environment)
            env["DOCKYARD_ROOT"] = root

            runner = ProcessRunner(handle.name, log_file=self._log_file(handle.name))
            try:
                runner.start(list(record.config.command), env=env, working_dir=working_dir)
            except OSError as e:
                record.status = ContainerStatus.EXITED
                record.exit_code = 127
                self._save(state)
                raise RuntimeCallError(f"cannot start {handle.name}: {e}") from e

            self._runners[handle.name] = runner
            record.pid = runner.pid
            record.create_time = runner.create_time
            record.status = ContainerStatus.RUNNING
            record.exit_code = None
            self._save(state)

    def stop(self, handle: RuntimeHandle, grace: float) -> None:
        with self._lock:
            state = self._load()
            record = self._record(state, handle)
            runner = self._runner(record)
        # The grace period is waited out without holding the state lock.
        exit_code = runner.stop(timeout=grace)
        with self._lock:
            state = self._load()
            record = self._record(state, handle)
            record.status = ContainerStatus.EXITED
            record.exit_code = exit_code
            self._save(state)

    def remove(self, handle: RuntimeHandle) -> None:
        with self._lock:
            state = self._load()
            record = self._record(state, handle)
            if self._runner(record).is_running():
                raise ResourceConflict(f"container {handle.name} is running")
            del state.containers[handle.name]
            self._runners.pop(handle.name, None)
            self._save(state)
            shutil.rmtree(os.path.join(self.containers_root, handle.name), ignore_errors=True)

    def inspect_container(self, name: str) -> Optional[ContainerInfo]:
        with self._lock:
            state = self._load()
            record = state.containers.get(name)
            if record is None:
                return None
            if record.status is ContainerStatus.RUNNING:
                runner = self._runner(record)
                if not runner.is_running():
                    record.status = ContainerStatus.EXITED
                    record.exit_code = runner.get_exit_code()
                    self._save(state)
            return ContainerInfo(
                handle=RuntimeHandle(id=record.id, name=name),
                status=record.status,
                mounts=record.config.mounts,
                exit_code=record.exit_code,
            )

    def create_network(self, name: str, driver: str = "bridge",
                       labels: Optional[Dict[str, str]] = None) -> RuntimeHandle:
        with self._lock:
            state = self._load()
            if name in state.networks:
                raise ResourceConflict(f"network {name} already exists")
            state.networks[name] = uuid.uuid4().hex
            self._save(state)
            log.debug("network_recorded", network=name, driver=driver)
            return RuntimeHandle(id=state.networks[name], name=name)

    def find_network(self, name: str) -> Optional[RuntimeHandle]:
        with self._lock:
            network_id = self._load().networks.get(name)
            return RuntimeHandle(id=network_id, name=name) if network_id else None

    def remove_network(self, handle: RuntimeHandle) -> None:
        with self._lock:
            state = self._load()
            if state.networks.get(handle.name) != handle.id:
                raise ResourceNotFound(f"network {handle.name} not found")
            del state.networks[handle.name]
            self._save(state)

    def create_volume(self, name: str, labels: Optional[Dict[str, str]] = None) -> RuntimeHandle:
        with self._lock:
            state = self._load()
            if name in state.volumes:
                raise ResourceConflict(f"volume {name} already exists")
            self.volume_store.create(name)
            state.volumes[name] = uuid.uuid4().hex
            self._save(state)
            return RuntimeHandle(id=state.volumes[name], name=name)

    def find_volume(self, name: str) -> Optional[RuntimeHandle]:
        with self._lock:
            volume_id = self._load().volumes.get(name)
            return RuntimeHandle(id=volume_id, name=name) if volume_id else None

    def remove_volume(self, handle: RuntimeHandle) -> None:
        with self._lock:
            state = self._load()
            if state.volumes.get(handle.name) != handle.id:
                raise ResourceNotFound(f"volume {handle.name} not found")
            del state.volumes[handle.name]
            self._save(state)
            self.volume_store.remove(handle.name)

    def volume_path(self, name: str) -> str:
        """Host directory holding the data of volume ``name``."""
        return self.volume_store.path(name)

    def stream_logs(self, handle: RuntimeHandle, follow: bool = False) -> Iterator[bytes]:
        """
        Reads the container log file, polling for new output when following.
        """
        with self._lock:
            self._record(self._load(), handle)
        path = self._log_file(handle.name)
        offset = 0
        while True:
            chunk = b''
            if os.path.exists(path):
                with open(path, 'rb') as f:
                    f.seek(offset)
                    chunk = f.read()
            if chunk:
                offset += len(chunk)
                yield chunk
                continue
            if not follow:
                return
            with self._lock:
                if handle.name not in self._load().containers:
                    return
            time.sleep(LOG_POLL_INTERVAL)

    def _root(self, name: str) -> str:
        return os.path.join(self.containers_root, name, "root")

    def _log_file(self, name: str) -> str:
        return os.path.join(self.containers_root, name, "output.log")

    def _runner(self, record: _ContainerRecord) -> ProcessRunner:
        runner = self._runners.get(record.config.name)
        if runner is not None and runner.pid == record.pid:
            return runner
        return ProcessRunner(record.config.name, pid=record.pid, create_time=record.create_time)

    def _record(self, state: _State, handle: RuntimeHandle) -> _ContainerRecord:
        record = state.containers.get(handle.name)
        if record is None or record.id != handle.id:
            raise ResourceNotFound(f"container {handle.name} not found")
        return record

    def _load(self) -> _State:
        if not os.path.exists(self.state_file):
            return _State()
        try:
            with open(self.state_file, 'r') as f:
                return _State.model_validate_json(f.read())
        except (OSError, ValueError) as e:
            raise RuntimeUnavailable(f"cannot read {self.state_file}: {e}") from e

    def _save(self, state: _State):
        os.makedirs(self.state_dir, exist_ok=True)
        tmp = self.state_file + ".tmp"
        with open(tmp, 'w') as f:
            f.write(state.model_dump_json(indent=2))
        os.replace(tmp, self.state_file)
