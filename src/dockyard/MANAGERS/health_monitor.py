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
Health probing for services: TCP reachability and log-pattern checks,
polled at a fixed interval up to a timeout.
"""
import re
import socket
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from ..errors import HealthTimeout, OperationCancelled, RuntimeCallError, StartError
from ..MODELS.runtime_state import ContainerStatus, RuntimeHandle
from ..MODELS.service_definition import HealthProbe, ProbeKind, ServiceSpec
from ..MODELS.settings import Settings
from ..RUNTIME.base import ContainerRuntime
from ..UTILS.logging import get_logger

log = get_logger(__name__)

Connector = Callable[[Tuple[str, int], float], object]


@dataclass
class ProbeResult:
    """Outcome of a single probe run."""

    success: bool
    output: str = ""


@dataclass
class ServiceHealth:
    """Health information for a service."""

    healthy: bool = False
    failing_streak: int = 0
    checks: int = 0
    last_check: Optional[str] = None
    last_output: str = ""


class HealthMonitor:
    """
    Runs health probes against service containers.
    """

    def __init__(self, runtime: ContainerRuntime, settings: Optional[Settings] = None,
                 connect: Optional[Connector] = None):
        """
        Initializes the health monitor.

        :param runtime: Runtime used to read logs and container status.
        :param settings: Default probe interval and timeout.
        :param connect: Opens a TCP connection, ``socket.create_connection`` by default.
        """
        self.runtime = runtime
        self.settings = settings or Settings()
        self.connect = connect or socket.create_connection
        self._lock = threading.Lock()
        self._health: Dict[str, ServiceHealth] = {}

    def get_health(self, service_name: str) -> ServiceHealth:
        """
        Get the health status of a service.

        Args:
            service_name: Name of the service.

        Returns:
            ServiceHealth object.
        """
        with self._lock:
            return self._health.get(service_name, ServiceHealth())

    def reset_health(self, name: str) -> None:
        with self._lock:
            self._health.pop(name, None)

    def interval(self, probe: HealthProbe) -> float:
        return probe.interval if probe.interval is not None else self.settings.health_interval

    def timeout(self, probe: HealthProbe) -> float:
        return probe.timeout if probe.timeout is not None else self.settings.health_timeout

    def check(self, spec: ServiceSpec, handle: RuntimeHandle) -> ProbeResult:
        """
        Runs the probe of ``spec`` once. A service without a probe is always healthy.

        :param spec: The service.
        :param handle: Its container.
        :return: The probe outcome.
        """
        probe = spec.health_check
        if probe is None:
            return ProbeResult(success=True)
        if probe.kind is ProbeKind.TCP:
            result = self._check_tcp(spec, probe)
        else:
            result = self._check_log(handle, probe)

        with self._lock:
            health = self._health.setdefault(spec.name, ServiceHealth())
            health.checks += 1
            health.last_check = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            health.last_output = result.output
            health.healthy = result.success
            health.failing_streak = 0 if result.success else health.failing_streak + 1
        return result

    def wait_until_healthy(self, spec: ServiceSpec, handle: RuntimeHandle,
                           cancel: Optional[threading.Event] = None) -> None:
        """
        Polls the probe every interval until it passes.

        :param spec: The service.
        :param handle: Its running container.
        :param cancel: Interrupts the wait.
        :raises HealthTimeout: If the probe did not pass within its timeout.
        :raises StartError: If the container stopped while being probed.
        :raises OperationCancelled: If ``cancel`` was set.
        """
        probe = spec.health_check
        if probe is None:
            return
        cancel = cancel or threading.Event()
        interval = self.interval(probe)
        deadline = time.monotonic() + self.timeout(probe)
        log.info("health_waiting", service=spec.name, probe=probe.kind.value)

        while True:
            if cancel.is_set():
                raise OperationCancelled(f"health wait of {spec.name} cancelled")
            info = self.runtime.inspect_container(handle.name)
            if info is None or info.status is not ContainerStatus.RUNNING:
                code = info.exit_code if info else None
                raise StartError(spec.name, f"container stopped before becoming healthy (exit code {code})")
            if self.check(spec, handle).success:
                log.info("health_passed", service=spec.name)
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                health = self.get_health(spec.name)
                raise HealthTimeout(
                    spec.name,
                    f"not healthy after {self.timeout(probe):g}s ({health.checks} checks): {health.last_output}",
                )
            cancel.wait(min(interval, remaining))

    def _check_tcp(self, spec: ServiceSpec, probe: HealthProbe) -> ProbeResult:
        host, port = "127.0.0.1", probe.port
        for mapping in spec.ports:
            if mapping.container_port == probe.port and mapping.host_port:
                host = mapping.host_ip if mapping.host_ip not in (None, "0.0.0.0") else "127.0.0.1"
                port = mapping.host_port
                break
        try:
            conn = self.connect((host, port), 1.0)
        except OSError as e:
            return ProbeResult(success=False, output=f"{host}:{port} unreachable: {e}")
        close = getattr(conn, "close", None)
        if close:
            close()
        return ProbeResult(success=True, output=f"{host}:{port} reachable")

    def _check_log(self, handle: RuntimeHandle, probe: HealthProbe) -> ProbeResult:
        try:
            data = b"".join(self.runtime.stream_logs(handle, follow=False))
        except RuntimeCallError as e:
            return ProbeResult(success=False, output=str(e))
        match = re.search(probe.pattern, data.decode("utf-8", errors="replace"), re.MULTILINE)
        if match:
            return ProbeResult(success=True, output=match.group(0)[:500])
        return ProbeResult(success=False, output=f"pattern {probe.pattern!r} not found in logs")
