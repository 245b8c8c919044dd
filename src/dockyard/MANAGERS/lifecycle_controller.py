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
Per-service state machines: create, start, health, stop and remove,
with restart-policy retries and exponential backoff.
"""
import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from ..errors import (
    CreateError,
    HealthTimeout,
    IllegalTransition,
    OperationCancelled,
    ResourceNotFound,
    RuntimeCallError,
    StartError,
    StopError,
)
from ..MODELS.orchestration_config import Deployment, VolumeScope, VolumeSpec
from ..MODELS.runtime_state import (
    ContainerConfig,
    ContainerStatus,
    MountBinding,
    RuntimeHandle,
    ServiceReport,
    ServiceState,
    ServiceStatus,
    can_transition,
)
from ..MODELS.service_definition import MountKind, RestartCondition, RestartPolicy
from ..MODELS.settings import Settings
from ..RUNTIME.base import LABEL_PROJECT, LABEL_SERVICE, ContainerRuntime
from ..UTILS.logging import get_logger
from .health_monitor import HealthMonitor
from .resource_reconciler import ReleasePolicy, ResourceReconciler

log = get_logger(__name__)


@dataclass
class ServiceLifecycle:
    """Mutable runtime state of one service."""

    name: str
    container: str
    state: ServiceState = ServiceState.PLANNED
    handle: Optional[RuntimeHandle] = None
    attempts: int = 0
    error: Optional[str] = None
    anonymous_volumes: List[RuntimeHandle] = field(default_factory=list)
    created_here: bool = False
    observed: bool = False
    settled: threading.Event = field(default_factory=threading.Event)


class LifecycleController:
    """
    Owns the ServiceState and RuntimeHandle of every service of one deployment.
    """

    def __init__(self,
                 deployment: Deployment,
                 runtime: ContainerRuntime,
                 reconciler: ResourceReconciler,
                 monitor: HealthMonitor,
                 settings: Optional[Settings] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        """
        :param deployment: The deployment whose services are driven.
        :param runtime: The runtime collaborator.
        :param reconciler: Resolves networks and volumes to handles.
        :param monitor: Runs health probes.
        :param settings: Retry, backoff and grace defaults.
        :param sleep: Replaces the cancellable backoff sleep (tests).
        """
        self.deployment = deployment
        self.runtime = runtime
        self.reconciler = reconciler
        self.monitor = monitor
        self.settings = settings or Settings()
        self._sleep = sleep
        self._lock = threading.RLock()
        self._records: Dict[str, ServiceLifecycle] = {
            name: ServiceLifecycle(name=name, container=deployment.container_name(name))
            for name in deployment.services
        }

    # Snapshots

    def state(self, name: str) -> ServiceState:
        with self._lock:
            return self._records[name].state

    def handle(self, name: str) -> Optional[RuntimeHandle]:
        with self._lock:
            return self._records[name].handle

    def status(self, name: str) -> Optional[ServiceStatus]:
        """
        The known status of ``name``, or ``None`` if this controller never observed it.
        """
        with self._lock:
            rec = self._records[name]
            if not rec.observed:
                return None
            return ServiceStatus(name=name, state=rec.state, handle=rec.handle)

    def report(self, name: str) -> ServiceReport:
        with self._lock:
            rec = self._records[name]
            return ServiceReport(name=name, state=rec.state, handle=rec.handle,
                                 attempts=rec.attempts, error=rec.error)

    def created_here(self, name: str) -> bool:
        with self._lock:
            return self._records[name].created_here

    def is_healthy(self, name: str) -> bool:
        return self.state(name) is ServiceState.HEALTHY

    # State machine

    def transition(self, name: str, target: ServiceState, error: Optional[BaseException] = None):
        """
        Moves ``name`` to ``target``.

        :raises IllegalTransition: If the state machine does not allow the step.
        """
        with self._lock:
            rec = self._records[name]
            if not can_transition(rec.state, target):
                raise IllegalTransition(f"{name}: {rec.state.value} -> {target.value}")
            previous, rec.state = rec.state, target
            rec.observed = True
            if error is not None:
                rec.error = str(error)
            if target in (ServiceState.HEALTHY, ServiceState.FAILED):
                rec.settled.set()
        log.debug("service_transition", service=name, previous=previous.value, state=target.value)

    def fail(self, name: str, error: BaseException):
        """Marks ``name`` Failed, recording ``error``."""
        with self._lock:
            rec = self._records[name]
            rec.error = str(error)
            rec.settled.set()
            if can_transition(rec.state, ServiceState.FAILED):
                self.transition(name, ServiceState.FAILED, error)
        log.error("service_failed", service=name, error=str(error))

    def hold_back(self, name: str, error: Exception):
        """
        Records why ``name`` was not started, without changing its state.
        Dependents waiting on it are released.
        """
        with self._lock:
            rec = self._records[name]
            rec.error = str(error)
            rec.settled.set()
        log.warning("service_held_back", service=name, reason=str(error))

    def settle(self, name: str):
        """Releases dependents waiting on ``name`` whatever its state."""
        with self._lock:
            self._records[name].settled.set()

    def wait_settled(self, name: str, cancel: threading.Event, poll: float = 0.05) -> bool:
        """
        Blocks until ``name`` is Healthy, Failed or held back.

        :return: True if it became Healthy.
        :raises OperationCancelled: If ``cancel`` was set first.
        """
        with self._lock:
            settled = self._records[name].settled
        while not settled.wait(poll):
            if cancel.is_set():
                raise OperationCancelled(f"wait for {name} cancelled")
        return self.is_healthy(name)

    def prepare(self, name: str):
        """
        Resets per-operation bookkeeping and adopts the container the runtime
        already has for ``name``, if any.
        """
        with self._lock:
            rec = self._records[name]
            rec.attempts = 0
            rec.error = None
            rec.created_here = False
            rec.settled = threading.Event()
        self.sync(name)

    def sync(self, name: str):
        """
        Aligns the record with what the runtime reports. Observations replace
        the state directly; they are not lifecycle transitions.
        """
        with self._lock:
            container = self._records[name].container
        info = self.runtime.inspect_container(container)
        with self._lock:
            rec = self._records[name]
            rec.observed = True
            if info is None:
                if rec.state is not ServiceState.PLANNED:
                    rec.state = ServiceState.PLANNED
                rec.handle = None
                return
            rec.handle = info.handle
            rec.anonymous_volumes = [m.volume for m in info.mounts if m.anonymous and m.volume]
            if info.status is ContainerStatus.RUNNING:
                if rec.state is not ServiceState.HEALTHY:
                    rec.state = ServiceState.RUNNING
            elif info.status is ContainerStatus.CREATED:
                rec.state = ServiceState.CREATED
            else:
                rec.state = ServiceState.STOPPED

    # Transitions driven against the runtime

    def create(self, name: str, cancel: Optional[threading.Event] = None) -> RuntimeHandle:
        """
        Planned -> Created. Retries according to the restart policy.

        :raises CreateError: Once every allowed attempt failed.
        """
        cancel = cancel or threading.Event()
        spec = self.deployment.services[name]
        with self._lock:
            rec = self._records[name]
            if rec.handle is not None and rec.state is not ServiceState.PLANNED:
                return rec.handle
            if rec.state is not ServiceState.PLANNED:
                self.transition(name, ServiceState.PLANNED)

        try:
            config = self._container_config(name)
        except RuntimeCallError as e:
            self._release_anonymous(name, ReleasePolicy())
            err = CreateError(name, f"cannot prepare volumes or networks: {e}", cause=e)
            self.fail(name, err)
            raise err from e

        log.info("service_creating", service=name, container=config.name, image=spec.image)
        try:
            for attempt in self._retrying(spec.restart, name, cancel):
                with attempt:
                    self._count_attempt(name)
                    handle = self.runtime.create_container(config)
        except OperationCancelled:
            self._release_anonymous(name, ReleasePolicy())
            raise
        except RuntimeCallError as e:
            self._release_anonymous(name, ReleasePolicy())
            if cancel.is_set():
                raise OperationCancelled(f"create of {name} cancelled") from e
            err = CreateError(name, str(e), cause=e)
            self.fail(name, err)
            raise err from e
        except Exception:
            self._release_anonymous(name, ReleasePolicy())
            raise

        with self._lock:
            rec.handle = handle
            rec.created_here = True
            self.transition(name, ServiceState.CREATED)
        return handle

    def start(self, name: str, cancel: Optional[threading.Event] = None):
        """
        Created -> Starting -> Running. Retries according to the restart policy.

        :raises StartError: Once every allowed attempt failed.
        """
        cancel = cancel or threading.Event()
        spec = self.deployment.services[name]
        with self._lock:
            rec = self._records[name]
            if rec.state in (ServiceState.RUNNING, ServiceState.HEALTHY):
                return
            handle = rec.handle
            self.transition(name, ServiceState.STARTING)

        log.info("service_starting", service=name)
        try:
            for attempt in self._retrying(spec.restart, name, cancel):
                with attempt:
                    self._count_attempt(name)
                    self.runtime.start(handle)
        except RuntimeCallError as e:
            if cancel.is_set():
                raise OperationCancelled(f"start of {name} cancelled") from e
            err = StartError(name, str(e), cause=e)
            self.fail(name, err)
            raise err from e
        self.transition(name, ServiceState.RUNNING)

    def wait_healthy(self, name: str, cancel: Optional[threading.Event] = None):
        """
        Running -> Healthy, immediately without a probe, else once the probe passes.

        :raises HealthTimeout: If the probe did not pass in time (no retry).
        """
        spec = self.deployment.services[name]
        with self._lock:
            rec = self._records[name]
            if rec.state is ServiceState.HEALTHY:
                rec.settled.set()
                return
        try:
            self.monitor.wait_until_healthy(spec, self.handle(name), cancel)
        except (HealthTimeout, StartError) as e:
            self.fail(name, e)
            raise
        self.transition(name, ServiceState.HEALTHY)
        log.info("service_healthy", service=name)

    def teardown(self, name: str, policy: ReleasePolicy = ReleasePolicy(), grace: Optional[float] = None):
        """
        Any state -> Stopping -> Stopped -> Removed, then releases the
        container's anonymous volumes.

        :raises StopError: If the runtime cannot stop or remove the container.
        """
        grace = self.settings.stop_grace if grace is None else grace
        with self._lock:
            rec = self._records[name]
            if rec.handle is None:
                if rec.state is ServiceState.REMOVED:
                    return
                self.transition(name, ServiceState.REMOVED)
                handle = None
            else:
                handle = rec.handle
                if rec.state is not ServiceState.STOPPING:
                    self.transition(name, ServiceState.STOPPING)

        if handle is None:
            self._release_anonymous(name, policy)
            return

        log.info("service_stopping", service=name, grace=grace)
        try:
            self.runtime.stop(handle, grace)
            self.transition(name, ServiceState.STOPPED)
            self.runtime.remove(handle)
        except ResourceNotFound:
            log.debug("container_already_removed", service=name)
            with self._lock:
                if rec.state is ServiceState.STOPPING:
                    self.transition(name, ServiceState.STOPPED)
        except RuntimeCallError as e:
            err = StopError(name, str(e), cause=e)
            self.fail(name, err)
            raise err from e

        with self._lock:
            rec.handle = None
            self.transition(name, ServiceState.REMOVED)
        self._release_anonymous(name, policy)
        log.info("service_removed", service=name)

    # Internals

    def max_attempts(self, policy: RestartPolicy) -> Optional[int]:
        """
        Attempts allowed per create or start, ``None`` meaning unlimited.
        """
        if policy.condition is RestartCondition.NONE:
            return 1
        if policy.condition is RestartCondition.ON_FAILURE:
            if policy.max_attempts is None:
                return self.settings.on_failure_max_attempts
            return policy.max_attempts
        return policy.max_attempts

    def _retrying(self, policy: RestartPolicy, name: str, cancel: threading.Event) -> Retrying:
        stop = stop_when_event_set(cancel)
        attempts = self.max_attempts(policy)
        if attempts is not None:
            stop = stop | stop_after_attempt(attempts)

        def sleep(seconds: float):
            if self._sleep is not None:
                self._sleep(seconds)
            else:
                cancel.wait(seconds)
            if cancel.is_set():
                raise OperationCancelled(f"retry of {name} cancelled")

        def before_sleep(retry_state: RetryCallState):
            log.warning("service_retrying", service=name, attempt=retry_state.attempt_number,
                        delay=retry_state.next_action.sleep,
                        error=str(retry_state.outcome.exception()))

        return Retrying(
            stop=stop,
            wait=wait_exponential(multiplier=self.settings.backoff_base, max=self.settings.backoff_ceiling),
            retry=retry_if_exception_type(RuntimeCallError),
            sleep=sleep,
            before_sleep=before_sleep,
            reraise=True,
        )

    def _count_attempt(self, name: str):
        with self._lock:
            self._records[name].attempts += 1

    def _container_config(self, name: str) -> ContainerConfig:
        """
        Resolves volumes and networks of ``name`` to runtime handles.
        Anonymous volumes are created fresh for the container.
        """
        deployment = self.deployment
        spec = deployment.services[name]
        container = deployment.container_name(name)

        mounts = []
        for mount in spec.volumes:
            if mount.kind is MountKind.NAMED:
                handle = self.reconciler.ensure(deployment.volumes[mount.source])
                mounts.append(MountBinding(target=mount.target, volume=handle, read_only=mount.read_only))
            elif mount.kind is MountKind.ANONYMOUS:
                volume = VolumeSpec(name=f"{container}_{uuid.uuid4().hex}", scope=VolumeScope.CONTAINER)
                handle = self.reconciler.ensure(volume)
                with self._lock:
                    self._records[name].anonymous_volumes.append(handle)
                mounts.append(MountBinding(target=mount.target, volume=handle,
                                           read_only=mount.read_only, anonymous=True))
            else:
                mounts.append(MountBinding(target=mount.target, host_path=mount.source, read_only=mount.read_only))

        networks = [self.reconciler.ensure(deployment.networks[n]) for n in deployment.service_networks(name)]
        labels = dict(spec.labels)
        labels.update({LABEL_PROJECT: deployment.name, LABEL_SERVICE: name})
        return ContainerConfig(
            name=container,
            image=spec.image,
            command=spec.command,
            working_dir=spec.working_dir,
            environment=spec.environment,
            ports=spec.ports,
            mounts=mounts,
            networks=networks,
            labels=labels,
        )

    def _release_anonymous(self, name: str, policy: ReleasePolicy):
        with self._lock:
            rec = self._records[name]
            volumes, rec.anonymous_volumes = rec.anonymous_volumes, []
        for handle in volumes:
            spec = VolumeSpec(name=handle.name, scope=VolumeScope.CONTAINER)
            try:
                self.reconciler.release(handle, policy, spec=spec)
            except RuntimeCallError as e:
                log.warning("volume_release_failed", service=name, volume=handle.name, error=str(e))
