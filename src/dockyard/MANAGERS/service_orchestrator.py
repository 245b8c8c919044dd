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
Orchestration of a whole deployment: up, down, ps and logs.
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import (
    CreateError,
    DependencyFailed,
    OperationCancelled,
    RuntimeCallError,
    RuntimeUnavailable,
    ServiceError,
    ServiceNotFound,
    StartError,
)
from ..MODELS.orchestration_config import Deployment, NetworkSpec
from ..MODELS.runtime_state import (
    ContainerStatus,
    OperationResult,
    RuntimeHandle,
    ServiceReport,
    ServiceState,
    ServiceStatus,
)
from ..MODELS.settings import Settings
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNTIME.base import ContainerRuntime
from ..UTILS.logging import get_logger
from .health_monitor import HealthMonitor
from .lifecycle_controller import LifecycleController
from .log_aggregator import LogStream
from .resource_reconciler import ReleasePolicy, ResourceReconciler

log = get_logger(__name__)

OBSERVED_STATES = {
    ContainerStatus.CREATED: ServiceState.CREATED,
    ContainerStatus.RUNNING: ServiceState.RUNNING,
    ContainerStatus.EXITED: ServiceState.STOPPED,
}


@dataclass
class UpOptions:
    """
    Options of ``up``.

    ``detached`` is informational for the engine; the CLI attaches to logs
    when it is False. ``cancel`` lets the caller interrupt the operation.
    """

    detached: bool = False
    fail_fast: bool = False
    cancel: Optional[threading.Event] = None


@dataclass
class DownOptions:
    """Options of ``down``. ``timeout`` overrides the stop grace period."""

    purge_volumes: bool = False
    keep_anonymous_volumes: bool = False
    timeout: Optional[float] = None
    cancel: Optional[threading.Event] = None


class _Operation:
    """
    Halting state of one in-flight operation.

    ``halt`` is set on cancellation and on a fail-fast abort; every wait of
    the operation watches it.
    """

    def __init__(self, external: Optional[threading.Event]):
        self.halt = threading.Event()
        self.cancelled = False
        self.aborted = False
        self._done = threading.Event()
        if external is not None:
            threading.Thread(target=self._watch, args=(external,), daemon=True).start()

    def _watch(self, external: threading.Event):
        while not self._done.is_set():
            if external.wait(0.05):
                self.cancel()
                return

    def cancel(self):
        self.cancelled = True
        self.halt.set()

    def abort(self):
        self.aborted = True
        self.halt.set()

    def close(self):
        self._done.set()


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.

    The engine keeps one LifecycleController per deployment name; nothing is
    shared between engines.
    """
    def __init__(self,
                 runtime: ContainerRuntime,
                 settings: Optional[Settings] = None,
                 monitor: Optional[HealthMonitor] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        """
        Initializes the orchestrator.

        :param runtime: The runtime collaborator.
        :param settings: Orchestrator defaults.
        :param monitor: Health monitor, built from ``runtime`` and ``settings`` by default.
        :param sleep: Replaces the backoff sleep between retries (tests).
        """
        self.runtime = runtime
        self.settings = settings or Settings()
        self.monitor = monitor or HealthMonitor(runtime, self.settings)
        self.resolver = DependencyResolver()
        self._sleep = sleep
        self._lock = threading.Lock()
        self._controllers: Dict[str, LifecycleController] = {}
        self._operation: Optional[_Operation] = None

    def controller(self, deployment: Deployment) -> LifecycleController:
        """
        The lifecycle controller of ``deployment``, created on first use.
        """
        with self._lock:
            controller = self._controllers.get(deployment.name)
            if controller is None or controller.deployment != deployment:
                reconciler = ResourceReconciler(self.runtime, deployment.name)
                controller = LifecycleController(deployment, self.runtime, reconciler, self.monitor,
                                                 self.settings, sleep=self._sleep)
                self._controllers[deployment.name] = controller
            return controller

    def cancel(self):
        """
        Cancels the in-flight ``up`` or ``down``. Runtime calls already
        issued complete; no new transition starts.
        """
        with self._lock:
            operation = self._operation
        if operation is not None:
            log.warning("operation_cancelling")
            operation.cancel()

    def up(self, deployment: Deployment, options: Optional[UpOptions] = None) -> OperationResult:
        """
        Brings every service up in dependency order.

        Networks and named volumes are reconciled first. Each service is
        created, waits for its dependencies to be Healthy, is started and
        waits for its own health probe.

        :param deployment: The deployment to bring up.
        :param options: Detach, fail-fast and cancellation options.
        :return: Per-service final states.
        :raises CyclicDependency: Before any runtime call, if services form a cycle.
        """
        options = options or UpOptions()
        order = [svc.name for svc in self.resolver.order(deployment)]
        controller = self.controller(deployment)
        result = OperationResult(operation="up", deployment=deployment.name)
        created_networks: List[Tuple[RuntimeHandle, NetworkSpec]] = []
        operation = self._begin(options.cancel)
        log.info("up_started", deployment=deployment.name, order=order)

        try:
            self.runtime.ping()
            for name in order:
                controller.prepare(name)
            self._reconcile_resources(deployment, controller.reconciler, result, created_networks)
            self._run_services(deployment, order, controller, operation, options.fail_fast)
        except RuntimeUnavailable as e:
            result.fatal_error = str(e)
            log.error("runtime_unavailable", deployment=deployment.name, error=str(e))
        finally:
            self._end(operation)

        failed = {name for name in order if controller.state(name) is ServiceState.FAILED}
        if operation.aborted and not result.fatal_error:
            self._rollback(order, controller, created_networks, result)

        result.cancelled = operation.cancelled
        result.services = [self._report(controller, name, name in failed) for name in order]
        log.info("up_finished", deployment=deployment.name, exit_code=int(result.exit_code))
        return result

    def down(self, deployment: Deployment, options: Optional[DownOptions] = None) -> OperationResult:
        """
        Tears services down in reverse dependency order, then releases
        networks, then volumes. Named volumes are kept unless ``purge_volumes``.

        :param deployment: The deployment to tear down.
        :param options: Volume policy, grace period and cancellation.
        :return: Per-service final states.
        """
        options = options or DownOptions()
        order = [svc.name for svc in self.resolver.teardown_order(deployment)]
        controller = self.controller(deployment)
        reconciler = controller.reconciler
        policy = ReleasePolicy(purge_volumes=options.purge_volumes,
                               keep_anonymous=options.keep_anonymous_volumes)
        result = OperationResult(operation="down", deployment=deployment.name)
        operation = self._begin(options.cancel)
        log.info("down_started", deployment=deployment.name, order=order)

        try:
            self.runtime.ping()
            for name in order:
                if operation.halt.is_set():
                    break
                controller.sync(name)
                try:
                    controller.teardown(name, policy, grace=options.timeout)
                except ServiceError as e:
                    log.error("service_teardown_failed", service=name, error=str(e))

            if not operation.halt.is_set():
                for name in sorted(deployment.networks):
                    spec = deployment.networks[name]
                    result.networks[reconciler.runtime_name(spec)] = self._release(reconciler, spec, policy)
                for name in sorted(deployment.volumes):
                    spec = deployment.volumes[name]
                    result.volumes[reconciler.runtime_name(spec)] = self._release(reconciler, spec, policy)
        except RuntimeUnavailable as e:
            result.fatal_error = str(e)
            log.error("runtime_unavailable", deployment=deployment.name, error=str(e))
        finally:
            self._end(operation)

        result.cancelled = operation.cancelled
        result.services = [controller.report(name) for name in order]
        log.info("down_finished", deployment=deployment.name, exit_code=int(result.exit_code))
        return result

    def ps(self, deployment: Deployment) -> List[ServiceStatus]:
        """
        Returns the status of all services, in startup order. Read-only.

        Services this engine has not driven are observed from the runtime.
        """
        with self._lock:
            controller = self._controllers.get(deployment.name)
        rows = []
        for svc in self.resolver.order(deployment):
            status = controller.status(svc.name) if controller is not None else None
            if status is None:
                info = self.runtime.inspect_container(deployment.container_name(svc.name))
                if info is None:
                    status = ServiceStatus(name=svc.name, state=ServiceState.PLANNED)
                else:
                    status = ServiceStatus(name=svc.name, state=OBSERVED_STATES[info.status], handle=info.handle)
            rows.append(status)
        return rows

    def logs(self, deployment: Deployment, service: str, follow: bool = False,
             cancel: Optional[threading.Event] = None) -> LogStream:
        """
        Returns the log lines of ``service`` as a lazy stream.

        :param deployment: The deployment.
        :param service: Name of the service.
        :param follow: Keep streaming new output.
        :param cancel: Ends a followed stream.
        :raises ServiceNotFound: If the deployment has no such service.
        """
        if service not in deployment.services:
            raise ServiceNotFound(f"no such service: {service}")
        with self._lock:
            controller = self._controllers.get(deployment.name)
        handle = controller.handle(service) if controller is not None else None
        if handle is None:
            info = self.runtime.inspect_container(deployment.container_name(service))
            handle = info.handle if info is not None else None
        return LogStream(self.runtime, handle, follow=follow, cancel=cancel)

    def _begin(self, external: Optional[threading.Event]) -> _Operation:
        operation = _Operation(external)
        with self._lock:
            self._operation = operation
        return operation

    def _end(self, operation: _Operation):
        operation.close()
        with self._lock:
            if self._operation is operation:
                self._operation = None

    def _reconcile_resources(self, deployment: Deployment, reconciler: ResourceReconciler,
                             result: OperationResult,
                             created_networks: List[Tuple[RuntimeHandle, NetworkSpec]]):
        """
        Ensures every network and named volume, concurrently.
        A resource that cannot be created fails the services using it later.
        """
        specs = [deployment.networks[n] for n in sorted(deployment.networks)]
        specs += [deployment.volumes[v] for v in sorted(deployment.volumes)]
        if not specs:
            return
        with ThreadPoolExecutor(max_workers=len(specs), thread_name_prefix="dockyard-resource") as pool:
            futures = [(spec, pool.submit(reconciler.reconcile, spec)) for spec in specs]
            for spec, future in futures:
                table = result.networks if isinstance(spec, NetworkSpec) else result.volumes
                name = reconciler.runtime_name(spec)
                try:
                    handle, created = future.result()
                except RuntimeCallError as e:
                    table[name] = f"error: {e}"
                    log.error("resource_failed", name=name, error=str(e))
                    continue
                table[name] = "created" if created else "exists"
                if created and isinstance(spec, NetworkSpec):
                    created_networks.append((handle, spec))

    def _run_services(self, deployment: Deployment, order: List[str], controller: LifecycleController,
                      operation: _Operation, fail_fast: bool):
        """
        Runs one worker per service. Workers for independent services proceed
        concurrently; dependents block until their dependencies settle.
        """
        workers = self.settings.max_parallel or len(order)
        unavailable: Optional[RuntimeUnavailable] = None
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dockyard-service") as pool:
            futures = [pool.submit(self._bring_up, deployment, name, controller, operation, fail_fast)
                       for name in order]
            for future in futures:
                try:
                    future.result()
                except RuntimeUnavailable as e:
                    unavailable = unavailable or e
        if unavailable is not None:
            raise unavailable

    def _bring_up(self, deployment: Deployment, name: str, controller: LifecycleController,
                  operation: _Operation, fail_fast: bool):
        """
        Drives one service to Healthy.
        """
        spec = deployment.services[name]
        halt = operation.halt
        try:
            if halt.is_set():
                raise OperationCancelled(f"{name} not started, operation cancelled")
            controller.create(name, halt)
            for dep in spec.depends_on:
                if not controller.wait_settled(dep, halt):
                    controller.hold_back(name, DependencyFailed(name, f"dependency '{dep}' did not become healthy"))
                    return
            if halt.is_set():
                raise OperationCancelled(f"{name} not started, operation cancelled")
            controller.start(name, halt)
            controller.wait_healthy(name, halt)
        except OperationCancelled as e:
            controller.hold_back(name, e)
        except ServiceError:
            if fail_fast:
                log.warning("fail_fast_triggered", service=name)
                operation.abort()
        except RuntimeUnavailable as e:
            controller.hold_back(name, ServiceError(name, str(e)))
            operation.abort()
            raise
        except Exception as e:
            error_type = CreateError if controller.handle(name) is None else StartError
            controller.fail(name, error_type(name, f"unexpected runtime error: {e}", cause=e))
            if fail_fast:
                operation.abort()
        finally:
            controller.settle(name)

    @staticmethod
    def _report(controller: LifecycleController, name: str, failed: bool) -> ServiceReport:
        """
        The report of ``name``. A service that failed stays Failed in the
        report even after the rollback removed its container.
        """
        report = controller.report(name)
        if failed:
            return report.model_copy(update={"state": ServiceState.FAILED})
        return report

    def _rollback(self, order: List[str], controller: LifecycleController,
                  created_networks: List[Tuple[RuntimeHandle, NetworkSpec]], result: OperationResult):
        """
        Tears down what this ``up`` created after a fail-fast abort. Named
        volumes are kept; pre-existing containers and networks are left alone.
        """
        log.warning("rollback_started", deployment=controller.deployment.name)
        for name in reversed(order):
            if not controller.created_here(name):
                continue
            try:
                controller.teardown(name, ReleasePolicy())
            except ServiceError as e:
                log.error("service_teardown_failed", service=name, error=str(e))
        for handle, spec in reversed(created_networks):
            try:
                controller.reconciler.release(handle, ReleasePolicy(), spec=spec)
                result.networks[handle.name] = "removed"
            except RuntimeCallError as e:
                log.error("network_release_failed", network=handle.name, error=str(e))

    def _release(self, reconciler: ResourceReconciler, spec, policy: ReleasePolicy) -> str:
        try:
            handle = reconciler.lookup(spec)
            if handle is None:
                return "absent"
            return "removed" if reconciler.release(handle, policy, spec=spec) else "preserved"
        except RuntimeCallError as e:
            log.error("resource_release_failed", name=reconciler.runtime_name(spec), error=str(e))
            return f"error: {e}"
