import threading
import time

import pytest

from dockyard.errors import CyclicDependency, ServiceNotFound
from dockyard.MANAGERS.service_orchestrator import DownOptions, ServiceOrchestrator, UpOptions
from dockyard.MODELS.orchestration_config import Deployment
from dockyard.MODELS.runtime_state import ExitCode, ServiceState
from dockyard.MODELS.service_definition import ServiceSpec
from dockyard.RUNTIME.memory import InMemoryRuntime

STACK = """
services:
  db:
    image: postgres
    volumes: ['data:/var/lib/postgresql/data']
  backend:
    image: api
    depends_on: [db]
  frontend:
    image: web
    depends_on: [backend]
    ports: ['8080:80']
volumes:
  data:
"""


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def run_in_thread(fn, *args):
    box = {}
    thread = threading.Thread(target=lambda: box.update(result=fn(*args)))
    thread.start()
    return thread, box


def states(result):
    return {report.name: report.state for report in result.services}


def test_up_starts_in_dependency_order(parse, runtime, orchestrator):
    deployment = parse(STACK)

    result = orchestrator.up(deployment)

    assert result.exit_code is ExitCode.SUCCESS
    assert [s.name for s in result.services] == ["db", "backend", "frontend"]
    assert set(states(result).values()) == {ServiceState.HEALTHY}
    assert runtime.calls_of("start") == ["proj-db-1", "proj-backend-1", "proj-frontend-1"]
    assert result.networks == {"proj_default": "created"}
    assert result.volumes == {"proj_data": "created"}


def test_ps_while_db_is_starting(parse, runtime, orchestrator):
    deployment = parse(STACK)
    gate = runtime.hold_start("proj-db-1")

    thread, box = run_in_thread(orchestrator.up, deployment)
    assert wait_for(lambda: "proj-db-1" in runtime.calls_of("start"))

    rows = {row.name: row.state for row in orchestrator.ps(deployment)}
    assert rows["db"] is ServiceState.STARTING
    assert rows["backend"] in (ServiceState.PLANNED, ServiceState.CREATED)
    assert rows["frontend"] in (ServiceState.PLANNED, ServiceState.CREATED)

    gate.set()
    thread.join(timeout=10)
    assert box["result"].exit_code is ExitCode.SUCCESS


def test_dependents_wait_for_health_probe(parse, runtime, orchestrator):
    deployment = parse("""
services:
  db: {image: postgres, healthcheck: {log: 'ready to accept', timeout: 5s}}
  backend: {image: api, depends_on: [db]}
""")
    thread, box = run_in_thread(orchestrator.up, deployment)
    assert wait_for(lambda: "proj-db-1" in runtime.calls_of("start"))
    time.sleep(0.1)
    assert runtime.calls_of("start") == ["proj-db-1"]

    runtime.emit_log("proj-db-1", "database system is ready to accept connections\n")
    thread.join(timeout=10)

    assert box["result"].exit_code is ExitCode.SUCCESS
    assert runtime.calls_of("start") == ["proj-db-1", "proj-backend-1"]


def test_down_in_reverse_order_keeps_named_volume(parse, runtime, orchestrator):
    deployment = parse(STACK)
    orchestrator.up(deployment)
    runtime.volume_data["proj_data"]["PG_VERSION"] = "13"

    result = orchestrator.down(deployment)

    assert result.exit_code is ExitCode.SUCCESS
    assert [s.name for s in result.services] == ["frontend", "backend", "db"]
    assert set(states(result).values()) == {ServiceState.REMOVED}
    assert runtime.calls_of("stop") == ["proj-frontend-1", "proj-backend-1", "proj-db-1"]
    assert result.volumes == {"proj_data": "preserved"}
    assert result.networks == {"proj_default": "removed"}
    assert runtime.containers == {}

    again = orchestrator.up(deployment)
    assert again.volumes == {"proj_data": "exists"}
    assert runtime.volume_data["proj_data"] == {"PG_VERSION": "13"}


def test_down_purge_volumes(parse, runtime, orchestrator):
    deployment = parse(STACK)
    orchestrator.up(deployment)

    result = orchestrator.down(deployment, DownOptions(purge_volumes=True))

    assert result.volumes == {"proj_data": "removed"}
    assert runtime.volumes == {}


def test_anonymous_volumes_removed_with_container(parse, runtime, orchestrator):
    deployment = parse("services:\n  web: {image: nginx, volumes: ['/cache']}\n")
    orchestrator.up(deployment)
    assert len(runtime.volumes) == 1

    orchestrator.down(deployment)
    assert runtime.volumes == {}


def test_keep_anonymous_volumes(parse, runtime, orchestrator):
    deployment = parse("services:\n  web: {image: nginx, volumes: ['/cache']}\n")
    orchestrator.up(deployment)

    orchestrator.down(deployment, DownOptions(keep_anonymous_volumes=True))
    assert len(runtime.volumes) == 1


def test_up_is_idempotent(parse, runtime, orchestrator):
    deployment = parse(STACK)
    orchestrator.up(deployment)

    result = orchestrator.up(deployment)

    assert result.exit_code is ExitCode.SUCCESS
    assert len(runtime.calls_of("create_container")) == 3
    assert len(runtime.calls_of("start")) == 3
    assert result.networks == {"proj_default": "exists"}


def test_failed_dependency_holds_back_dependents(parse, runtime, orchestrator):
    deployment = parse(STACK)
    runtime.fail_start("proj-backend-1")

    result = orchestrator.up(deployment)

    assert result.exit_code is ExitCode.PARTIAL_FAILURE
    assert result.service("db").state is ServiceState.HEALTHY
    assert result.service("backend").state is ServiceState.FAILED
    frontend = result.service("frontend")
    assert frontend.state is ServiceState.CREATED
    assert "backend" in frontend.error
    assert "proj-frontend-1" not in runtime.calls_of("start")


def test_on_failure_retries_through_engine(parse, runtime, orchestrator, sleeps):
    deployment = parse("services:\n  db: {image: postgres, restart: on-failure}\n")
    runtime.fail_create("proj-db-1")

    result = orchestrator.up(deployment)

    assert runtime.calls_of("create_container") == ["proj-db-1"] * 5
    assert result.service("db").state is ServiceState.FAILED
    assert result.service("db").attempts == 5
    assert len(sleeps) == 4


def test_fail_fast_rolls_back(parse, runtime, orchestrator):
    deployment = parse(STACK.replace("volumes:\n  data:", "  worker: {image: worker}\nvolumes:\n  data:"))
    runtime.fail_create("proj-backend-1")

    result = orchestrator.up(deployment, UpOptions(fail_fast=True))

    assert result.exit_code is ExitCode.PARTIAL_FAILURE
    assert result.service("backend").state is ServiceState.FAILED
    assert runtime.containers == {}
    assert runtime.networks == {}
    assert "proj_data" in runtime.volumes
    assert result.networks["proj_default"] == "removed"


def test_fail_fast_reports_failed_start(parse, runtime, orchestrator):
    deployment = parse(STACK)
    runtime.fail_start("proj-backend-1")

    result = orchestrator.up(deployment, UpOptions(fail_fast=True))

    assert result.exit_code is ExitCode.PARTIAL_FAILURE
    backend = result.service("backend")
    assert backend.state is ServiceState.FAILED
    assert "start of proj-backend-1 failed" in backend.error
    assert result.service("db").state is ServiceState.REMOVED
    assert runtime.containers == {}


def test_fail_fast_keeps_preexisting_containers(parse, runtime, orchestrator):
    deployment = parse(STACK)
    orchestrator.up(deployment)
    runtime.exit("proj-frontend-1", 1)
    runtime.fail_start("proj-frontend-1")

    result = orchestrator.up(deployment, UpOptions(fail_fast=True))

    assert result.service("frontend").state is ServiceState.FAILED
    assert "proj-db-1" in runtime.containers
    assert "proj-backend-1" in runtime.containers
    assert "proj_default" in runtime.networks


def test_cancel_stops_new_transitions(parse, runtime, orchestrator):
    deployment = parse(STACK)
    gate = runtime.hold_start("proj-db-1")
    thread, box = run_in_thread(orchestrator.up, deployment)
    assert wait_for(lambda: "proj-db-1" in runtime.calls_of("start"))

    orchestrator.cancel()
    gate.set()
    thread.join(timeout=10)

    result = box["result"]
    assert result.cancelled
    assert result.exit_code is ExitCode.PARTIAL_FAILURE
    assert runtime.calls_of("start") == ["proj-db-1"]
    assert "cancelled" in result.service("backend").error


def test_external_cancel_event(parse, runtime, orchestrator):
    deployment = parse(STACK)
    gate = runtime.hold_start("proj-db-1")
    cancel = threading.Event()
    thread, box = run_in_thread(orchestrator.up, deployment, UpOptions(cancel=cancel))
    assert wait_for(lambda: "proj-db-1" in runtime.calls_of("start"))

    cancel.set()
    time.sleep(0.2)
    gate.set()
    thread.join(timeout=10)

    assert box["result"].cancelled
    assert "proj-backend-1" not in runtime.calls_of("start")


def test_runtime_unavailable_is_fatal(parse, runtime, orchestrator):
    deployment = parse(STACK)
    runtime.available = False

    result = orchestrator.up(deployment)

    assert result.exit_code is ExitCode.FATAL_ERROR
    assert result.fatal_error
    assert [s.name for s in result.services] == ["db", "backend", "frontend"]
    assert runtime.calls == []


def test_cycle_rejected_before_runtime_calls(runtime, orchestrator):
    deployment = Deployment(name="proj", services={
        "a": ServiceSpec(name="a", image="x", depends_on=["b"]),
        "b": ServiceSpec(name="b", image="x", depends_on=["a"]),
    })
    with pytest.raises(CyclicDependency):
        orchestrator.up(deployment)
    assert runtime.calls == []


def test_logs(parse, runtime, orchestrator):
    deployment = parse(STACK)
    orchestrator.up(deployment)
    runtime.emit_log("proj-db-1", "listening\n")

    stream = orchestrator.logs(deployment, "db")
    assert list(stream) == ["listening"]
    assert list(stream) == ["listening"]

    with pytest.raises(ServiceNotFound):
        orchestrator.logs(deployment, "cache")


def test_ps_observes_runtime_without_history(parse, runtime, orchestrator, settings):
    deployment = parse(STACK)
    orchestrator.up(deployment)

    fresh = ServiceOrchestrator(runtime, settings)
    rows = {row.name: row.state for row in fresh.ps(deployment)}

    assert rows == {"db": ServiceState.RUNNING, "backend": ServiceState.RUNNING, "frontend": ServiceState.RUNNING}
    calls = len(runtime.calls)
    fresh.ps(deployment)
    assert len(runtime.calls) == calls


class BrokenDiskRuntime(InMemoryRuntime):
    """Fails creates of one container with a plain OSError."""

    def create_container(self, config):
        if config.name == "proj-db-1":
            raise FileNotFoundError(2, "No such file or directory", "/proc/nope")
        return super().create_container(config)


def test_unexpected_runtime_error_fails_service(parse, settings, sleeps):
    runtime = BrokenDiskRuntime()
    orchestrator = ServiceOrchestrator(runtime, settings, sleep=sleeps.append)
    deployment = parse(STACK)

    thread, box = run_in_thread(orchestrator.up, deployment)
    thread.join(timeout=10)

    assert not thread.is_alive()
    result = box["result"]
    assert result.exit_code is ExitCode.PARTIAL_FAILURE
    db = result.service("db")
    assert db.state is ServiceState.FAILED
    assert "/proc/nope" in db.error
    assert "db" in result.service("backend").error
    assert runtime.calls_of("start") == []


def test_independent_services_start_concurrently(parse, runtime, orchestrator):
    deployment = parse("services:\n  a: {image: x}\n  b: {image: x}\n")
    gate = runtime.hold_start("proj-a-1")

    thread, box = run_in_thread(orchestrator.up, deployment)
    assert wait_for(lambda: "proj-b-1" in runtime.calls_of("start"))
    assert "proj-a-1" in runtime.calls_of("start")
    assert wait_for(lambda: orchestrator.ps(deployment)[1].state is ServiceState.HEALTHY)

    gate.set()
    thread.join(timeout=10)
    assert box["result"].exit_code is ExitCode.SUCCESS


def test_max_parallel_limits_service_workers(parse, runtime, settings, sleeps):
    orchestrator = ServiceOrchestrator(runtime, settings.model_copy(update={"max_parallel": 1}),
                                       sleep=sleeps.append)
    deployment = parse("services:\n  a: {image: x}\n  b: {image: x}\n")
    gate = runtime.hold_start("proj-a-1")

    thread, box = run_in_thread(orchestrator.up, deployment)
    assert wait_for(lambda: "proj-a-1" in runtime.calls_of("start"))
    time.sleep(0.2)
    assert runtime.calls_of("create_container") == ["proj-a-1"]

    gate.set()
    thread.join(timeout=10)
    assert box["result"].exit_code is ExitCode.SUCCESS
    assert runtime.calls_of("start") == ["proj-a-1", "proj-b-1"]
