import threading

import pytest

from dockyard.errors import CreateError, HealthTimeout, IllegalTransition, OperationCancelled, StartError
from dockyard.MANAGERS.health_monitor import HealthMonitor
from dockyard.MANAGERS.lifecycle_controller import LifecycleController
from dockyard.MANAGERS.resource_reconciler import ReleasePolicy, ResourceReconciler
from dockyard.MODELS.runtime_state import ContainerStatus, ServiceState, can_transition


def test_on_failure_stops_after_five_attempts(parse, runtime, make_controller, sleeps):
    deployment = parse("services:\n  db: {image: postgres, restart: on-failure}\n")
    controller = make_controller(deployment)
    runtime.fail_create("proj-db-1")

    controller.prepare("db")
    with pytest.raises(CreateError):
        controller.create("db")

    assert runtime.calls_of("create_container") == ["proj-db-1"] * 5
    assert controller.state("db") is ServiceState.FAILED
    assert controller.report("db").attempts == 5
    assert len(sleeps) == 4
    assert sleeps == sorted(sleeps)
    assert max(sleeps) <= 0.01


def test_restart_none_makes_one_attempt(parse, runtime, make_controller, sleeps):
    deployment = parse("services:\n  db: {image: postgres}\n")
    controller = make_controller(deployment)
    runtime.fail_create("proj-db-1")

    controller.prepare("db")
    with pytest.raises(CreateError) as exc:
        controller.create("db")

    assert exc.value.service == "db"
    assert runtime.calls_of("create_container") == ["proj-db-1"]
    assert sleeps == []


def test_transient_failure_is_retried(parse, runtime, make_controller):
    deployment = parse("services:\n  db: {image: postgres, restart: 'on-failure:3'}\n")
    controller = make_controller(deployment)
    runtime.fail_create("proj-db-1", times=2)

    controller.prepare("db")
    handle = controller.create("db")

    assert handle.name == "proj-db-1"
    assert controller.state("db") is ServiceState.CREATED
    assert controller.report("db").attempts == 3


def test_start_failure(parse, runtime, make_controller):
    deployment = parse("services:\n  db: {image: postgres}\n")
    controller = make_controller(deployment)
    runtime.fail_start("proj-db-1")

    controller.prepare("db")
    controller.create("db")
    with pytest.raises(StartError):
        controller.start("db")

    assert controller.state("db") is ServiceState.FAILED
    assert runtime.containers["proj-db-1"].status is ContainerStatus.EXITED


def test_service_without_probe_is_healthy_once_running(parse, make_controller):
    deployment = parse("services:\n  web: {image: nginx}\n")
    controller = make_controller(deployment)

    controller.prepare("web")
    controller.create("web")
    controller.start("web")
    assert controller.state("web") is ServiceState.RUNNING
    controller.wait_healthy("web")

    assert controller.is_healthy("web")


def test_log_probe_passes(parse, runtime, make_controller):
    deployment = parse("services:\n  db: {image: postgres, healthcheck: {log: 'ready to accept'}}\n")
    controller = make_controller(deployment)

    controller.prepare("db")
    controller.create("db")
    controller.start("db")
    runtime.emit_log("proj-db-1", "database system is ready to accept connections\n")
    controller.wait_healthy("db")

    assert controller.state("db") is ServiceState.HEALTHY


def test_health_timeout_fails_without_retry(parse, runtime, make_controller):
    deployment = parse(
        "services:\n  db: {image: postgres, restart: always, healthcheck: {log: ready, timeout: 50ms}}\n"
    )
    controller = make_controller(deployment)

    controller.prepare("db")
    controller.create("db")
    controller.start("db")
    with pytest.raises(HealthTimeout):
        controller.wait_healthy("db")

    assert controller.state("db") is ServiceState.FAILED
    assert runtime.calls_of("start") == ["proj-db-1"]
    assert "not healthy" in controller.report("db").error


def test_container_exit_during_probe(parse, runtime, make_controller):
    deployment = parse("services:\n  db: {image: postgres, healthcheck: {log: ready, timeout: 5s}}\n")
    controller = make_controller(deployment)

    controller.prepare("db")
    controller.create("db")
    controller.start("db")
    runtime.exit("proj-db-1", 3)
    with pytest.raises(StartError):
        controller.wait_healthy("db")
    assert controller.state("db") is ServiceState.FAILED


def test_teardown_removes_anonymous_volumes(parse, runtime, make_controller):
    deployment = parse("services:\n  web: {image: nginx, volumes: ['data:/data', '/cache']}\nvolumes:\n  data:\n")
    controller = make_controller(deployment)

    controller.prepare("web")
    controller.create("web")
    controller.start("web")
    anonymous = [name for name in runtime.volumes if name.startswith("proj-web-1_")]
    assert len(anonymous) == 1

    controller.teardown("web")

    assert controller.state("web") is ServiceState.REMOVED
    assert "proj-web-1" not in runtime.containers
    assert anonymous[0] not in runtime.volumes
    assert "proj_data" in runtime.volumes
    assert runtime.calls_of("stop") == ["proj-web-1"]


def test_teardown_keeps_anonymous_volumes_on_request(parse, runtime, make_controller):
    deployment = parse("services:\n  web: {image: nginx, volumes: ['/cache']}\n")
    controller = make_controller(deployment)

    controller.prepare("web")
    controller.create("web")
    controller.teardown("web", ReleasePolicy(keep_anonymous=True), grace=2.5)

    assert len(runtime.volumes) == 1
    assert runtime.stop_graces["proj-web-1"] == 2.5


def test_illegal_transition(parse, make_controller):
    deployment = parse("services:\n  web: {image: nginx}\n")
    controller = make_controller(deployment)

    with pytest.raises(IllegalTransition):
        controller.transition("web", ServiceState.HEALTHY)
    assert controller.state("web") is ServiceState.PLANNED


def test_state_machine_table():
    assert can_transition(ServiceState.PLANNED, ServiceState.CREATED)
    assert can_transition(ServiceState.HEALTHY, ServiceState.STOPPING)
    assert can_transition(ServiceState.STARTING, ServiceState.FAILED)
    assert not can_transition(ServiceState.REMOVED, ServiceState.FAILED)
    assert not can_transition(ServiceState.FAILED, ServiceState.FAILED)
    assert not can_transition(ServiceState.CREATED, ServiceState.HEALTHY)
    assert not can_transition(ServiceState.STOPPED, ServiceState.HEALTHY)


def test_prepare_adopts_existing_container(parse, runtime, make_controller):
    deployment = parse("services:\n  web: {image: nginx, volumes: ['/cache']}\n")
    first = make_controller(deployment)
    first.prepare("web")
    first.create("web")
    first.start("web")

    second = make_controller(deployment)
    second.prepare("web")

    assert second.state("web") is ServiceState.RUNNING
    assert second.handle("web") == first.handle("web")
    second.teardown("web")
    assert runtime.containers == {}
    assert runtime.volumes == {}


def test_cancel_interrupts_backoff(parse, runtime, settings):
    deployment = parse("services:\n  db: {image: postgres, restart: always, volumes: ['/scratch']}\n")
    cancel = threading.Event()
    delays = []

    def sleep(seconds):
        delays.append(seconds)
        if len(delays) == 3:
            cancel.set()

    controller = LifecycleController(deployment, runtime, ResourceReconciler(runtime, "proj"),
                                     HealthMonitor(runtime, settings), settings, sleep=sleep)
    runtime.fail_create("proj-db-1")

    controller.prepare("db")
    with pytest.raises(OperationCancelled):
        controller.create("db", cancel)

    assert len(runtime.calls_of("create_container")) == 3
    assert controller.state("db") is ServiceState.PLANNED
    assert runtime.volumes == {}
