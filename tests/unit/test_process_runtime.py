import os
import socket
import sys
import time

import pytest

from dockyard.errors import ImageNotFound, PortAllocated, ResourceConflict, RuntimeCallError
from dockyard.MODELS.runtime_state import ContainerConfig, ContainerStatus, MountBinding
from dockyard.MODELS.service_definition import PortMapping
from dockyard.RUNTIME.process import ProcessRuntime

SERVE = "import time; print('ready', flush=True); time.sleep(60)"


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def read_logs(runtime, handle):
    return b"".join(runtime.stream_logs(handle)).decode()


def test_container_lifecycle(tmp_path):
    runtime = ProcessRuntime(state_dir=str(tmp_path / "state"))
    runtime.ping()
    handle = runtime.create_container(ContainerConfig(
        name="proj-web-1", image="python", command=[sys.executable, "-c", SERVE],
    ))
    assert runtime.inspect_container("proj-web-1").status is ContainerStatus.CREATED

    runtime.start(handle)
    assert runtime.inspect_container("proj-web-1").status is ContainerStatus.RUNNING
    assert wait_for(lambda: "ready" in read_logs(runtime, handle))

    with pytest.raises(ResourceConflict):
        runtime.remove(handle)

    runtime.stop(handle, grace=5)
    info = runtime.inspect_container("proj-web-1")
    assert info.status is ContainerStatus.EXITED
    assert info.exit_code is not None and info.exit_code != 0

    runtime.remove(handle)
    assert runtime.inspect_container("proj-web-1") is None


def test_state_survives_new_instance(tmp_path):
    state_dir = str(tmp_path / "state")
    first = ProcessRuntime(state_dir=state_dir)
    handle = first.create_container(ContainerConfig(
        name="proj-db-1", image="python", command=[sys.executable, "-c", SERVE],
    ))
    first.start(handle)

    second = ProcessRuntime(state_dir=state_dir)
    info = second.inspect_container("proj-db-1")
    assert info.handle == handle
    assert info.status is ContainerStatus.RUNNING

    second.stop(handle, grace=5)
    assert wait_for(lambda: first.inspect_container("proj-db-1").status is ContainerStatus.EXITED)
    second.remove(handle)


def test_exited_process_is_observed(tmp_path):
    runtime = ProcessRuntime(state_dir=str(tmp_path / "state"))
    handle = runtime.create_container(ContainerConfig(
        name="proj-job-1", image="python", command=[sys.executable, "-c", "raise SystemExit(3)"],
    ))
    runtime.start(handle)

    assert wait_for(lambda: runtime.inspect_container("proj-job-1").status is ContainerStatus.EXITED)
    assert runtime.inspect_container("proj-job-1").exit_code == 3


def test_volume_is_mounted_into_container_root(tmp_path):
    runtime = ProcessRuntime(state_dir=str(tmp_path / "state"))
    volume = runtime.create_volume("proj_data")
    script = (
        "import os; "
        "open(os.path.join(os.environ['DOCKYARD_ROOT'], 'data', 'hello.txt'), 'w').write('hi')"
    )
    handle = runtime.create_container(ContainerConfig(
        name="proj-writer-1", image="python", command=[sys.executable, "-c", script],
        mounts=[MountBinding(target="/data", volume=volume)],
    ))
    runtime.start(handle)
    assert wait_for(lambda: runtime.inspect_container("proj-writer-1").status is ContainerStatus.EXITED)

    runtime.remove(handle)
    with open(os.path.join(runtime.volume_path("proj_data"), "hello.txt")) as f:
        assert f.read() == "hi"

    runtime.remove_volume(volume)
    assert runtime.find_volume("proj_data") is None
    assert not os.path.exists(runtime.volume_path("proj_data"))


def test_image_without_command(tmp_path):
    runtime = ProcessRuntime(state_dir=str(tmp_path / "state"))
    with pytest.raises(ImageNotFound):
        runtime.create_container(ContainerConfig(name="proj-web-1", image="nginx"))


def test_port_already_bound(tmp_path):
    runtime = ProcessRuntime(state_dir=str(tmp_path / "state"))
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        s.listen(1)
        port = s.getsockname()[1]
        with pytest.raises(PortAllocated):
            runtime.create_container(ContainerConfig(
                name="proj-web-1", image="python", command=[sys.executable, "-c", SERVE],
                ports=[PortMapping(container_port=80, host_port=port)],
            ))


def test_networks_are_recorded(tmp_path):
    runtime = ProcessRuntime(state_dir=str(tmp_path / "state"))
    handle = runtime.create_network("proj_default")
    with pytest.raises(ResourceConflict):
        runtime.create_network("proj_default")
    assert ProcessRuntime(state_dir=str(tmp_path / "state")).find_network("proj_default") == handle
    runtime.remove_network(handle)
    assert runtime.find_network("proj_default") is None


def test_unusable_bind_mount_is_a_runtime_error(tmp_path):
    runtime = ProcessRuntime(state_dir=str(tmp_path / "state"))
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")

    with pytest.raises(RuntimeCallError):
        runtime.create_container(ContainerConfig(
            name="proj-db-1", image="python", command=[sys.executable, "-c", SERVE],
            mounts=[MountBinding(target="/data", host_path=str(blocker / "x"))],
        ))
    assert runtime.inspect_container("proj-db-1") is None
