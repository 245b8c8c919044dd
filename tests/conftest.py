import pytest

from dockyard.MANAGERS.health_monitor import HealthMonitor
from dockyard.MANAGERS.lifecycle_controller import LifecycleController
from dockyard.MANAGERS.resource_reconciler import ResourceReconciler
from dockyard.MANAGERS.service_orchestrator import ServiceOrchestrator
from dockyard.MODELS.settings import Settings
from dockyard.PARSERS.compose_parser import ComposeParser
from dockyard.RUNTIME.memory import InMemoryRuntime


@pytest.fixture
def settings():
    """Millisecond timings so health waits and backoff never slow the suite."""
    return Settings(
        health_interval=0.01,
        health_timeout=0.2,
        stop_grace=0.1,
        backoff_base=0.001,
        backoff_ceiling=0.01,
    )


@pytest.fixture
def sleeps():
    """Records backoff delays instead of sleeping."""
    return []


@pytest.fixture
def runtime():
    return InMemoryRuntime()


@pytest.fixture
def parse():
    def _parse(document, name="proj"):
        return ComposeParser(context={}).parse_from_string(document, name=name)
    return _parse


@pytest.fixture
def orchestrator(runtime, settings, sleeps):
    return ServiceOrchestrator(runtime, settings, sleep=sleeps.append)


@pytest.fixture
def make_controller(runtime, settings, sleeps):
    def _make(deployment):
        reconciler = ResourceReconciler(runtime, deployment.name)
        monitor = HealthMonitor(runtime, settings)
        return LifecycleController(deployment, runtime, reconciler, monitor, settings, sleep=sleeps.append)
    return _make
