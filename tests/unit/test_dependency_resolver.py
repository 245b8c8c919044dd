import pytest

from dockyard.errors import CyclicDependency, ParseError, ParseErrorKind
from dockyard.MODELS.orchestration_config import Deployment
from dockyard.MODELS.service_definition import ServiceSpec
from dockyard.RUNNERS.dependency_resolver import DependencyResolver


def make_deployment(graph):
    services = {
        name: ServiceSpec(name=name, image="img", depends_on=deps)
        for name, deps in graph.items()
    }
    return Deployment(name="proj", services=services)


def test_order_respects_dependencies():
    deployment = make_deployment({
        "frontend": ["backend"],
        "backend": ["db", "cache"],
        "db": [],
        "cache": [],
    })
    order = [s.name for s in DependencyResolver().order(deployment)]
    assert order == ["cache", "db", "backend", "frontend"]


def test_ties_break_lexicographically():
    resolver = DependencyResolver()
    assert resolver.order_names({"c": [], "a": [], "b": []}) == ["a", "b", "c"]
    assert resolver.order_names({"z": [], "b": ["z"], "a": ["z"]}) == ["z", "a", "b"]


def test_order_is_deterministic():
    graph = {f"svc{i}": [f"svc{j}" for j in range(i) if (i + j) % 3 == 0] for i in range(12)}
    resolver = DependencyResolver()
    first = resolver.order_names(graph)
    for _ in range(5):
        assert resolver.order_names(dict(reversed(list(graph.items())))) == first


def test_teardown_is_exact_reverse():
    deployment = make_deployment({"web": ["api"], "api": ["db"], "db": [], "worker": ["db"]})
    resolver = DependencyResolver()
    up = [s.name for s in resolver.order(deployment)]
    down = [s.name for s in resolver.teardown_order(deployment)]
    assert down == list(reversed(up))


def test_cycle_reports_path():
    resolver = DependencyResolver()
    with pytest.raises(CyclicDependency) as exc:
        resolver.order_names({"ok": [], "a": ["b"], "b": ["a"]})
    assert exc.value.cycle == ["a", "b", "a"]
    assert "a -> b -> a" in str(exc.value)


def test_find_cycle_none_for_dag():
    assert DependencyResolver().find_cycle({"a": ["b"], "b": [], "c": ["a", "b"]}) is None


def test_undefined_dependency():
    with pytest.raises(ParseError) as exc:
        DependencyResolver().order_names({"a": ["ghost"]})
    assert exc.value.kind is ParseErrorKind.UNKNOWN_REFERENCE
