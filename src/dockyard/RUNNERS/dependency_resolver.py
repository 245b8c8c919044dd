"""
Dependency resolution for services to determine startup and shutdown order.
"""
import heapq
from typing import Dict, Iterable, List, Mapping, Optional

from ..errors import CyclicDependency, ParseError, ParseErrorKind
from ..MODELS.orchestration_config import Deployment
from ..MODELS.service_definition import ServiceSpec


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.

    The order is a topological sort with a lexicographic tie-break between
    services whose dependencies are all satisfied, so the same deployment
    always yields the same sequence.
    """
    def order(self, deployment: Deployment) -> List[ServiceSpec]:
        """
        Determines the order to start services.

        :param deployment: The deployment to order.
        :return: Services, every one after all of its dependencies.
        :raises CyclicDependency: If the dependency graph has a cycle.
        :raises ParseError: If a dependency names an undefined service.
        """
        names = self.order_names({name: svc.depends_on for name, svc in deployment.services.items()})
        return [deployment.services[name] for name in names]

    def teardown_order(self, deployment: Deployment) -> List[ServiceSpec]:
        """
        Determines the order to stop services: the exact reverse of :meth:`order`.
        """
        return list(reversed(self.order(deployment)))

    def order_names(self, graph: Mapping[str, Iterable[str]]) -> List[str]:
        """
        Kahn's algorithm over ``service -> dependencies``.

        :param graph: Dependencies of every service.
        :return: Service names in startup order.
        """
        dependencies: Dict[str, set] = {name: set(deps) for name, deps in graph.items()}
        for name, deps in dependencies.items():
            for dep in deps:
                if dep not in dependencies:
                    raise ParseError(ParseErrorKind.UNKNOWN_REFERENCE,
                                     f"service '{name}' depends on undefined service '{dep}'")

        dependents: Dict[str, List[str]] = {name: [] for name in dependencies}
        for name, deps in dependencies.items():
            for dep in deps:
                dependents[dep].append(name)

        remaining = {name: len(deps) for name, deps in dependencies.items()}
        ready = [name for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        ordered = []
        while ready:
            name = heapq.heappop(ready)
            ordered.append(name)
            for dependent in dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(ordered) != len(dependencies):
            unresolved = {name: dependencies[name] for name in dependencies if name not in set(ordered)}
            raise CyclicDependency(self.find_cycle(unresolved) or sorted(unresolved))
        return ordered

    def find_cycle(self, graph: Mapping[str, Iterable[str]]) -> Optional[List[str]]:
        """
        Finds one dependency cycle, if any.

        Nodes are visited in lexicographic order so the reported cycle is
        stable. References to nodes outside ``graph`` are ignored.

        :param graph: Dependencies of every service.
        :return: The cycle path with its first node repeated at the end, or ``None``.
        """
        dependencies = {name: sorted(dep for dep in deps if dep in graph) for name, deps in graph.items()}
        visited = set()
        stack: List[str] = []
        on_stack = set()

        def visit(name) -> Optional[List[str]]:
            """
            Depth-first search keeping the current path on ``stack``.
            """
            visited.add(name)
            stack.append(name)
            on_stack.add(name)
            for dep in dependencies[name]:
                if dep in on_stack:
                    return stack[stack.index(dep):] + [dep]
                if dep not in visited:
                    cycle = visit(dep)
                    if cycle:
                        return cycle
            stack.pop()
            on_stack.remove(name)
            return None

        for name in sorted(dependencies):
            if name not in visited:
                cycle = visit(name)
                if cycle:
                    return cycle
        return None
