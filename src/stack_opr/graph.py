"""Graph module for stack orchestration.

Builds a dependency graph over resources and computes traversal orderings
for create (dependencies first) and destroy (dependents first).
"""

import heapq
import logging
from typing import Any, Iterable

logger = logging.getLogger(__name__)


class CycleError(Exception):
    """Resources depend on each other in a cycle.

    Attributes:
        cycles: Each cycle as a list of resource names (declaration order)
    """

    def __init__(self, cycles: list[list[str]]):
        self.cycles = cycles
        described = '; '.join(' -> '.join(c + [c[0]]) for c in cycles)
        super().__init__(f"Dependency cycle detected: {described}")

    @property
    def members(self) -> list[str]:
        return [name for cycle in self.cycles for name in cycle]


class StackGraph:
    """Dependency graph over a resource set.

    Nodes are anything with `name` and `dependencies` attributes (desired
    resources, or resource states loaded from disk). Edges to names outside
    the set are ignored.

    Provides ordered traversal for lifecycle operations:
    - create_order(): dependencies before dependents (topological)
    - destroy_order(): dependents before dependencies (reverse)
    """

    def __init__(self, resources: Iterable[Any]):
        """Build dependency graph.

        Args:
            resources: Resources in declaration order

        Raises:
            CycleError: If the dependencies do not form a DAG
        """
        self._nodes: dict[str, Any] = {}
        for resource in resources:
            self._nodes[resource.name] = resource

        self._position = {name: i for i, name in enumerate(self._nodes)}
        self._deps: dict[str, list[str]] = {}
        self._dependents: dict[str, list[str]] = {name: [] for name in self._nodes}
        for name, resource in self._nodes.items():
            deps = [d for d in dict.fromkeys(resource.dependencies) if d in self._nodes]
            self._deps[name] = deps
            for dep in deps:
                self._dependents[dep].append(name)

        cycles = self._find_cycles()
        if cycles:
            raise CycleError(cycles)
        self._order = self._topological_order()

    def __contains__(self, name: str) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def names(self) -> list[str]:
        """Resource names in declaration order."""
        return list(self._nodes)

    def get_node(self, name: str) -> Any:
        """Get a resource by name.

        Raises:
            KeyError: If name not found
        """
        return self._nodes[name]

    def dependencies(self, name: str) -> list[str]:
        """Direct dependencies of a resource (within the set)."""
        return list(self._deps[name])

    def dependents(self, name: str) -> list[str]:
        """Resources that directly depend on name."""
        return list(self._dependents[name])

    def all_dependents(self, name: str) -> set[str]:
        """Every resource that transitively depends on name."""
        seen: set[str] = set()
        stack = list(self._dependents[name])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents[current])
        return seen

    def create_order(self) -> list[str]:
        """Return names in creation order (dependencies before dependents).

        Ties are broken by declaration order.
        """
        return list(self._order)

    def destroy_order(self) -> list[str]:
        """Return names in destruction order (dependents before dependencies).

        Reverse of create_order.
        """
        return list(reversed(self._order))

    def _topological_order(self) -> list[str]:
        """Kahn's algorithm with a declaration-order priority queue."""
        remaining = {name: len(deps) for name, deps in self._deps.items()}
        ready = [self._position[name] for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        names = list(self._nodes)

        ordered: list[str] = []
        while ready:
            name = names[heapq.heappop(ready)]
            ordered.append(name)
            for dependent in self._dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, self._position[dependent])
        return ordered

    def _find_cycles(self) -> list[list[str]]:
        """Strongly connected components that form cycles (Tarjan, iterative)."""
        index: dict[str, int] = {}
        lowlink: dict[str, int] = {}
        on_stack: set[str] = set()
        stack: list[str] = []
        components: list[list[str]] = []
        counter = 0

        for root in self._nodes:
            if root in index:
                continue
            work = [(root, iter(self._deps[root]))]
            index[root] = lowlink[root] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root)

            while work:
                node, edges = work[-1]
                advanced = False
                for dep in edges:
                    if dep not in index:
                        index[dep] = lowlink[dep] = counter
                        counter += 1
                        stack.append(dep)
                        on_stack.add(dep)
                        work.append((dep, iter(self._deps[dep])))
                        advanced = True
                        break
                    if dep in on_stack:
                        lowlink[node] = min(lowlink[node], index[dep])
                if advanced:
                    continue

                work.pop()
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])
                if lowlink[node] == index[node]:
                    component = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    if len(component) > 1 or node in self._deps[node]:
                        components.append(sorted(component, key=self._position.__getitem__))

        components.sort(key=lambda c: self._position[c[0]])
        for component in components:
            logger.debug(f"Cycle: {', '.join(component)}")
        return components
