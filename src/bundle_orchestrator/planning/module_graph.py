"""Validated module dependency graph with deterministic ordering."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from heapq import heapify, heappop, heappush
from typing import Final

from bundle_orchestrator.domain.errors import (
    CyclicDependency,
    DanglingDependency,
    DuplicateModuleName,
)
from bundle_orchestrator.domain.models import ImplicitOrder, Module

_UNVISITED: Final[int] = 0
_IN_PROGRESS: Final[int] = 1
_DONE: Final[int] = 2

ORDERING_EXPLICIT: Final[str] = "explicit"


class ModuleGraph:
    """Immutable DAG of modules keyed by name.

    Edges point from a module to the modules it depends on. Manifest position is
    kept for every module and breaks ties wherever an ordering is produced.
    """

    __slots__ = ("_modules", "_positions", "_dependencies", "_dependents", "_ordering")

    def __init__(
        self,
        modules: Sequence[Module],
        dependencies: Mapping[str, Iterable[str]],
        *,
        ordering: str,
    ) -> None:
        self._modules: dict[str, Module] = {module.name: module for module in modules}
        self._positions: dict[str, int] = {
            module.name: index for index, module in enumerate(modules)
        }
        self._dependencies: dict[str, tuple[str, ...]] = {}
        self._dependents: dict[str, list[str]] = {name: [] for name in self._modules}
        self._ordering = ordering

        for name in self._modules:
            deps = tuple(sorted(set(dependencies.get(name, ())), key=self._positions.__getitem__))
            self._dependencies[name] = deps
            for dep in deps:
                self._dependents[dep].append(name)
        for children in self._dependents.values():
            children.sort(key=self._positions.__getitem__)

    @property
    def ordering(self) -> str:
        """``explicit``, ``chain`` or ``hint``."""
        return self._ordering

    @property
    def names(self) -> tuple[str, ...]:
        """Module names in manifest order."""
        return tuple(sorted(self._modules, key=self._positions.__getitem__))

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        """``(module, dependency)`` pairs in manifest order."""
        return tuple(
            (name, dep) for name in self.names for dep in self._dependencies[name]
        )

    def __contains__(self, name: object) -> bool:
        return name in self._modules

    def __len__(self) -> int:
        return len(self._modules)

    def module(self, name: str) -> Module:
        self._assert_known(name)
        return self._modules[name]

    def position(self, name: str) -> int:
        self._assert_known(name)
        return self._positions[name]

    def dependencies(self, name: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Modules ``name`` needs installed before it may start fetching."""
        self._assert_known(name)
        if not transitive:
            return self._dependencies[name]
        return self._closure(name, self._dependencies)

    def dependents(self, name: str, *, transitive: bool = True) -> tuple[str, ...]:
        """Modules whose dependency chain includes ``name``."""
        self._assert_known(name)
        if not transitive:
            return tuple(self._dependents[name])
        return self._closure(name, self._dependents)

    def topological_order(self) -> tuple[str, ...]:
        """Kahn's algorithm; manifest position breaks ties."""
        indegree = {name: len(deps) for name, deps in self._dependencies.items()}
        ready = [self._positions[name] for name, degree in indegree.items() if degree == 0]
        heapify(ready)
        by_position = {position: name for name, position in self._positions.items()}

        order: list[str] = []
        while ready:
            name = by_position[heappop(ready)]
            order.append(name)
            for child in self._dependents[name]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heappush(ready, self._positions[child])

        if len(order) != len(self._modules):
            cycle = find_cycle(self.names, self._dependencies)
            raise CyclicDependency(cycle or ())
        return tuple(order)

    def serialize(self) -> dict[str, object]:
        return {
            "ordering": self._ordering,
            "modules": list(self.names),
            "edges": [list(edge) for edge in self.edges],
            "order": list(self.topological_order()),
        }

    def _closure(self, name: str, adjacency: Mapping[str, Sequence[str]]) -> tuple[str, ...]:
        visited: set[str] = set()
        pending: list[str] = list(adjacency[name])
        while pending:
            node = pending.pop()
            if node in visited:
                continue
            visited.add(node)
            pending.extend(neighbor for neighbor in adjacency[node] if neighbor not in visited)
        return tuple(sorted(visited, key=self._positions.__getitem__))

    def _assert_known(self, name: str) -> None:
        if name not in self._modules:
            raise KeyError(f"unknown module: {name}")


def build_module_graph(
    modules: Sequence[Module],
    *,
    implicit_order: ImplicitOrder = ImplicitOrder.CHAIN,
) -> ModuleGraph:
    """Validate ``modules`` and return their dependency graph.

    Raises ``DuplicateModuleName``, ``DanglingDependency`` or ``CyclicDependency``.
    """

    seen: dict[str, int] = {}
    for index, module in enumerate(modules):
        if module.name in seen:
            raise DuplicateModuleName(module.name, positions=(seen[module.name], index))
        seen[module.name] = index

    explicit = any(module.depends_on for module in modules)
    dependencies: dict[str, tuple[str, ...]] = {}
    if explicit:
        ordering = ORDERING_EXPLICIT
        for module in modules:
            for dep in module.depends_on:
                if dep not in seen:
                    raise DanglingDependency(module.name, dep)
            dependencies[module.name] = module.depends_on
    elif implicit_order is ImplicitOrder.CHAIN:
        ordering = ImplicitOrder.CHAIN.value
        for previous, module in zip(modules, modules[1:]):
            dependencies[module.name] = (previous.name,)
    else:
        ordering = ImplicitOrder.HINT.value

    cycle = find_cycle([module.name for module in modules], dependencies)
    if cycle is not None:
        raise CyclicDependency(cycle)

    return ModuleGraph(modules, dependencies, ordering=ordering)


def find_cycle(
    names: Sequence[str],
    dependencies: Mapping[str, Sequence[str]],
) -> tuple[str, ...] | None:
    """Three-colour depth-first search.

    Returns the first cycle found as a closed path (``("a", "b", "a")``),
    rotated so that the earliest-declared member comes first, or ``None``.
    """

    position = {name: index for index, name in enumerate(names)}
    state: dict[str, int] = {}
    stack: list[str] = []
    stack_index: dict[str, int] = {}

    for start in names:
        if state.get(start, _UNVISITED) != _UNVISITED:
            continue

        state[start] = _IN_PROGRESS
        stack_index[start] = len(stack)
        stack.append(start)
        frames: list[tuple[str, Iterator[str]]] = [(start, iter(dependencies.get(start, ())))]

        while frames:
            node, child_iter = frames[-1]
            try:
                child = next(child_iter)
            except StopIteration:
                frames.pop()
                state[node] = _DONE
                stack.pop()
                del stack_index[node]
                continue

            child_state = state.get(child, _UNVISITED)
            if child_state == _UNVISITED:
                state[child] = _IN_PROGRESS
                stack_index[child] = len(stack)
                stack.append(child)
                frames.append((child, iter(dependencies.get(child, ()))))
            elif child_state == _IN_PROGRESS:
                core = stack[stack_index[child] :]
                return _rotate_cycle(core, position)

    return None


def _rotate_cycle(core: Sequence[str], position: Mapping[str, int]) -> tuple[str, ...]:
    first = min(range(len(core)), key=lambda index: position.get(core[index], len(position)))
    rotated = tuple(core[first:]) + tuple(core[:first])
    return rotated + (rotated[0],)


__all__ = ["ORDERING_EXPLICIT", "ModuleGraph", "build_module_graph", "find_cycle"]
