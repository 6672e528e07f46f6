# shipline/pipeline/graph.py
"""
Stage dependency graph.

Validates the ``needs`` edges and input references of a pipeline and
produces a deterministic execution order.
"""

import heapq
import logging
from collections.abc import Iterator, Sequence

from shipline.errors import GraphError
from shipline.pipeline.definition import StageSpec

logger = logging.getLogger(__name__)


class StageGraph:
    """
    Directed acyclic graph of pipeline stages.

    Edges point from a stage to the stages it ``needs``. Construction
    validates the graph; an invalid graph raises GraphError.

    Example:
        graph = StageGraph(definition.stages)
        for name in graph.order():
            spec = graph.get(name)
    """

    def __init__(self, stages: Sequence[StageSpec]) -> None:
        self._specs: dict[str, StageSpec] = {}
        self._position: dict[str, int] = {}

        for index, spec in enumerate(stages):
            if spec.name in self._specs:
                raise GraphError(f"duplicate stage name '{spec.name}'")
            self._specs[spec.name] = spec
            self._position[spec.name] = index

        self._check_edges()
        self._order = self._topological_order()
        self._upstream = {name: self._collect(name, upward=True) for name in self._order}
        self._check_inputs()
        logger.debug(f"Built StageGraph: {self._order}")

    @property
    def names(self) -> list[str]:
        """Stage names in declaration order."""
        return list(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def __iter__(self) -> Iterator[StageSpec]:
        return (self._specs[name] for name in self._order)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def get(self, name: str) -> StageSpec:
        """Return the spec for a stage (KeyError if unknown)."""
        return self._specs[name]

    def order(self) -> list[str]:
        """Topological order; ties are broken by declaration order."""
        return list(self._order)

    def upstream(self, name: str) -> set[str]:
        """All stages the given stage transitively depends on."""
        if name not in self._specs:
            raise KeyError(name)
        return set(self._upstream[name])

    def downstream(self, name: str) -> set[str]:
        """All stages that transitively depend on the given stage."""
        if name not in self._specs:
            raise KeyError(name)
        return self._collect(name, upward=False)

    def layers(self) -> list[list[str]]:
        """Group stages by dependency depth (each layer only needs earlier layers)."""
        depth: dict[str, int] = {}
        for name in self._order:
            needs = self._specs[name].needs
            depth[name] = 1 + max((depth[n] for n in needs), default=-1)

        layers: list[list[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for name in self._order:
            layers[depth[name]].append(name)
        return layers

    def _check_edges(self) -> None:
        for spec in self._specs.values():
            seen = set()
            for dep in spec.needs:
                if dep == spec.name:
                    raise GraphError(f"stage '{spec.name}' cannot depend on itself")
                if dep not in self._specs:
                    raise GraphError(f"stage '{spec.name}' needs unknown stage '{dep}'")
                if dep in seen:
                    raise GraphError(f"stage '{spec.name}' lists '{dep}' twice in needs")
                seen.add(dep)

    def _topological_order(self) -> list[str]:
        # Kahn's algorithm with a heap keyed on declaration order
        remaining = {name: len(spec.needs) for name, spec in self._specs.items()}
        dependents: dict[str, list[str]] = {name: [] for name in self._specs}
        for name, spec in self._specs.items():
            for dep in spec.needs:
                dependents[dep].append(name)

        ready = [(self._position[n], n) for n, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order: list[str] = []

        while ready:
            _, name = heapq.heappop(ready)
            order.append(name)
            for child in dependents[name]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    heapq.heappush(ready, (self._position[child], child))

        if len(order) != len(self._specs):
            stuck = [n for n in self._specs if n not in set(order)]
            raise GraphError(f"dependency cycle: {' -> '.join(self._find_cycle(stuck))}")
        return order

    def _find_cycle(self, candidates: list[str]) -> list[str]:
        """Return one cycle (first node repeated at the end) among the candidates."""
        candidate_set = set(candidates)
        visiting: list[str] = []
        visited: set[str] = set()

        def visit(name: str) -> list[str] | None:
            if name in visiting:
                return visiting[visiting.index(name):] + [name]
            if name in visited:
                return None
            visiting.append(name)
            for dep in self._specs[name].needs:
                if dep in candidate_set:
                    cycle = visit(dep)
                    if cycle:
                        return cycle
            visiting.pop()
            visited.add(name)
            return None

        for name in candidates:
            cycle = visit(name)
            if cycle:
                return cycle
        return candidates

    def _neighbours(self, name: str, upward: bool) -> list[str]:
        if upward:
            return list(self._specs[name].needs)
        return [other for other, spec in self._specs.items() if name in spec.needs]

    def _collect(self, name: str, upward: bool) -> set[str]:
        found: set[str] = set()
        stack = self._neighbours(name, upward)
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(self._neighbours(current, upward))
        return found

    def _check_inputs(self) -> None:
        for spec in self._specs.values():
            for env_name, (stage, output) in spec.input_refs().items():
                if stage not in self._specs:
                    raise GraphError(
                        f"stage '{spec.name}' input {env_name} references unknown stage '{stage}'"
                    )
                if stage not in self._upstream[spec.name]:
                    raise GraphError(
                        f"stage '{spec.name}' input {env_name} references '{stage}', "
                        f"which is not upstream (add it to needs)"
                    )
                if output not in self._specs[stage].outputs:
                    raise GraphError(
                        f"stage '{spec.name}' input {env_name} references undeclared "
                        f"output '{output}' of stage '{stage}'"
                    )
