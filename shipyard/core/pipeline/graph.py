from __future__ import annotations

from collections import defaultdict, deque
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Set

from shipyard.core.errors import CycleDetectedError, PipelineDefinitionError, UnknownStageError

if TYPE_CHECKING:
    from .definition import PipelineDefinition, StageSpec


class StageGraph:
    """DAG of pipeline stages; an edge `a -> b` means `b` is gated on `a`.

    Topological order is deterministic: among stages that are ready at the
    same time, the one declared first in the pipeline runs first.
    """

    def __init__(self) -> None:
        self.nodes: Dict[str, "StageSpec"] = {}
        self.edges: Dict[str, List[str]] = defaultdict(list)
        self._position: Dict[str, int] = {}

    @staticmethod
    def from_definition(defn: "PipelineDefinition") -> "StageGraph":
        g = StageGraph()
        for stage in defn.stages:
            g.add_stage(stage)
        return g

    def add_stage(self, stage: "StageSpec") -> None:
        if stage.name in self.nodes:
            raise PipelineDefinitionError(f"Duplicate stage name: {stage.name}", details={"stage": stage.name})
        self._position[stage.name] = len(self._position)
        self.nodes[stage.name] = stage
        for dep in stage.depends_on:
            self.edges[dep].append(stage.name)

    def _validate_dependencies(self) -> None:
        for name, stage in self.nodes.items():
            for dep in stage.depends_on:
                if dep not in self.nodes:
                    raise UnknownStageError(
                        f"Stage '{name}' depends on unknown stage '{dep}'",
                        details={"stage": name, "dependency": dep},
                    )
                if dep == name:
                    raise CycleDetectedError(f"Stage '{name}' depends on itself", details={"stage": name})

    def topological_order(self) -> List[str]:
        self._validate_dependencies()

        in_degree: Dict[str, int] = {name: len(set(s.depends_on)) for name, s in self.nodes.items()}
        queue = deque(sorted((n for n, d in in_degree.items() if d == 0), key=self._position.__getitem__))

        order: List[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)

            ready: List[str] = []
            for child in dict.fromkeys(self.edges.get(current, [])):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    ready.append(child)
            # keep the queue in declaration order
            queue = deque(sorted([*queue, *ready], key=self._position.__getitem__))

        if len(order) != len(self.nodes):
            stuck = sorted(set(self.nodes) - set(order), key=self._position.__getitem__)
            raise CycleDetectedError(
                "Cycle detected in stage dependency graph",
                details={"stages": stuck},
            )
        return order

    def stages_in_order(self) -> List["StageSpec"]:
        return [self.nodes[n] for n in self.topological_order()]

    def roots(self) -> List[str]:
        return [n for n in self.topological_order() if not self.nodes[n].depends_on]

    def _walk(self, start: str, neighbours) -> Set[str]:
        if start not in self.nodes:
            raise UnknownStageError(f"Unknown stage '{start}'", details={"stage": start})
        seen: Set[str] = set()
        stack = list(neighbours(start))
        while stack:
            n = stack.pop()
            if n in seen:
                continue
            seen.add(n)
            stack.extend(neighbours(n))
        return seen

    def upstream(self, name: str) -> List[str]:
        found = self._walk(name, lambda n: self.nodes[n].depends_on)
        return [n for n in self.topological_order() if n in found]

    def downstream(self, name: str) -> List[str]:
        found = self._walk(name, lambda n: self.edges.get(n, []))
        return [n for n in self.topological_order() if n in found]

    def environments(self) -> List[str]:
        """Environments in promotion order."""
        out: List[str] = []
        for stage in self.stages_in_order():
            if stage.environment and stage.environment not in out:
                out.append(stage.environment)
        return out

    def next_environment(self, environment: str) -> Optional[str]:
        envs = self.environments()
        if environment not in envs:
            return None
        i = envs.index(environment)
        return envs[i + 1] if i + 1 < len(envs) else None

    def previous_environment(self, environment: str) -> Optional[str]:
        envs = self.environments()
        if environment not in envs:
            return None
        i = envs.index(environment)
        return envs[i - 1] if i > 0 else None

    def select(self, names: Iterable[str]) -> List[str]:
        """Requested stages in execution order; unknown names raise."""
        wanted = list(names)
        for n in wanted:
            if n not in self.nodes:
                raise UnknownStageError(f"Unknown stage '{n}'", details={"stage": n})
        return [n for n in self.topological_order() if n in set(wanted)]
