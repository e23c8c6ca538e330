"""Stage dependency DAG derived from declared inputs and outputs.

A stage depends on every stage that produces one of its inputs.  The graph
is validated acyclic on construction, so a cyclic definition is rejected
before any external command runs.  Topological order is deterministic:
ties are broken by declaration order.
"""

from __future__ import annotations

import heapq
from collections import deque

from geoforge.errors import CyclicDependencyError
from geoforge.models.stages import StageDefinition


class PipelineGraph:
    """Directed acyclic graph of stage dependencies."""

    def __init__(self, stages: list[StageDefinition]) -> None:
        self._stages: dict[str, StageDefinition] = {s.stage_id: s for s in stages}
        # Ties are broken by position in the declared list
        self._order_key: dict[str, int] = {s.stage_id: i for i, s in enumerate(stages)}

        producers: dict[str, str] = {}
        for stage in stages:
            for name in stage.outputs:
                producers[name] = stage.stage_id

        # Forward edges: stage_id -> upstream stage_ids
        self._upstream: dict[str, list[str]] = {}
        # Reverse edges: stage_id -> downstream stage_ids
        self._downstream: dict[str, list[str]] = {sid: [] for sid in self._stages}
        for stage in stages:
            ups: list[str] = []
            for name in stage.inputs:
                producer = producers.get(name)
                if producer is not None and producer not in ups:
                    ups.append(producer)
            self._upstream[stage.stage_id] = ups
            for up in ups:
                self._downstream[up].append(stage.stage_id)

        self._order = self._topological_order()

    def _topological_order(self) -> list[str]:
        """Kahn's algorithm with a declaration-order priority queue."""
        in_degree = {sid: len(ups) for sid, ups in self._upstream.items()}
        ready = [(self._order_key[sid], sid) for sid, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            _, node = heapq.heappop(ready)
            order.append(node)
            for dep in self._downstream[node]:
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    heapq.heappush(ready, (self._order_key[dep], dep))

        if len(order) != len(self._stages):
            stuck = sorted(sid for sid, deg in in_degree.items() if deg > 0)
            raise CyclicDependencyError(
                f"Stage dependencies form a cycle among: {', '.join(stuck)}"
            )
        return order

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    @property
    def stage_ids(self) -> list[str]:
        """All stage_ids in topological order."""
        return list(self._order)

    def get_upstream(self, stage_id: str) -> list[str]:
        """Direct upstream stage_ids."""
        return list(self._upstream.get(stage_id, []))

    def closure(self, stage_ids: list[str]) -> list[str]:
        """The given stages plus everything upstream of them, topologically ordered."""
        wanted: set[str] = set()
        queue = deque(stage_ids)
        while queue:
            node = queue.popleft()
            if node in wanted:
                continue
            wanted.add(node)
            queue.extend(self._upstream.get(node, []))
        return [sid for sid in self._order if sid in wanted]

    def get_stage_definition(self, stage_id: str) -> StageDefinition:
        return self._stages[stage_id]
