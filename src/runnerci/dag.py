# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set

from .errors import CycleError, UnknownDependencyError
from .model import PipelineDefinition

_WHITE, _GREY, _BLACK = 0, 1, 2  # unvisited / in progress / done


class ExecutionGraph:
    """
    Dependency graph for a single pipeline run.

    Each job tracks how many of its predecessors have not finished yet; a job
    is ready when that count reaches zero. The counts are consumed by the run,
    so every run resolves its own graph.
    """

    def __init__(self, order: List[str], preds: Dict[str, List[str]]):
        self.order = list(order)
        self.preds: Dict[str, List[str]] = {n: list(preds.get(n, [])) for n in order}
        self.adj: Dict[str, List[str]] = {n: [] for n in order}  # job -> dependents
        for name in order:
            for p in self.preds[name]:
                self.adj[p].append(name)
        self._unmet: Dict[str, int] = {n: len(self.preds[n]) for n in order}

    def unmet(self, name: str) -> int:
        return self._unmet[name]

    def initial_ready(self) -> List[str]:
        return [n for n in self.order if not self.preds[n]]

    def dependents(self, name: str) -> List[str]:
        return list(self.adj[name])

    def complete(self, name: str) -> List[str]:
        """Record `name` as finished and return the dependents that became ready."""
        ready: List[str] = []
        for child in self.adj[name]:
            self._unmet[child] -= 1
            if self._unmet[child] == 0:
                ready.append(child)
        return ready

    def descendants(self, name: str) -> List[str]:
        """Every job that transitively depends on `name`, in definition order."""
        seen: Set[str] = set()
        q = deque(self.adj[name])
        while q:
            node = q.popleft()
            if node in seen:
                continue
            seen.add(node)
            q.extend(self.adj[node])
        return [n for n in self.order if n in seen]

    def levels(self) -> List[List[str]]:
        """
        Topological "levels": every job in a level only depends on jobs in
        earlier levels, so a level may run fully in parallel.
        """
        indeg = {n: len(self.preds[n]) for n in self.order}
        q = deque(n for n in self.order if indeg[n] == 0)

        levels: List[List[str]] = []
        while q:
            level: List[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                for child in self.adj[node]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)
        return levels


def _find_cycle(order: List[str], preds: Dict[str, List[str]]) -> List[str] | None:
    """Three-colour DFS over the needs edges. Returns a cycle path or None."""
    color = {n: _WHITE for n in order}

    for root in order:
        if color[root] != _WHITE:
            continue
        # explicit stack: (node, iterator over its predecessors)
        path: List[str] = [root]
        stack = [(root, iter(preds[root]))]
        color[root] = _GREY
        while stack:
            node, it = stack[-1]
            nxt = next(it, None)
            if nxt is None:
                color[node] = _BLACK
                stack.pop()
                path.pop()
                continue
            if color[nxt] == _GREY:
                start = path.index(nxt)
                return path[start:] + [nxt]
            if color[nxt] == _WHITE:
                color[nxt] = _GREY
                path.append(nxt)
                stack.append((nxt, iter(preds[nxt])))
    return None


def resolve(definition: PipelineDefinition) -> ExecutionGraph:
    """
    Build the execution graph for a definition.

    Raises:
        UnknownDependencyError: a job needs a job that does not exist
        CycleError: the needs edges form a cycle
    """
    order = definition.names
    known = set(order)
    preds: Dict[str, List[str]] = {}

    for name in order:
        deps = definition.predecessors(name)
        for d in deps:
            if d not in known:
                raise UnknownDependencyError(job=name, dependency=d, known=sorted(known))
        preds[name] = deps

    cycle = _find_cycle(order, preds)
    if cycle is not None:
        raise CycleError(cycle)

    return ExecutionGraph(order, preds)
