"""Dependency graph of provisioning steps."""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from .errors import CycleError, DuplicateStepError, UnknownDependencyError
from .steps import Step


@dataclass(frozen=True, slots=True)
class StepGraph:
    """A validated DAG of steps.

    Declaration order is preserved and used to break ties between steps that
    become ready at the same time, so the execution order is reproducible.
    """

    steps: tuple[Step, ...]

    @classmethod
    def build(cls, steps: Iterable[Step]) -> StepGraph:
        ordered = tuple(steps)
        seen: set[str] = set()
        for step in ordered:
            if step.id in seen:
                raise DuplicateStepError(step.id)
            seen.add(step.id)

        for step in ordered:
            for dep in step.depends_on:
                if dep not in seen:
                    raise UnknownDependencyError(step.id, dep)

        graph = cls(steps=ordered)
        graph._order()
        return graph

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __contains__(self, step_id: object) -> bool:
        return any(s.id == step_id for s in self.steps)

    @property
    def ids(self) -> list[str]:
        return [s.id for s in self.steps]

    def get(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def topological_order(self) -> list[Step]:
        index = {s.id: i for i, s in enumerate(self.steps)}
        return [self.steps[index[step_id]] for step_id in self._order()]

    def dependents_of(self, step_id: str) -> list[str]:
        """Return every step that transitively depends on `step_id`, in order."""

        direct: dict[str, list[str]] = {s.id: [] for s in self.steps}
        for step in self.steps:
            for dep in step.depends_on:
                direct[dep].append(step.id)

        found: set[str] = set()
        stack = list(direct.get(step_id, []))
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(direct[current])
        return [sid for sid in self._order() if sid in found]

    def ancestors_of(self, step_ids: Iterable[str]) -> list[str]:
        """Return the given steps plus everything they depend on, in order."""

        by_id = {s.id: s for s in self.steps}
        found: set[str] = set()
        stack = list(step_ids)
        while stack:
            current = stack.pop()
            if current in found:
                continue
            if current not in by_id:
                raise KeyError(current)
            found.add(current)
            stack.extend(by_id[current].depends_on)
        return [sid for sid in self._order() if sid in found]

    def _order(self) -> list[str]:
        index = {s.id: i for i, s in enumerate(self.steps)}
        remaining = {s.id: len(set(s.depends_on)) for s in self.steps}
        dependents: dict[str, list[str]] = {s.id: [] for s in self.steps}
        for step in self.steps:
            for dep in set(step.depends_on):
                dependents[dep].append(step.id)

        ready = [index[sid] for sid, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            step_id = self.steps[heapq.heappop(ready)].id
            order.append(step_id)
            for child in dependents[step_id]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    heapq.heappush(ready, index[child])

        if len(order) != len(self.steps):
            unresolved = [s.id for s in self.steps if s.id not in set(order)]
            raise CycleError(self._find_cycle(unresolved))
        return order

    def _find_cycle(self, candidates: list[str]) -> list[str]:
        by_id = {s.id: s for s in self.steps}
        allowed = set(candidates)

        for start in candidates:
            path: list[str] = []
            on_path: set[str] = set()
            current = start
            # Every unresolved node has at least one unresolved dependency, so
            # walking dependencies inside the unresolved set must revisit a node.
            while current not in on_path:
                path.append(current)
                on_path.add(current)
                current = next(d for d in by_id[current].depends_on if d in allowed)
            return path[path.index(current) :] + [current]
        return candidates
