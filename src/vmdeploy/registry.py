from __future__ import annotations

"""Step registry.

CONTRACT
- Inputs: Step definitions (Python API) or a PlanConfig (YAML plan)
- Outputs (required):
  - topological_order(): deterministic list of steps, prerequisites first
- Invariants:
  - Step ids are unique
  - Every prerequisite refers to a registered step
  - The dependency graph is acyclic
  - Among steps that are ready at the same time, the one registered first
    runs first, so the order is stable for a given registration order
- Failure:
  - register() raises DuplicateStepError
  - validate()/topological_order() raise MissingPrerequisiteError or CycleError
"""

import heapq
from typing import Iterable, Iterator

from .config import DEFAULT_TRANSIENT_PATTERNS, PlanConfig, StepSpec
from .errors import CycleError, DuplicateStepError, MissingPrerequisiteError
from .steps.base import Step
from .steps.files import FileMatches, WriteFile
from .steps.shell import ShellAction, ShellCheck


class StepRegistry:
    def __init__(self, steps: Iterable[Step] = ()):
        self._steps: dict[str, Step] = {}
        for step in steps:
            self.register(step)

    def register(self, step: Step) -> Step:
        if step.id in self._steps:
            raise DuplicateStepError(step.id)
        self._steps[step.id] = step
        return step

    def get(self, step_id: str) -> Step:
        return self._steps[step_id]

    @property
    def ids(self) -> list[str]:
        return list(self._steps)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps.values())

    def _check_prerequisites(self) -> None:
        for step in self._steps.values():
            for req in step.requires:
                if req not in self._steps:
                    raise MissingPrerequisiteError(step.id, req)

    def _find_cycle(self, remaining: set[str]) -> list[str]:
        visited: set[str] = set()
        path: list[str] = []

        def visit(node: str) -> list[str] | None:
            if node in path:
                return path[path.index(node):] + [node]
            if node in visited:
                return None
            visited.add(node)
            path.append(node)
            for req in self._steps[node].requires:
                if req in remaining:
                    found = visit(req)
                    if found:
                        return found
            path.pop()
            return None

        for node in self._steps:
            if node in remaining:
                found = visit(node)
                if found:
                    return found
        return sorted(remaining)

    def topological_order(self) -> list[Step]:
        self._check_prerequisites()

        position = {sid: i for i, sid in enumerate(self._steps)}
        pending = {sid: set(step.requires) for sid, step in self._steps.items()}
        dependents: dict[str, list[str]] = {sid: [] for sid in self._steps}
        for sid, reqs in pending.items():
            for req in reqs:
                dependents[req].append(sid)

        ready = [(position[sid], sid) for sid, reqs in pending.items() if not reqs]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            _, sid = heapq.heappop(ready)
            order.append(sid)
            for dep in dependents[sid]:
                pending[dep].discard(sid)
                if not pending[dep]:
                    heapq.heappush(ready, (position[dep], dep))

        if len(order) < len(self._steps):
            remaining = set(self._steps) - set(order)
            raise CycleError(self._find_cycle(remaining))
        return [self._steps[sid] for sid in order]

    def validate(self) -> None:
        self.topological_order()

    @classmethod
    def from_plan(cls, plan: PlanConfig) -> StepRegistry:
        return cls(step_from_spec(spec, plan) for spec in plan.steps)


def step_from_spec(spec: StepSpec, plan: PlanConfig) -> Step:
    cwd = spec.cwd or plan.cwd
    if spec.write is not None:
        action = WriteFile(spec.write.path, spec.write.content, spec.write.mode)
        check = FileMatches(spec.write.path, spec.write.content, spec.write.mode)
    else:
        action = ShellAction(
            cmd=spec.run,
            timeout_s=spec.timeout_s or plan.timeout_s,
            env=dict(spec.env),
            cwd=cwd,
            transient_patterns=DEFAULT_TRANSIENT_PATTERNS + spec.transient_patterns,
            transient_exit_codes=spec.transient_exit_codes,
        )
        check = None
    if spec.check is not None:
        check = ShellCheck(
            spec.check,
            timeout_s=spec.check_timeout_s or plan.check_timeout_s,
            env=dict(spec.env),
            cwd=cwd,
        )
    return Step(
        id=spec.id,
        action=action,
        description=spec.description,
        requires=spec.requires,
        check=check,
        max_attempts=spec.max_attempts,
    )
