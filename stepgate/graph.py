"""Ordered step graph with structural acyclicity.

A dependency may only point at a step that is strictly earlier in the current
order, so the graph is acyclic by construction. Every operation returns a new
:class:`StepGraph`; the receiver is never modified.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from .contracts import Step, StepType, new_local_id
from .errors import ValidationError


class StepGraph(BaseModel):
    """Ordered list of steps with dependency edges."""

    steps: List[Step] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def identifiers(self) -> List[int]:
        return [s.identifier for s in self.steps]

    def get(self, identifier: int) -> Optional[Step]:
        return next((s for s in self.steps if s.identifier == identifier), None)

    def index_of(self, identifier: int) -> int:
        for index, step in enumerate(self.steps):
            if step.identifier == identifier:
                return index
        raise KeyError(identifier)

    # ------------------------------------------------------------------
    def add_step(
        self, position: Optional[int] = None, **fields: Any
    ) -> "StepGraph":
        """Insert a default step at ``position`` (appended when ``None``)."""
        steps = list(self.steps)
        if position is None or position > len(steps):
            position = len(steps)
        position = max(0, position)
        identifier = fields.pop("identifier", None) or new_local_id()
        step = Step(
            identifier=identifier,
            key=fields.pop("key", None) or _default_key(steps),
            name=fields.pop("name", None) or "New Step",
            type=fields.pop("type", StepType.ACTION),
            **fields,
        )
        steps.insert(position, step)
        return sanitize(StepGraph(steps=_renumber(steps)))

    def update_step(self, identifier: int, partial: Dict[str, Any]) -> "StepGraph":
        """Merge ``partial`` into the step with ``identifier``."""
        index = self.index_of(identifier)
        current = self.steps[index]
        changes = {k: v for k, v in partial.items() if k not in ("identifier", "sequence_order")}

        if "key" in changes and changes["key"] != current.key and current.is_persisted:
            raise ValidationError(
                f'Step key "{current.key}" cannot be changed after the step has been saved',
                step_key=current.key,
            )

        if "depends_on" in changes:
            changes["depends_on"] = [
                dep for dep in changes["depends_on"] if dep != identifier
            ]

        merged = current.model_copy(update=changes)
        if merged.is_gate and not merged.is_required:
            if "is_gate" in changes:
                merged = merged.model_copy(update={"is_required": True})
            else:
                merged = merged.model_copy(update={"is_gate": False})

        steps = list(self.steps)
        steps[index] = merged
        return sanitize(StepGraph(steps=steps))

    def delete_step(self, identifier: int) -> "StepGraph":
        steps = [s for s in self.steps if s.identifier != identifier]
        if len(steps) == len(self.steps):
            raise KeyError(identifier)
        return sanitize(StepGraph(steps=_renumber(steps)))

    def reorder_steps(self, new_order: Sequence[int]) -> "StepGraph":
        """Reassign ``sequence_order`` following ``new_order`` of identifiers."""
        if sorted(new_order) != sorted(self.identifiers) or len(set(new_order)) != len(
            new_order
        ):
            raise ValueError("new_order must be a permutation of the step identifiers")
        by_id = {s.identifier: s for s in self.steps}
        steps = [by_id[identifier] for identifier in new_order]
        return sanitize(StepGraph(steps=_renumber(steps)))

    def move_step(self, from_index: int, to_index: int) -> "StepGraph":
        """Drag-and-drop helper: move the step at ``from_index`` to ``to_index``."""
        order = self.identifiers
        moved = order.pop(from_index)
        order.insert(to_index, moved)
        return self.reorder_steps(order)

    def remap(self, mapping: Dict[int, int]) -> "StepGraph":
        """Rename identifiers through ``mapping`` and rewrite every dependency."""
        steps = [
            s.model_copy(
                update={
                    "identifier": mapping.get(s.identifier, s.identifier),
                    "depends_on": [mapping.get(d, d) for d in s.depends_on],
                }
            )
            for s in self.steps
        ]
        return sanitize(StepGraph(steps=steps))


def sanitize(graph: StepGraph) -> StepGraph:
    """Restrict every ``depends_on`` to known, strictly earlier, unique steps.

    Idempotent: ``sanitize(sanitize(g)) == sanitize(g)``.
    """
    earlier: set[int] = set()
    steps: List[Step] = []
    for step in graph.steps:
        kept = list(_unique(d for d in step.depends_on if d in earlier))
        if kept != step.depends_on:
            step = step.model_copy(update={"depends_on": kept})
        steps.append(step)
        earlier.add(step.identifier)
    return StepGraph(steps=steps)


def _renumber(steps: List[Step]) -> List[Step]:
    return [
        s if s.sequence_order == i else s.model_copy(update={"sequence_order": i})
        for i, s in enumerate(steps, start=1)
    ]


def _unique(values: Iterable[int]) -> Iterable[int]:
    seen: set[int] = set()
    for value in values:
        if value not in seen:
            seen.add(value)
            yield value


def _default_key(steps: List[Step]) -> str:
    taken = {s.key for s in steps}
    n = len(steps) + 1
    while f"step_{n}" in taken:
        n += 1
    return f"step_{n}"
