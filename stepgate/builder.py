"""Template builder used by the step editor."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from .contracts import ProgressMode, Step, Template, Transition, WorkflowType
from .errors import ValidationError
from .graph import StepGraph, sanitize
from .transitions import generate_sequential
from .validation import ensure_valid, validate_template

logger = logging.getLogger(__name__)


def identifier_mapping(graph: StepGraph, persisted: Template) -> Dict[int, int]:
    """Map every identifier of ``graph`` onto the matching persisted step.

    Steps are matched by ``sequence_order`` and the match is confirmed by
    ``key``. When the keys disagree the step is looked up by key instead.
    """
    by_order = {s.sequence_order: s for s in persisted.steps}
    by_key = {s.key: s for s in persisted.steps}
    mapping: Dict[int, int] = {}
    for step in graph.steps:
        match = by_order.get(step.sequence_order)
        if match is None or match.key != step.key:
            match = by_key.get(step.key)
        if match is None:
            raise ValidationError(
                f'Saved template has no step matching "{step.key}"', step_key=step.key
            )
        mapping[step.identifier] = match.identifier
    return mapping


def reconcile_identifiers(graph: StepGraph, persisted: Template) -> StepGraph:
    """Adopt persisted ids for every step of ``graph`` and rewrite its dependencies."""
    return graph.remap(identifier_mapping(graph, persisted))


def _remap_transitions(
    transitions: Sequence[Transition], mapping: Dict[int, int]
) -> List[Transition]:
    return [
        t.model_copy(
            update={
                "from_step": mapping.get(t.from_step, t.from_step),
                "to_step": mapping.get(t.to_step, t.to_step),
            }
        )
        for t in transitions
    ]


class TemplateBuilder:
    """Stateful editor around an immutable :class:`StepGraph`.

    Each edit replaces the current graph snapshot with the one returned by the
    graph operation, so earlier snapshots stay valid for undo.
    """

    def __init__(self, template: Optional[Template] = None, **fields: Any) -> None:
        template = template or Template(**fields)
        self._template = template.model_copy(update={"steps": []})
        self._graph = sanitize(StepGraph(steps=sorted(template.steps, key=lambda s: s.sequence_order)))
        self._transitions: List[Transition] = list(template.transitions)

    @property
    def graph(self) -> StepGraph:
        return self._graph

    @property
    def steps(self) -> List[Step]:
        return list(self._graph.steps)

    @property
    def transitions(self) -> List[Transition]:
        return list(self._transitions)

    @property
    def template(self) -> Template:
        """Snapshot of the template being edited."""
        return self._template.model_copy(
            update={"steps": self.steps, "transitions": self.transitions}
        )

    def set_details(
        self,
        name: Optional[str] = None,
        description: Optional[str] = None,
        workflow_type: Optional[WorkflowType] = None,
        category: Optional[str] = None,
        progress_mode: Optional[ProgressMode] = None,
    ) -> None:
        changes = {
            "name": name,
            "description": description,
            "workflow_type": workflow_type,
            "category": category,
            "progress_mode": progress_mode,
        }
        self._template = self._template.model_copy(
            update={k: v for k, v in changes.items() if v is not None}
        )

    # ------------------------------------------------------------------
    # Step editing
    def add_step(self, position: Optional[int] = None, **fields: Any) -> Step:
        """Insert a default step and return it."""
        before = set(self._graph.identifiers)
        self._graph = self._graph.add_step(position, **fields)
        return next(s for s in self._graph.steps if s.identifier not in before)

    def update_step(self, identifier: int, partial: Dict[str, Any]) -> Step:
        self._graph = self._graph.update_step(identifier, partial)
        return self._graph.get(identifier)

    def delete_step(self, identifier: int) -> None:
        """Remove a step along with every transition touching it."""
        self._graph = self._graph.delete_step(identifier)
        self._transitions = [
            t
            for t in self._transitions
            if identifier not in (t.from_step, t.to_step)
        ]

    def reorder_steps(self, new_order: Sequence[int]) -> None:
        self._graph = self._graph.reorder_steps(new_order)

    def move_step(self, from_index: int, to_index: int) -> None:
        self._graph = self._graph.move_step(from_index, to_index)

    def generate_transitions(self) -> List[Transition]:
        self._transitions = generate_sequential(self._graph.steps, self._transitions)
        return self.transitions

    # ------------------------------------------------------------------
    # Persistence
    def validate(self) -> Optional[str]:
        return validate_template(self.template)

    async def save(self, store) -> Template:
        """Validate, persist through ``store`` and adopt the persisted ids.

        Raises:
            ValidationError: the template is invalid; nothing is sent.
        """
        template = self.template
        ensure_valid(template)

        if template.id is None:
            persisted = await store.create_template(template)
            logger.info(f"Created template {persisted.id} ({persisted.name!r})")
        else:
            persisted = await store.update_template(template.id, template)
            logger.info(f"Updated template {persisted.id} ({persisted.name!r})")

        mapping = identifier_mapping(self._graph, persisted)
        self._graph = self._graph.remap(mapping)
        self._transitions = _remap_transitions(self._transitions, mapping)
        self._template = persisted.model_copy(update={"steps": []})
        return self.template
