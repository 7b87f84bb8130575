"""Collaborator interfaces for template storage and workflow execution."""

from __future__ import annotations

import abc
from typing import Any, Callable, Dict, List, Optional

from ..contracts import (
    AutomationRequest,
    InstanceChecklist,
    Template,
    TransitionRequest,
    WorkflowInstance,
)


class TemplateStore(metaclass=abc.ABCMeta):
    """Persistence for workflow templates."""

    async def connect(self) -> None:
        """Open any underlying connection (no-op by default)."""
        pass

    async def close(self) -> None:
        """Release any underlying connection (no-op by default)."""
        pass

    @abc.abstractmethod
    async def list_templates(self, filters: Optional[Dict[str, Any]] = None) -> List[Template]:
        """Return templates, optionally filtered by ``workflow_type`` and ``active``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_template(self, template_id: int) -> Optional[Template]:
        raise NotImplementedError

    @abc.abstractmethod
    async def create_template(self, template: Template) -> Template:
        """Persist a new template and return it with server-assigned ids."""
        raise NotImplementedError

    @abc.abstractmethod
    async def update_template(self, template_id: int, template: Template) -> Template:
        raise NotImplementedError

    @abc.abstractmethod
    async def delete_template(self, template_id: int) -> None:
        """Archive the template (``is_active`` becomes false)."""
        raise NotImplementedError

    @abc.abstractmethod
    async def duplicate_template(
        self, template_id: int, new_name: Optional[str] = None
    ) -> Template:
        raise NotImplementedError


class ExecutionStore(metaclass=abc.ABCMeta):
    """Source of truth for running workflow instances."""

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abc.abstractmethod
    async def list_instances(
        self, filters: Optional[Dict[str, Any]] = None
    ) -> List[WorkflowInstance]:
        raise NotImplementedError

    @abc.abstractmethod
    async def get_instance(self, instance_id: int) -> Optional[WorkflowInstance]:
        raise NotImplementedError

    @abc.abstractmethod
    async def create_instance(self, data: Dict[str, Any]) -> WorkflowInstance:
        raise NotImplementedError

    @abc.abstractmethod
    async def start_workflow(self, instance_id: int) -> Dict[str, Any]:
        raise NotImplementedError

    @abc.abstractmethod
    async def get_instance_checklist(self, instance_id: int) -> InstanceChecklist:
        raise NotImplementedError

    @abc.abstractmethod
    async def transition_step(
        self, instance_id: int, step_id: int, request: TransitionRequest
    ) -> Dict[str, Any]:
        raise NotImplementedError

    @abc.abstractmethod
    async def run_step_automation(
        self, instance_id: int, step_id: int, request: AutomationRequest
    ) -> Dict[str, Any]:
        raise NotImplementedError

    @abc.abstractmethod
    async def run_external_verification(
        self, instance_id: int, step_id: int, identifiers: Dict[str, Any]
    ) -> Dict[str, Any]:
        raise NotImplementedError


def assign_persisted_ids(payload: Dict[str, Any], allocate: Callable[[], int]) -> Dict[str, Any]:
    """Give every unsaved step in a template payload a persisted id.

    Steps whose ``id`` is missing or not positive get a fresh id from
    ``allocate``; ``depends_on`` and transition endpoints are rewritten to match.
    """
    mapping: Dict[int, int] = {}
    steps = []
    for raw in payload.get("steps") or []:
        step = dict(raw)
        old = step.get("id")
        if old is None or int(old) <= 0:
            new = allocate()
            if old is not None:
                mapping[int(old)] = new
            step["id"] = new
        steps.append(step)
    for step in steps:
        step["depends_on"] = [mapping.get(int(d), int(d)) for d in step.get("depends_on") or []]
    transitions = []
    for raw in payload.get("transitions") or []:
        transition = dict(raw)
        transition["from_step_id"] = mapping.get(
            int(transition["from_step_id"]), int(transition["from_step_id"])
        )
        transition["to_step_id"] = mapping.get(
            int(transition["to_step_id"]), int(transition["to_step_id"])
        )
        transitions.append(transition)
    return {**payload, "steps": steps, "transitions": transitions}


def reset_step_ids(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Turn every step id into a local (negative) id so the copy gets new ones."""
    mapping = {
        int(step["id"]): -(index + 1)
        for index, step in enumerate(payload.get("steps") or [])
        if step.get("id") is not None
    }
    steps = [
        {
            **step,
            "id": mapping.get(int(step["id"])) if step.get("id") is not None else None,
            "depends_on": [mapping.get(int(d), int(d)) for d in step.get("depends_on") or []],
        }
        for step in payload.get("steps") or []
    ]
    transitions = [
        {
            **t,
            "from_step_id": mapping.get(int(t["from_step_id"]), int(t["from_step_id"])),
            "to_step_id": mapping.get(int(t["to_step_id"]), int(t["to_step_id"])),
        }
        for t in payload.get("transitions") or []
    ]
    return {**payload, "steps": steps, "transitions": transitions}


def matches_filters(record: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    for key, value in (filters or {}).items():
        if value is None:
            continue
        if str(record.get(key)) != str(getattr(value, "value", value)):
            return False
    return True


def template_matches(template: Template, filters: Optional[Dict[str, Any]]) -> bool:
    filters = filters or {}
    workflow_type = filters.get("workflow_type") or filters.get("type")
    if workflow_type and template.workflow_type.value != getattr(workflow_type, "value", workflow_type):
        return False
    active = filters.get("active")
    if active is not None and template.is_active != bool(active):
        return False
    category = filters.get("category")
    if category and template.category != category:
        return False
    return True
