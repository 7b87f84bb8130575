"""Wire encoding of templates and checklists.

Boolean flags travel as ``0``/``1`` and ``depends_on`` as a numeric identifier
array, matching what the workflow admin API stores.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from .contracts import (
    Blocker,
    ExternalLinkage,
    InstanceChecklist,
    ProgressMode,
    Step,
    StepState,
    StepStatus,
    Template,
    Transition,
    new_local_id,
)


def _flag(value: Any, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _id_list(value: Any) -> List[int]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        value = json.loads(value)
    return [int(v) for v in value]


def _json_field(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class TemplateSerializer:
    """Serialize templates into the admin API payload shape."""

    @staticmethod
    def step(step: Step) -> Dict[str, Any]:
        return {
            "id": step.identifier,
            "step_key": step.key,
            "step_name": step.name,
            "step_description": step.description,
            "step_type": step.type.value,
            "sequence_order": step.sequence_order,
            "is_required": int(step.is_required),
            "is_gate": int(step.is_gate),
            "is_automated": int(step.is_automated),
            "automation_handler": step.automation_handler,
            "depends_on": [int(d) for d in step.depends_on],
            "assigned_role": step.assigned_role,
            "estimated_duration_minutes": step.estimated_duration,
            "instructions": step.instructions,
            "due_date_offset": step.due_date_offset,
            "metadata": step.metadata,
            "form_fields": step.form_fields,
        }

    @staticmethod
    def transition(transition: Transition) -> Dict[str, Any]:
        return {
            "from_step_id": transition.from_step,
            "to_step_id": transition.to_step,
            "condition_id": transition.condition,
            "transition_type": transition.type,
        }

    @classmethod
    def template(cls, template: Template) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": template.name,
            "description": template.description,
            "workflow_type": template.workflow_type.value,
            "category": template.category,
            "is_active": int(template.is_active),
            "progress_mode": template.progress_mode.value if template.progress_mode else None,
            "steps": [cls.step(s) for s in template.steps],
            "conditions": template.conditions,
            "transitions": [cls.transition(t) for t in template.transitions],
        }
        if template.id is not None:
            data["id"] = template.id
        return data


class TemplateDeserializer:
    """Rebuild templates and checklists from admin API payloads."""

    @staticmethod
    def progress_mode(value: Any) -> Optional[ProgressMode]:
        try:
            return ProgressMode(value) if value else None
        except ValueError:
            return None

    @staticmethod
    def step(data: Dict[str, Any], position: int = 1) -> Step:
        raw_id = data.get("id")
        return Step(
            identifier=int(raw_id) if raw_id not in (None, "") else new_local_id(),
            key=data.get("step_key") or data.get("key") or f"step_{position}",
            name=data.get("step_name") or data.get("name") or "",
            description=data.get("step_description", data.get("description")),
            type=data.get("step_type") or data.get("type") or "action",
            sequence_order=int(
                data.get("sequence_order") or data.get("step_order") or position
            ),
            is_required=_flag(data.get("is_required"), default=True),
            is_gate=_flag(data.get("is_gate")),
            is_automated=_flag(data.get("is_automated")),
            automation_handler=data.get("automation_handler") or None,
            depends_on=_id_list(data.get("depends_on")),
            assigned_role=data.get("assigned_role"),
            estimated_duration=data.get(
                "estimated_duration_minutes", data.get("estimated_duration")
            ),
            instructions=data.get("instructions"),
            due_date_offset=data.get("due_date_offset"),
            metadata=_json_field(data.get("metadata"), {}),
            form_fields=_json_field(data.get("form_fields"), []),
        )

    @staticmethod
    def transition(data: Dict[str, Any]) -> Transition:
        return Transition(
            from_step=int(data.get("from_step_id", data.get("from_step"))),
            to_step=int(data.get("to_step_id", data.get("to_step"))),
            condition=data.get("condition_id", data.get("condition")),
            type=data.get("transition_type") or data.get("type") or "sequential",
        )

    @classmethod
    def template(cls, data: Dict[str, Any]) -> Template:
        if "template" in data and isinstance(data["template"], dict):
            data = data["template"]
        raw_steps = data.get("steps") or []
        steps = [cls.step(s, position) for position, s in enumerate(raw_steps, start=1)]
        steps.sort(key=lambda s: s.sequence_order)
        return Template(
            id=data.get("id"),
            name=data.get("name") or "",
            description=data.get("description"),
            workflow_type=data.get("workflow_type") or data.get("entity_type") or "course",
            category=data.get("category"),
            is_active=_flag(data.get("is_active"), default=True),
            progress_mode=cls.progress_mode(data.get("progress_mode")),
            steps=steps,
            conditions=data.get("conditions") or [],
            transitions=[cls.transition(t) for t in data.get("transitions") or []],
        )

    @staticmethod
    def blockers(raw: Any) -> List[Blocker]:
        blockers: List[Blocker] = []
        for item in raw or []:
            if isinstance(item, str):
                blockers.append(Blocker(message=item))
            else:
                blockers.append(
                    Blocker(
                        message=item.get("message") or item.get("step_name") or "",
                        step_id=item.get("step_id"),
                    )
                )
        return blockers

    @classmethod
    def step_state(cls, data: Dict[str, Any], step_id: int) -> StepState:
        linkage = data.get("linkage")
        if linkage is None and data.get("external_id"):
            linkage = {
                "external_id": data.get("external_id"),
                "verified_by": data.get("verified_by"),
                "verified_at": data.get("verified_at"),
            }
        return StepState(
            step_id=step_id,
            status=StepStatus(data.get("status") or StepStatus.NOT_STARTED),
            reason=data.get("reason") or data.get("status_reason"),
            assignee=data.get("assignee") or data.get("assigned_to"),
            blockers=cls.blockers(data.get("blockers")),
            linkage=ExternalLinkage.model_validate(linkage) if linkage else None,
        )

    @classmethod
    def checklist(cls, data: Dict[str, Any], instance_id: int) -> InstanceChecklist:
        steps: List[Step] = []
        states: List[StepState] = []
        for position, raw in enumerate(data.get("steps") or [], start=1):
            step = cls.step(raw, position)
            steps.append(step)
            states.append(cls.step_state(raw, step.identifier))
        steps.sort(key=lambda s: s.sequence_order)
        return InstanceChecklist(
            instance_id=int(data.get("instance_id") or instance_id),
            progress_mode=cls.progress_mode(data.get("progress_mode")) or ProgressMode.LEGACY,
            steps=steps,
            states=states,
        )


class ChecklistSerializer:
    """Encode an :class:`InstanceChecklist` the way the collaborator reports it."""

    @staticmethod
    def checklist(checklist: InstanceChecklist) -> Dict[str, Any]:
        states = checklist.state_map()
        steps = []
        for step in checklist.steps:
            entry = TemplateSerializer.step(step)
            state = states.get(step.identifier) or StepState(step_id=step.identifier)
            entry["status"] = state.status.value
            entry["reason"] = state.reason
            entry["assignee"] = state.assignee
            entry["blockers"] = [b.model_dump() for b in state.blockers]
            entry["linkage"] = state.linkage.model_dump(mode="json") if state.linkage else None
            steps.append(entry)
        return {
            "instance_id": checklist.instance_id,
            "progress_mode": checklist.progress_mode.value,
            "steps": steps,
        }
