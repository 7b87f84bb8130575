"""In-memory template and execution stores."""

from __future__ import annotations

import itertools
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..checklist import derive_checklist, progress_percentage
from ..contracts import (
    TERMINAL_STATUSES,
    AutomationRequest,
    Blocker,
    ExternalLinkage,
    ExternalVerification,
    HistoryEntry,
    InstanceChecklist,
    ManualStep,
    ProgressMode,
    StepAction,
    StepState,
    StepStatus,
    Template,
    TransitionRequest,
    WorkflowInstance,
)
from ..errors import ConflictCode, ConflictError, ServerError
from ..payload import TemplateDeserializer, TemplateSerializer
from .base import (
    ExecutionStore,
    TemplateStore,
    assign_persisted_ids,
    matches_filters,
    reset_step_ids,
    template_matches,
)

ExistenceCheck = Callable[[str, Dict[str, Any]], Awaitable[bool]]


async def _always_exists(handler: str, identifiers: Dict[str, Any]) -> bool:
    return True


class InMemoryTemplateStore(TemplateStore):
    """Keep templates in local memory.

    Templates are held in their wire payload form so that every read goes
    through the same decoding as a remote store. Data is not persisted across
    process restarts.
    """

    def __init__(self) -> None:
        self._templates: Dict[int, Dict[str, Any]] = {}
        self._template_ids = itertools.count(1)
        self._step_ids = itertools.count(1)

    def _allocate_step_id(self) -> int:
        return next(self._step_ids)

    # ------------------------------------------------------------------
    async def list_templates(self, filters: Optional[Dict[str, Any]] = None) -> List[Template]:
        templates = [TemplateDeserializer.template(p) for p in self._templates.values()]
        return [t for t in templates if template_matches(t, filters)]

    async def get_template(self, template_id: int) -> Optional[Template]:
        payload = self._templates.get(template_id)
        return TemplateDeserializer.template(payload) if payload else None

    async def create_template(self, template: Template) -> Template:
        template_id = next(self._template_ids)
        payload = TemplateSerializer.template(template)
        payload["id"] = template_id
        self._templates[template_id] = assign_persisted_ids(payload, self._allocate_step_id)
        return await self.get_template(template_id)

    async def update_template(self, template_id: int, template: Template) -> Template:
        if template_id not in self._templates:
            raise ServerError(404, f"Template {template_id} not found")
        payload = TemplateSerializer.template(template)
        payload["id"] = template_id
        self._templates[template_id] = assign_persisted_ids(payload, self._allocate_step_id)
        return await self.get_template(template_id)

    async def delete_template(self, template_id: int) -> None:
        payload = self._templates.get(template_id)
        if payload is None:
            raise ServerError(404, f"Template {template_id} not found")
        payload["is_active"] = 0

    async def duplicate_template(
        self, template_id: int, new_name: Optional[str] = None
    ) -> Template:
        source = self._templates.get(template_id)
        if source is None:
            raise ServerError(404, f"Template {template_id} not found")
        copy_id = next(self._template_ids)
        payload = reset_step_ids(source)
        payload["id"] = copy_id
        payload["name"] = new_name or f"{source['name']} (Copy)"
        self._templates[copy_id] = assign_persisted_ids(payload, self._allocate_step_id)
        return await self.get_template(copy_id)


class InMemoryExecutionStore(ExecutionStore):
    """Run workflow instances in local memory.

    Gating for ``strict`` and ``loose`` templates follows the same rules as the
    checklist view. ``legacy`` templates advance one step at a time in
    sequence order. ``existence_check`` decides whether an external
    verification finds its record.
    """

    def __init__(
        self,
        template_store: Optional[TemplateStore] = None,
        existence_check: Optional[ExistenceCheck] = None,
    ) -> None:
        self._template_store = template_store or InMemoryTemplateStore()
        self._existence_check = existence_check or _always_exists
        self._instances: Dict[int, WorkflowInstance] = {}
        self._checklists: Dict[int, InstanceChecklist] = {}
        self._instance_ids = itertools.count(1)

    # ------------------------------------------------------------------
    async def list_instances(
        self, filters: Optional[Dict[str, Any]] = None
    ) -> List[WorkflowInstance]:
        return [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if matches_filters(i.model_dump(mode="json"), filters)
        ]

    async def get_instance(self, instance_id: int) -> Optional[WorkflowInstance]:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def create_instance(self, data: Dict[str, Any]) -> WorkflowInstance:
        template_id = int(data["template_id"])
        template = await self._template_store.get_template(template_id)
        if template is None:
            raise ServerError(404, f"Template {template_id} not found")
        instance_id = next(self._instance_ids)
        instance = WorkflowInstance(
            id=instance_id,
            template_id=template_id,
            template_name=template.name,
            entity_type=data.get("entity_type") or template.workflow_type,
            entity_id=data.get("entity_id"),
            submission_id=data.get("submission_id"),
            priority=data.get("priority") or "normal",
            due_date=data.get("due_date")
            or (date.today() + timedelta(days=7)).isoformat(),
        )
        self._instances[instance_id] = instance
        self._checklists[instance_id] = InstanceChecklist(
            instance_id=instance_id,
            progress_mode=template.progress_mode or ProgressMode.STRICT,
            steps=template.steps,
            states=[StepState(step_id=s.identifier) for s in template.steps],
        )
        return instance.model_copy(deep=True)

    async def start_workflow(self, instance_id: int) -> Dict[str, Any]:
        instance = self._instance(instance_id)
        if instance.status == "not_started":
            instance.status = "in_progress"
        self._settle(instance_id)
        return {"success": True, "instance_id": instance_id, "status": instance.status}

    async def get_instance_checklist(self, instance_id: int) -> InstanceChecklist:
        self._instance(instance_id)
        return self._checklists[instance_id].model_copy(deep=True)

    async def transition_step(
        self, instance_id: int, step_id: int, request: TransitionRequest
    ) -> Dict[str, Any]:
        instance = self._started(instance_id)
        step, state = self._step(instance_id, step_id)
        action = request.action

        if step.is_automated or step.automation_handler:
            raise ConflictError(
                ConflictCode.AUTOMATED_STEP_USE_AUTOMATION_ENDPOINT,
                f'Step "{step.name}" is automated; use the automation endpoint',
            )

        if action is StepAction.COMPLETE:
            if state.status is StepStatus.COMPLETED:
                raise ConflictError(ConflictCode.STEP_ALREADY_COMPLETED, "Step already completed")
            self._ensure_open(instance_id, state)
            status = StepStatus.COMPLETED
        elif action is StepAction.START:
            if state.status is StepStatus.BLOCKED and state.reason:
                self._check_release(instance_id, state)
            elif state.status is not StepStatus.IN_PROGRESS:
                self._ensure_open(instance_id, state)
            status = StepStatus.IN_PROGRESS
        elif action is StepAction.BLOCK:
            if state.status in TERMINAL_STATUSES:
                raise ServerError(409, f"Step is {state.status.value}")
            status = StepStatus.BLOCKED
        elif action is StepAction.SKIP:
            if step.is_required:
                raise ServerError(422, "Required steps cannot be skipped")
            if state.status in TERMINAL_STATUSES:
                raise ServerError(409, f"Step is {state.status.value}")
            status = StepStatus.SKIPPED
        elif action is StepAction.REVERT:
            if state.status is not StepStatus.COMPLETED:
                raise ServerError(409, "Only completed steps can be reverted")
            status = StepStatus.READY
        elif action is StepAction.ASSIGN:
            if not request.assignee:
                raise ServerError(422, "assignee is required")
            status = state.status
        else:
            raise ServerError(400, f"Unsupported action {action.value}")

        if action is StepAction.BLOCK:
            reason = request.reason or "Blocked"
        elif action is StepAction.ASSIGN:
            reason = state.reason
        else:
            reason = None
        self._record(
            instance,
            state.model_copy(
                update={
                    "status": status,
                    "reason": reason,
                    "assignee": request.assignee or state.assignee,
                    "blockers": [],
                }
            ),
            action,
            request.reason,
        )
        return {"success": True, "step_id": step_id, "status": status.value}

    async def run_step_automation(
        self, instance_id: int, step_id: int, request: AutomationRequest
    ) -> Dict[str, Any]:
        instance = self._started(instance_id)
        step, state = self._step(instance_id, step_id)
        if isinstance(step.automation, ManualStep):
            raise ServerError(422, f'Step "{step.name}" has no automation handler')
        if state.status is StepStatus.COMPLETED:
            raise ConflictError(ConflictCode.STEP_ALREADY_COMPLETED, "Step already completed")
        self._ensure_open(instance_id, state)
        self._record(
            instance,
            state.model_copy(update={"status": StepStatus.COMPLETED, "reason": None}),
            StepAction.AUTOMATION,
            request.intent,
        )
        return {
            "success": True,
            "step_id": step_id,
            "handler": step.automation_handler,
            "intent": request.intent,
        }

    async def run_external_verification(
        self, instance_id: int, step_id: int, identifiers: Dict[str, Any]
    ) -> Dict[str, Any]:
        instance = self._started(instance_id)
        step, state = self._step(instance_id, step_id)
        automation = step.automation
        if not isinstance(automation, ExternalVerification):
            raise ServerError(422, f'Step "{step.name}" is not an external verification step')
        missing = automation.missing_identifiers(identifiers)
        if missing:
            raise ConflictError(
                ConflictCode.MISSING_IDENTIFIERS,
                f"Missing required identifiers: {', '.join(missing)}",
                details={"missing": missing},
            )
        if state.status is StepStatus.COMPLETED:
            raise ConflictError(ConflictCode.STEP_ALREADY_COMPLETED, "Step already completed")
        self._ensure_open(instance_id, state)
        if not await self._existence_check(automation.handler, identifiers):
            raise ServerError(404, "External record not found")

        linkage = ExternalLinkage(
            external_id=str(identifiers[automation.required_identifiers[0]])
            if automation.required_identifiers
            else None,
            verified_by=automation.handler,
            verified_at=datetime.now(timezone.utc),
        )
        self._record(
            instance,
            state.model_copy(
                update={"status": StepStatus.COMPLETED, "reason": None, "linkage": linkage}
            ),
            StepAction.VERIFY,
            None,
        )
        return {"success": True, "step_id": step_id, "linkage": linkage.model_dump(mode="json")}

    # ------------------------------------------------------------------
    def _instance(self, instance_id: int) -> WorkflowInstance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise ServerError(404, f"Workflow instance {instance_id} not found")
        return instance

    def _started(self, instance_id: int) -> WorkflowInstance:
        instance = self._instance(instance_id)
        if instance.status == "not_started":
            raise ServerError(409, "Workflow has not been started")
        return instance

    def _step(self, instance_id: int, step_id: int):
        checklist = self._checklists[instance_id]
        step = next((s for s in checklist.steps if s.identifier == step_id), None)
        if step is None:
            raise ServerError(404, f"Step {step_id} not found in instance {instance_id}")
        return step, checklist.state_map()[step_id]

    def _ensure_open(self, instance_id: int, state: StepState) -> None:
        if state.status is StepStatus.BLOCKED:
            raise ConflictError(
                ConflictCode.WORKFLOW_GATED,
                "Step is waiting on earlier steps",
                blockers=state.blockers or [Blocker(message=state.reason or "Step is on hold")],
            )
        if state.status not in (StepStatus.READY, StepStatus.IN_PROGRESS):
            raise ServerError(409, f"Step is {state.status.value}")

    def _record(
        self,
        instance: WorkflowInstance,
        state: StepState,
        action: StepAction,
        reason: Optional[str],
    ) -> None:
        checklist = self._checklists[instance.id]
        checklist.states = [
            state if s.step_id == state.step_id else s for s in checklist.states
        ]
        instance.history.append(
            HistoryEntry(step_id=state.step_id, action=action, status=state.status, reason=reason)
        )
        self._settle(instance.id)

    def _settle(self, instance_id: int) -> None:
        """Recompute ready/blocked statuses after a change."""
        instance = self._instances[instance_id]
        checklist = self._checklists[instance_id]
        if instance.status == "not_started":
            return
        checklist.states = self._settled_states(checklist)

        items = derive_checklist(checklist.steps, checklist.state_map(), ProgressMode.LEGACY)
        instance.progress_percentage = progress_percentage(items)
        if items and all(i.status in TERMINAL_STATUSES for i in items):
            instance.status = "completed"
        elif instance.status == "completed":
            instance.status = "in_progress"

    def _check_release(self, instance_id: int, state: StepState) -> None:
        """Refuse to lift a hold from a step that would still wait on earlier steps."""
        checklist = self._checklists[instance_id]
        released = state.model_copy(
            update={"status": StepStatus.NOT_STARTED, "reason": None, "blockers": []}
        )
        candidate = checklist.model_copy(
            update={
                "states": [
                    released if s.step_id == state.step_id else s for s in checklist.states
                ]
            }
        )
        settled = {s.step_id: s for s in self._settled_states(candidate)}[state.step_id]
        if settled.status is StepStatus.BLOCKED:
            raise ConflictError(
                ConflictCode.WORKFLOW_GATED,
                "Step is waiting on earlier steps",
                blockers=settled.blockers,
            )

    def _settled_states(self, checklist: InstanceChecklist) -> List[StepState]:
        names = {s.identifier: s.name or s.key for s in checklist.steps}

        if checklist.progress_mode is ProgressMode.LEGACY:
            states = self._settle_sequential(checklist)
        else:
            items = {
                i.step_id: i
                for i in derive_checklist(
                    checklist.steps, checklist.state_map(), checklist.progress_mode
                )
            }
            states = []
            for state in checklist.states:
                item = items[state.step_id]
                if state.status in (StepStatus.NOT_STARTED, StepStatus.READY, StepStatus.BLOCKED):
                    state = state.model_copy(
                        update={
                            "status": item.status,
                            "blockers": [
                                Blocker(message=names[d], step_id=d) for d in item.blocked_by
                            ],
                        }
                    )
                states.append(state)
        return states

    @staticmethod
    def _settle_sequential(checklist: InstanceChecklist) -> List[StepState]:
        by_id = checklist.state_map()
        ordered = sorted(checklist.steps, key=lambda s: s.sequence_order)
        current = next(
            (s for s in ordered if by_id[s.identifier].status not in TERMINAL_STATUSES),
            None,
        )
        states = []
        for step in ordered:
            state = by_id[step.identifier]
            if state.status in (StepStatus.NOT_STARTED, StepStatus.READY, StepStatus.BLOCKED) and not (
                state.status is StepStatus.BLOCKED and state.reason
            ):
                if current is not None and step.identifier == current.identifier:
                    state = state.model_copy(update={"status": StepStatus.READY, "blockers": []})
                else:
                    state = state.model_copy(
                        update={
                            "status": StepStatus.BLOCKED,
                            "blockers": [
                                Blocker(
                                    message=current.name or current.key,
                                    step_id=current.identifier,
                                )
                            ]
                            if current is not None
                            else [],
                        }
                    )
            states.append(state)
        return states
