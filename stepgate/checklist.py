"""Execution-time checklist derivation and step action dispatch."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Collection,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from pydantic import BaseModel, Field

from .contracts import (
    TERMINAL_STATUSES,
    AutomationInfo,
    AutomationRequest,
    Blocker,
    Checklist,
    ChecklistItem,
    ExternalLinkage,
    ExternalVerification,
    InstanceChecklist,
    ManualStep,
    ProgressMode,
    Step,
    StepAction,
    StepState,
    StepStatus,
    TransitionRequest,
)
from .errors import (
    ConflictCode,
    ConflictError,
    InvalidTransitionError,
    NetworkError,
    ServerError,
)

if TYPE_CHECKING:
    from .stores import ExecutionStore

logger = logging.getLogger(__name__)

ACTIONABLE_STATUSES = frozenset({StepStatus.READY, StepStatus.IN_PROGRESS})
PENDING_STATUSES = frozenset(
    {StepStatus.NOT_STARTED, StepStatus.READY, StepStatus.BLOCKED}
)


def _satisfied_statuses(mode: ProgressMode) -> frozenset:
    if mode is ProgressMode.LOOSE:
        return frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})
    return frozenset({StepStatus.COMPLETED})


def derive_checklist(
    steps: Sequence[Step],
    states: Mapping[int, StepState],
    progress_mode: ProgressMode,
    busy: Collection[int] = (),
) -> List[ChecklistItem]:
    """Derive the per-step render model for one workflow instance.

    ``strict`` blocks a step on any unmet dependency and on every incomplete
    gate earlier in sequence order. ``loose`` blocks only on unmet direct
    dependencies, which may also be satisfied by skipping. ``legacy`` reports
    the collaborator's statuses unchanged.

    Steps listed in ``busy`` have an action in flight and cannot be acted on.
    """
    ordered = sorted(steps, key=lambda s: s.sequence_order)
    by_id = {s.identifier: s for s in ordered}
    satisfied = _satisfied_statuses(progress_mode)

    def reported(step_id: int) -> StepStatus:
        state = states.get(step_id)
        return state.status if state else StepStatus.NOT_STARTED

    items: List[ChecklistItem] = []
    for step in ordered:
        state = states.get(step.identifier) or StepState(step_id=step.identifier)
        blocked_by: List[int] = []

        if progress_mode is ProgressMode.LEGACY:
            status = state.status
            blocked_by = [b.step_id for b in state.blockers if b.step_id is not None]
        elif state.status not in PENDING_STATUSES:
            status = state.status
        elif state.status is StepStatus.BLOCKED and state.reason:
            # held manually until the step is started again
            status = StepStatus.BLOCKED
        else:
            unmet = {
                dep
                for dep in step.depends_on
                if dep in by_id and reported(dep) not in satisfied
            }
            if progress_mode is ProgressMode.STRICT:
                unmet.update(
                    gate.identifier
                    for gate in ordered
                    if gate.is_gate
                    and gate.sequence_order < step.sequence_order
                    and reported(gate.identifier) is not StepStatus.COMPLETED
                )
            blocked_by = sorted(unmet, key=lambda i: by_id[i].sequence_order)
            status = StepStatus.BLOCKED if blocked_by else StepStatus.READY

        automation = step.automation
        automation_info = None
        if not isinstance(automation, ManualStep):
            automation_info = AutomationInfo(automation=automation, linkage=state.linkage)

        items.append(
            ChecklistItem(
                step_id=step.identifier,
                key=step.key,
                name=step.name,
                sequence_order=step.sequence_order,
                status=status,
                is_gate=step.is_gate,
                is_required=step.is_required,
                is_automated=step.is_automated,
                blocked_by=blocked_by,
                can_act=status in ACTIONABLE_STATUSES and step.identifier not in busy,
                reason=state.reason,
                assignee=state.assignee,
                automation_info=automation_info,
            )
        )
    return items


def progress_percentage(items: Sequence[ChecklistItem]) -> int:
    if not items:
        return 0
    # skipped steps count toward progress
    done = sum(1 for i in items if i.status in (StepStatus.COMPLETED, StepStatus.SKIPPED))
    return round(100 * done / len(items))


class ActionOutcome(str, Enum):
    DONE = "done"
    SUPPRESSED = "suppressed"
    ALREADY_COMPLETED = "already_completed"


class ActionResult(BaseModel):
    """Result of dispatching one step action."""

    instance_id: int
    step_id: Optional[int] = None
    action: str
    outcome: ActionOutcome = ActionOutcome.DONE
    message: Optional[str] = None
    response: Dict[str, Any] = Field(default_factory=dict)
    checklist: Optional[Checklist] = None


ActionKey = Tuple[int, Optional[int], str]


class ChecklistEngine:
    """Checklist view over an execution store plus the step action dispatchers.

    After any successful mutating action the instance checklist is fetched
    again from the store; local state is never patched optimistically.
    """

    def __init__(self, store: "ExecutionStore") -> None:
        self._store = store
        self._raw: Dict[int, InstanceChecklist] = {}
        self._pending: Set[ActionKey] = set()
        self._blockers: Dict[Tuple[int, int], List[str]] = {}
        self._linkage: Dict[Tuple[int, int], ExternalLinkage] = {}

    # ------------------------------------------------------------------
    # Checklist view

    async def load(self, instance_id: int) -> Checklist:
        """Fetch the instance checklist from the store and derive its view."""
        self._raw[instance_id] = await self._store.get_instance_checklist(instance_id)
        return self.checklist(instance_id)

    def checklist(self, instance_id: int) -> Checklist:
        raw = self._raw.get(instance_id)
        if raw is None:
            raise KeyError(f"Checklist for instance {instance_id} has not been loaded")
        states = raw.state_map()
        for (inst, step_id), linkage in self._linkage.items():
            state = states.get(step_id)
            if inst == instance_id and state is not None and state.linkage is None:
                states[step_id] = state.model_copy(update={"linkage": linkage})
        busy = {step for inst, step, _ in self._pending if inst == instance_id}
        items = derive_checklist(raw.steps, states, raw.progress_mode, busy=busy)
        return Checklist(
            instance_id=instance_id,
            progress_mode=raw.progress_mode,
            items=items,
            progress=progress_percentage(items),
        )

    def is_pending(self, instance_id: int, step_id: Optional[int], action: str) -> bool:
        return (instance_id, step_id, _action_name(action)) in self._pending

    def blockers_for(self, instance_id: int, step_id: int) -> List[str]:
        return list(self._blockers.get((instance_id, step_id), []))

    def linkage_for(self, instance_id: int, step_id: int) -> Optional[ExternalLinkage]:
        return self._linkage.get((instance_id, step_id))

    # ------------------------------------------------------------------
    # Step actions

    async def complete(
        self,
        instance_id: int,
        step_id: int,
        reason: Optional[str] = None,
        step_data: Optional[Dict[str, Any]] = None,
    ) -> ActionResult:
        """Mark a manual step completed."""
        key = (instance_id, step_id, StepAction.COMPLETE.value)
        if key in self._pending:
            return self._suppressed(key)

        step, item, mode = self._local(instance_id, step_id)
        if item is not None and item.status is StepStatus.COMPLETED:
            logger.info(f"Step {step_id} of instance {instance_id} is already completed")
            return ActionResult(
                instance_id=instance_id,
                step_id=step_id,
                action=StepAction.COMPLETE.value,
                outcome=ActionOutcome.ALREADY_COMPLETED,
                message="Step is already completed",
            )
        if step is not None and (step.is_automated or step.automation_handler):
            raise ConflictError(
                ConflictCode.AUTOMATED_STEP_REQUIRES_AUTOMATION,
                f'Step "{step.name or step.key}" is automated; run its automation instead',
            )
        self._ensure_actionable(instance_id, step_id, item, mode)

        request = TransitionRequest(
            action=StepAction.COMPLETE, reason=reason, step_data=step_data
        )
        return await self._dispatch(
            key, lambda: self._store.transition_step(instance_id, step_id, request)
        )

    async def start(self, instance_id: int, step_id: int, reason: Optional[str] = None) -> ActionResult:
        """Start a step. Starting a manually held step releases the hold."""
        step, item, mode = self._manual_step(instance_id, step_id)
        # the store checks whether a released hold still waits on earlier steps
        if item is not None and item.status is not StepStatus.IN_PROGRESS and not _is_held(item):
            self._ensure_actionable(instance_id, step_id, item, mode)
        return await self._transition(instance_id, step_id, StepAction.START, reason=reason)

    async def block(self, instance_id: int, step_id: int, reason: Optional[str] = None) -> ActionResult:
        step, item, mode = self._manual_step(instance_id, step_id)
        if item is not None and item.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"Cannot block a step that is {item.status.value}")
        return await self._transition(instance_id, step_id, StepAction.BLOCK, reason=reason)

    async def skip(self, instance_id: int, step_id: int, reason: Optional[str] = None) -> ActionResult:
        step, item, mode = self._manual_step(instance_id, step_id)
        if step is not None and step.is_required:
            raise InvalidTransitionError(f'Required step "{step.name or step.key}" cannot be skipped')
        if item is not None and item.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"Cannot skip a step that is {item.status.value}")
        return await self._transition(instance_id, step_id, StepAction.SKIP, reason=reason)

    async def revert(self, instance_id: int, step_id: int, reason: Optional[str] = None) -> ActionResult:
        """Move a completed step back to ready; downstream steps are re-derived."""
        step, item, mode = self._manual_step(instance_id, step_id)
        if item is not None and item.status is not StepStatus.COMPLETED:
            raise InvalidTransitionError(f"Only completed steps can be reverted, not {item.status.value}")
        return await self._transition(instance_id, step_id, StepAction.REVERT, reason=reason)

    async def assign(
        self,
        instance_id: int,
        step_id: int,
        assignee: Optional[str],
        reason: Optional[str] = None,
    ) -> ActionResult:
        if not assignee:
            raise InvalidTransitionError("An assignee is required")
        self._manual_step(instance_id, step_id)
        return await self._transition(
            instance_id, step_id, StepAction.ASSIGN, reason=reason, assignee=assignee
        )

    async def run_automation(
        self,
        instance_id: int,
        step_id: int,
        payload: Optional[Dict[str, Any]] = None,
        intent: str = "run",
    ) -> ActionResult:
        """Ask the collaborator to run the step's automation handler."""
        key = (instance_id, step_id, StepAction.AUTOMATION.value)
        if key in self._pending:
            return self._suppressed(key)

        step, item, mode = self._local(instance_id, step_id)
        if step is not None:
            automation = step.automation
            if isinstance(automation, ManualStep):
                raise InvalidTransitionError(f'Step "{step.name or step.key}" has no automation handler')
            if isinstance(automation, ExternalVerification):
                raise InvalidTransitionError(
                    f'Step "{step.name or step.key}" is verified externally; use run_external_verification'
                )
        self._ensure_actionable(instance_id, step_id, item, mode)

        request = AutomationRequest(intent=intent, payload=payload or {})
        return await self._dispatch(
            key, lambda: self._store.run_step_automation(instance_id, step_id, request)
        )

    async def run_external_verification(
        self, instance_id: int, step_id: int, identifiers: Dict[str, Any]
    ) -> ActionResult:
        """Verify the external record for a gate step and store the returned linkage."""
        key = (instance_id, step_id, StepAction.VERIFY.value)
        if key in self._pending:
            return self._suppressed(key)

        step, item, mode = self._local(instance_id, step_id)
        if step is not None:
            automation = step.automation
            if not isinstance(automation, ExternalVerification):
                raise InvalidTransitionError(
                    f'Step "{step.name or step.key}" is not an external verification step'
                )
            missing = automation.missing_identifiers(identifiers)
            if missing:
                raise ConflictError(
                    ConflictCode.MISSING_IDENTIFIERS,
                    f"Missing required identifiers: {', '.join(missing)}",
                    details={"missing": missing},
                )
        self._ensure_actionable(instance_id, step_id, item, mode)

        result = await self._dispatch(
            key,
            lambda: self._store.run_external_verification(instance_id, step_id, identifiers),
        )
        if result.outcome is ActionOutcome.DONE:
            linkage = _linkage_from_response(result.response)
            self._linkage[(instance_id, step_id)] = linkage
            if result.checklist is not None:
                result.checklist = self.checklist(instance_id)
        return result

    async def start_workflow(self, instance_id: int) -> ActionResult:
        key = (instance_id, None, "start_workflow")
        if key in self._pending:
            return self._suppressed(key)
        return await self._dispatch(key, lambda: self._store.start_workflow(instance_id))

    # ------------------------------------------------------------------
    # Internals

    async def _transition(
        self,
        instance_id: int,
        step_id: int,
        action: StepAction,
        reason: Optional[str] = None,
        assignee: Optional[str] = None,
    ) -> ActionResult:
        key = (instance_id, step_id, action.value)
        if key in self._pending:
            return self._suppressed(key)
        request = TransitionRequest(action=action, reason=reason, assignee=assignee)
        return await self._dispatch(
            key, lambda: self._store.transition_step(instance_id, step_id, request)
        )

    async def _dispatch(
        self, key: ActionKey, call: Callable[[], Awaitable[Dict[str, Any]]]
    ) -> ActionResult:
        instance_id, step_id, action = key
        self._pending.add(key)
        already_completed: Optional[ConflictError] = None
        try:
            response = await call()
        except ConflictError as exc:
            if exc.code is ConflictCode.WORKFLOW_GATED and step_id is not None:
                self._blockers[(instance_id, step_id)] = exc.blocker_messages
                logger.warning(
                    f"{action} on step {step_id} of instance {instance_id} is gated by "
                    f"{exc.blocker_messages}"
                )
                raise
            if exc.code is not ConflictCode.STEP_ALREADY_COMPLETED:
                logger.warning(
                    f"{action} on step {step_id} of instance {instance_id} rejected: {exc}"
                )
                raise
            already_completed = exc
        except (NetworkError, ServerError) as exc:
            logger.error(f"{action} on step {step_id} of instance {instance_id} failed: {exc}")
            raise
        finally:
            self._pending.discard(key)

        if already_completed is not None:
            logger.info(f"Step {step_id} of instance {instance_id} was already completed")
            return ActionResult(
                instance_id=instance_id,
                step_id=step_id,
                action=action,
                outcome=ActionOutcome.ALREADY_COMPLETED,
                message=already_completed.message,
                checklist=await self.load(instance_id),
            )

        if step_id is not None:
            self._blockers.pop((instance_id, step_id), None)
        logger.info(f"{action} on step {step_id} of instance {instance_id} succeeded")
        return ActionResult(
            instance_id=instance_id,
            step_id=step_id,
            action=action,
            response=response or {},
            checklist=await self.load(instance_id),
        )

    def _suppressed(self, key: ActionKey) -> ActionResult:
        instance_id, step_id, action = key
        logger.debug(f"{action} on step {step_id} of instance {instance_id} already in flight")
        return ActionResult(
            instance_id=instance_id,
            step_id=step_id,
            action=action,
            outcome=ActionOutcome.SUPPRESSED,
            message="Action already in progress",
        )

    def _local(
        self, instance_id: int, step_id: int
    ) -> Tuple[Optional[Step], Optional[ChecklistItem], Optional[ProgressMode]]:
        raw = self._raw.get(instance_id)
        if raw is None:
            return None, None, None
        step = next((s for s in raw.steps if s.identifier == step_id), None)
        item = self.checklist(instance_id).item(step_id)
        return step, item, raw.progress_mode

    def _manual_step(
        self, instance_id: int, step_id: int
    ) -> Tuple[Optional[Step], Optional[ChecklistItem], Optional[ProgressMode]]:
        step, item, mode = self._local(instance_id, step_id)
        if step is not None and (step.is_automated or step.automation_handler):
            raise ConflictError(
                ConflictCode.AUTOMATED_STEP_USE_AUTOMATION_ENDPOINT,
                f'Step "{step.name or step.key}" is automated; manual transitions are not allowed',
            )
        return step, item, mode

    def _ensure_actionable(
        self,
        instance_id: int,
        step_id: int,
        item: Optional[ChecklistItem],
        mode: Optional[ProgressMode],
    ) -> None:
        # legacy gating belongs to the collaborator
        if item is None or mode is ProgressMode.LEGACY:
            return
        if item.status is StepStatus.BLOCKED:
            blockers = self._describe_blockers(instance_id, item)
            self._blockers[(instance_id, step_id)] = [b.message for b in blockers]
            raise ConflictError(
                ConflictCode.WORKFLOW_GATED,
                f'Step "{item.name or item.key}" is waiting on earlier steps',
                blockers=blockers,
            )
        if item.status not in ACTIONABLE_STATUSES:
            raise InvalidTransitionError(
                f'Step "{item.name or item.key}" is {item.status.value} and cannot be acted on'
            )

    def _describe_blockers(self, instance_id: int, item: ChecklistItem) -> List[Blocker]:
        if not item.blocked_by:
            return [Blocker(message=item.reason or "Step is on hold", step_id=item.step_id)]
        names = {i.step_id: i.name or i.key for i in self.checklist(instance_id).items}
        return [Blocker(message=names.get(dep, str(dep)), step_id=dep) for dep in item.blocked_by]


def _is_held(item: ChecklistItem) -> bool:
    return item.status is StepStatus.BLOCKED and bool(item.reason) and not item.blocked_by


def _action_name(action: Any) -> str:
    return action.value if isinstance(action, Enum) else str(action)


def _linkage_from_response(response: Dict[str, Any]) -> ExternalLinkage:
    data = response.get("linkage") or response
    linkage = ExternalLinkage(
        external_id=_as_str(data.get("external_id") or data.get("course_listing_id")),
        verified_by=data.get("verified_by"),
        verified_at=data.get("verified_at"),
    )
    if linkage.verified_at is None:
        linkage = linkage.model_copy(update={"verified_at": datetime.now(timezone.utc)})
    return linkage


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
