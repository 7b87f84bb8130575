"""Core data contracts for stepgate workflow templates and checklists."""

from __future__ import annotations

import itertools
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field


# Locally generated step identifiers are negative so they never collide with
# server-assigned (positive) ids.
_local_ids = itertools.count(-1, -1)


def new_local_id() -> int:
    """Return a fresh identifier for a step that has not been persisted."""
    return next(_local_ids)


def is_persisted_id(identifier: int) -> bool:
    return identifier > 0


class StepType(str, Enum):
    ACTION = "action"
    DECISION = "decision"
    NOTIFICATION = "notification"
    ASSIGNMENT = "assignment"
    APPROVAL = "approval"


class ProgressMode(str, Enum):
    """Template-level policy controlling how far gating propagates."""

    STRICT = "strict"
    LOOSE = "loose"
    LEGACY = "legacy"


class WorkflowType(str, Enum):
    COURSE = "course"
    ITEM = "item"


class StepStatus(str, Enum):
    NOT_STARTED = "not_started"
    READY = "ready"
    BLOCKED = "blocked"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.FAILED}
)


class StepAction(str, Enum):
    COMPLETE = "complete"
    START = "start"
    BLOCK = "block"
    SKIP = "skip"
    REVERT = "revert"
    ASSIGN = "assign"
    AUTOMATION = "automation"
    VERIFY = "verify"


# ----------------------------------------------------------------------
# Automation handler variants


class ManualStep(BaseModel):
    """Step completed by a person; no automation handler."""

    kind: Literal["manual"] = "manual"


class HandlerAutomation(BaseModel):
    """Step completed by a named automation handler."""

    kind: Literal["handler"] = "handler"
    handler: str


class ExternalVerification(BaseModel):
    """Gate completed by checking that a record exists in an external system."""

    kind: Literal["external_verification"] = "external_verification"
    handler: str
    required_identifiers: Tuple[str, ...] = ()
    optional_identifiers: Tuple[str, ...] = ()

    def missing_identifiers(self, identifiers: Dict[str, Any]) -> List[str]:
        return [
            name
            for name in self.required_identifiers
            if identifiers.get(name) in (None, "")
        ]


Automation = Annotated[
    Union[ManualStep, HandlerAutomation, ExternalVerification],
    Field(discriminator="kind"),
]

# handler name -> (required identifiers, optional identifiers)
EXTERNAL_VERIFICATION_HANDLERS: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    "check_course_exists": (("course_id",), ("term_id",)),
}


def classify_automation(handler: Optional[str]) -> Automation:
    """Map a raw ``automation_handler`` string onto its automation variant."""
    if not handler:
        return ManualStep()
    if handler in EXTERNAL_VERIFICATION_HANDLERS:
        required, optional = EXTERNAL_VERIFICATION_HANDLERS[handler]
        return ExternalVerification(
            handler=handler,
            required_identifiers=required,
            optional_identifiers=optional,
        )
    return HandlerAutomation(handler=handler)


# ----------------------------------------------------------------------
# Template models


class Step(BaseModel):
    """A single step of a workflow template."""

    identifier: int = Field(default_factory=new_local_id)
    key: str
    name: str = ""
    description: Optional[str] = None
    type: StepType = StepType.ACTION
    sequence_order: int = 1
    is_required: bool = True
    is_gate: bool = False
    is_automated: bool = False
    automation_handler: Optional[str] = None
    depends_on: List[int] = Field(default_factory=list)
    assigned_role: Optional[str] = None
    estimated_duration: Optional[int] = None
    instructions: Optional[str] = None
    due_date_offset: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    form_fields: List[Any] = Field(default_factory=list)

    @property
    def automation(self) -> Automation:
        return classify_automation(self.automation_handler)

    @property
    def is_persisted(self) -> bool:
        return is_persisted_id(self.identifier)


class Transition(BaseModel):
    """Edge between two steps in the flow view."""

    from_step: int
    to_step: int
    condition: Optional[int] = None
    type: str = "sequential"


class Template(BaseModel):
    """A complete workflow template."""

    id: Optional[int] = None
    name: str = ""
    description: Optional[str] = None
    workflow_type: WorkflowType = WorkflowType.COURSE
    category: Optional[str] = None
    is_active: bool = True
    progress_mode: Optional[ProgressMode] = ProgressMode.STRICT
    steps: List[Step] = Field(default_factory=list)
    conditions: List[Any] = Field(default_factory=list)
    transitions: List[Transition] = Field(default_factory=list)


# ----------------------------------------------------------------------
# Execution state


class Blocker(BaseModel):
    """One reason an action was rejected as gated."""

    message: str
    step_id: Optional[int] = None


class ExternalLinkage(BaseModel):
    """Linkage recorded by a successful external verification."""

    external_id: Optional[str] = None
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None


class StepState(BaseModel):
    """Live status of one step within a workflow instance."""

    step_id: int
    status: StepStatus = StepStatus.NOT_STARTED
    reason: Optional[str] = None
    assignee: Optional[str] = None
    blockers: List[Blocker] = Field(default_factory=list)
    linkage: Optional[ExternalLinkage] = None


class HistoryEntry(BaseModel):
    step_id: int
    action: StepAction
    status: StepStatus
    reason: Optional[str] = None
    actor: Optional[str] = None
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WorkflowInstance(BaseModel):
    """A running workflow for one course or item."""

    id: int
    template_id: int
    template_name: str = ""
    entity_type: WorkflowType = WorkflowType.COURSE
    entity_id: Optional[int] = None
    submission_id: Optional[int] = None
    status: str = "not_started"
    priority: str = "normal"
    due_date: Optional[str] = None
    progress_percentage: int = 0
    history: List[HistoryEntry] = Field(default_factory=list)


class InstanceChecklist(BaseModel):
    """Raw checklist payload as reported by the execution collaborator."""

    instance_id: int
    progress_mode: ProgressMode = ProgressMode.STRICT
    steps: List[Step] = Field(default_factory=list)
    states: List[StepState] = Field(default_factory=list)

    def state_map(self) -> Dict[int, StepState]:
        return {state.step_id: state for state in self.states}


class AutomationInfo(BaseModel):
    automation: Automation
    linkage: Optional[ExternalLinkage] = None


class ChecklistItem(BaseModel):
    """Derived per-step render model."""

    step_id: int
    key: str
    name: str
    sequence_order: int
    status: StepStatus
    is_gate: bool = False
    is_required: bool = True
    is_automated: bool = False
    blocked_by: List[int] = Field(default_factory=list)
    can_act: bool = False
    reason: Optional[str] = None
    assignee: Optional[str] = None
    automation_info: Optional[AutomationInfo] = None


class Checklist(BaseModel):
    instance_id: int
    progress_mode: ProgressMode
    items: List[ChecklistItem] = Field(default_factory=list)
    progress: int = 0

    def item(self, step_id: int) -> Optional[ChecklistItem]:
        return next((i for i in self.items if i.step_id == step_id), None)


# ----------------------------------------------------------------------
# Requests sent to the execution collaborator


class TransitionRequest(BaseModel):
    action: StepAction
    reason: Optional[str] = None
    assignee: Optional[str] = None
    step_data: Optional[Dict[str, Any]] = None


class AutomationRequest(BaseModel):
    intent: str = "run"
    payload: Dict[str, Any] = Field(default_factory=dict)
