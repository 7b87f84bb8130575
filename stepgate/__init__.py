"""stepgate: workflow template graphs and checklist gating."""

from .builder import TemplateBuilder, reconcile_identifiers
from .checklist import ChecklistEngine, derive_checklist
from .contracts import ProgressMode, Step, StepStatus, Template, Transition
from .errors import (
    ConflictCode,
    ConflictError,
    InvalidTransitionError,
    NetworkError,
    ServerError,
    StepgateError,
    ValidationError,
)
from .graph import StepGraph, sanitize
from .instances import auto_create_instance
from .stores import get_execution_store, get_template_store
from .transitions import generate_sequential
from .validation import validate_template

__version__ = "0.1.0"
__all__ = [
    "ChecklistEngine",
    "ConflictCode",
    "ConflictError",
    "InvalidTransitionError",
    "NetworkError",
    "ProgressMode",
    "ServerError",
    "Step",
    "StepGraph",
    "StepStatus",
    "StepgateError",
    "Template",
    "TemplateBuilder",
    "Transition",
    "ValidationError",
    "auto_create_instance",
    "derive_checklist",
    "generate_sequential",
    "get_execution_store",
    "get_template_store",
    "reconcile_identifiers",
    "sanitize",
    "validate_template",
]
