"""Exception taxonomy for stepgate."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from .contracts import Blocker


class ConflictCode(str, Enum):
    """Machine-readable conflict codes returned by the execution collaborator."""

    AUTOMATED_STEP_USE_AUTOMATION_ENDPOINT = "AUTOMATED_STEP_USE_AUTOMATION_ENDPOINT"
    STEP_ALREADY_COMPLETED = "STEP_ALREADY_COMPLETED"
    WORKFLOW_GATED = "WORKFLOW_GATED"
    MISSING_IDENTIFIERS = "MISSING_IDENTIFIERS"

    # Aliases used by the checklist actions.
    AUTOMATED_STEP_REQUIRES_AUTOMATION = "AUTOMATED_STEP_USE_AUTOMATION_ENDPOINT"
    ALREADY_COMPLETED = "STEP_ALREADY_COMPLETED"

    @classmethod
    def parse(cls, value: Any) -> Optional["ConflictCode"]:
        try:
            return cls(value)
        except ValueError:
            return None


class StepgateError(Exception):
    """Base class for all stepgate errors."""


class ValidationError(StepgateError):
    """A template failed validation; nothing was sent to the server."""

    def __init__(self, message: str, step_key: Optional[str] = None) -> None:
        self.message = message
        self.step_key = step_key
        super().__init__(message)


class InvalidTransitionError(StepgateError):
    """A step action is not permitted from the step's current state."""


class ConflictError(StepgateError):
    """The collaborator (or a local pre-check) rejected an action with a known code."""

    def __init__(
        self,
        code: ConflictCode,
        message: str = "",
        blockers: Optional[List[Blocker]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.code = code
        self.message = message or code.value
        self.blockers = list(blockers or [])
        self.details = details or {}
        super().__init__(f"{code.value}: {self.message}")

    @property
    def blocker_messages(self) -> List[str]:
        return [b.message for b in self.blockers]


class NetworkError(StepgateError):
    """The collaborator could not be reached."""


class ServerError(StepgateError):
    """The collaborator answered with an unrecognized non-success response."""

    def __init__(
        self,
        status_code: int,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.status_code = status_code
        self.message = message or f"Request failed with status {status_code}"
        self.details = details or {}
        super().__init__(self.message)
