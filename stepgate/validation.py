"""Pre-save validation of complete workflow templates."""

from __future__ import annotations

import logging
from typing import Optional

from .contracts import ProgressMode, Template
from .errors import ValidationError

logger = logging.getLogger(__name__)


def validate_template(template: Template) -> Optional[str]:
    """Return the first problem found in ``template``, or ``None`` if it is valid.

    Checks run in a fixed order and stop at the first failure:

    1. the template has a name
    2. it has at least one step
    3. ``progress_mode`` is a recognized value
    4. every gate step is required
    5. no step lists the same dependency twice
    6. every dependency resolves to a step of this template
    7. no step depends on itself
    8. every dependency comes strictly earlier in sequence order
    """
    if not (template.name or "").strip():
        return "Template name is required"
    if not template.steps:
        return "At least one step is required"
    if not isinstance(template.progress_mode, ProgressMode):
        return "Progress mode must be one of: strict, loose, legacy"

    for step in template.steps:
        if step.is_gate and not step.is_required:
            return f'Gate step "{step.name or step.key}" must also be required'

    for step in template.steps:
        if len(set(step.depends_on)) != len(step.depends_on):
            return f'Step "{step.name or step.key}" lists a dependency more than once'

    by_id = {s.identifier: s for s in template.steps}
    for step in template.steps:
        for dep in step.depends_on:
            if dep not in by_id:
                return f'Step "{step.name or step.key}" depends on an unknown step ({dep})'

    for step in template.steps:
        if step.identifier in step.depends_on:
            return f'Step "{step.name or step.key}" cannot depend on itself'

    for step in template.steps:
        for dep in step.depends_on:
            target = by_id[dep]
            if target.sequence_order >= step.sequence_order:
                return (
                    f'Step "{step.name or step.key}" depends on "{target.name or target.key}", '
                    "which does not come before it"
                )
    return None


def ensure_valid(template: Template) -> None:
    """Raise :class:`ValidationError` when ``template`` fails validation."""
    problem = validate_template(template)
    if problem is not None:
        logger.warning(f"Template {template.name!r} failed validation: {problem}")
        raise ValidationError(problem)
