"""Automatic workflow instance creation for new submissions."""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Optional

from .contracts import Template, WorkflowInstance, WorkflowType
from .errors import ServerError
from .stores import ExecutionStore, TemplateStore

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "default"
DEFAULT_DUE_DAYS = 7


async def select_template(
    store: TemplateStore, workflow_type: WorkflowType, category: Optional[str] = None
) -> Optional[Template]:
    """Pick the active template for ``workflow_type`` and ``category``.

    Falls back to templates in the ``default`` category, or with no category
    at all, when none matches the requested one. The lowest template id wins
    among several matches.
    """
    templates = await store.list_templates({"workflow_type": workflow_type, "active": True})
    matches = [t for t in templates if category and t.category == category]
    if not matches:
        matches = [t for t in templates if not t.category or t.category == DEFAULT_CATEGORY]
    if not matches:
        return None
    return min(matches, key=lambda t: t.id or 0)


async def auto_create_instance(
    template_store: TemplateStore,
    execution_store: ExecutionStore,
    submission_id: int,
    entity_id: Optional[int] = None,
    category: Optional[str] = None,
    workflow_type: WorkflowType = WorkflowType.COURSE,
    priority: str = "normal",
    due_date: Optional[date] = None,
) -> WorkflowInstance:
    """Create and start a workflow instance for a new submission.

    Raises:
        ServerError: no active template exists for the workflow type.
    """
    template = await select_template(template_store, workflow_type, category)
    if template is None:
        raise ServerError(
            404,
            f"No active {workflow_type.value} template found for category "
            f"{category or DEFAULT_CATEGORY!r}",
        )

    due = due_date or date.today() + timedelta(days=DEFAULT_DUE_DAYS)
    instance = await execution_store.create_instance(
        {
            "template_id": template.id,
            "entity_type": workflow_type.value,
            "entity_id": entity_id,
            "submission_id": submission_id,
            "priority": priority,
            "due_date": due.isoformat(),
        }
    )
    await execution_store.start_workflow(instance.id)
    logger.info(
        f"Created instance {instance.id} from template {template.id} for submission {submission_id}"
    )
    started = await execution_store.get_instance(instance.id)
    return started or instance
