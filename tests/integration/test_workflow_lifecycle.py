"""End-to-end flow: build a template, save it, run an instance through the checklist."""

import pytest

from stepgate.builder import TemplateBuilder
from stepgate.checklist import ActionOutcome, ChecklistEngine
from stepgate.contracts import ProgressMode, StepStatus, WorkflowType
from stepgate.errors import ConflictCode, ConflictError, ServerError
from stepgate.instances import auto_create_instance
from stepgate.stores import InMemoryExecutionStore, InMemoryTemplateStore, SQLiteTemplateStore


def _course_review(mode: ProgressMode = ProgressMode.STRICT) -> TemplateBuilder:
    builder = TemplateBuilder(name="Course review", category="default", progress_mode=mode)
    verify = builder.add_step(
        key="verify_course",
        name="Verify course",
        is_gate=True,
        is_automated=True,
        automation_handler="check_course_exists",
    )
    review = builder.add_step(key="review", name="Review materials", depends_on=[verify.identifier])
    builder.add_step(key="notes", name="Notes", is_required=False)
    builder.add_step(key="publish", name="Publish", depends_on=[review.identifier])
    builder.generate_transitions()
    return builder


async def _known_courses(handler, identifiers):
    return str(identifiers.get("course_id")) == "4411"


@pytest.mark.asyncio
async def test_strict_course_review_lifecycle():
    templates = InMemoryTemplateStore()
    execution = InMemoryExecutionStore(templates, existence_check=_known_courses)
    template = await _course_review().save(templates)
    verify, review, notes, publish = (s.identifier for s in template.steps)

    instance = await auto_create_instance(
        templates, execution, submission_id=55, entity_id=4411, category="biology"
    )
    assert instance.template_id == template.id
    assert instance.status == "in_progress"

    engine = ChecklistEngine(execution)
    checklist = await engine.load(instance.id)
    assert checklist.item(verify).status is StepStatus.READY
    assert checklist.item(review).status is StepStatus.BLOCKED
    assert checklist.item(notes).status is StepStatus.BLOCKED

    with pytest.raises(ConflictError) as exc:
        await engine.complete(instance.id, verify)
    assert exc.value.code is ConflictCode.AUTOMATED_STEP_USE_AUTOMATION_ENDPOINT

    with pytest.raises(ConflictError) as exc:
        await engine.run_external_verification(instance.id, verify, {})
    assert exc.value.code is ConflictCode.MISSING_IDENTIFIERS

    with pytest.raises(ServerError):
        await engine.run_external_verification(instance.id, verify, {"course_id": 1})

    result = await engine.run_external_verification(
        instance.id, verify, {"course_id": 4411, "term_id": "2026FA"}
    )
    assert result.checklist.item(verify).status is StepStatus.COMPLETED
    assert result.checklist.item(verify).automation_info.linkage.external_id == "4411"
    assert result.checklist.item(review).status is StepStatus.READY
    assert result.checklist.item(publish).status is StepStatus.BLOCKED

    await engine.complete(instance.id, review)
    await engine.skip(instance.id, notes)
    result = await engine.complete(instance.id, publish)
    assert result.checklist.progress == 100
    assert (await execution.get_instance(instance.id)).status == "completed"

    reverted = await engine.revert(instance.id, review)
    assert reverted.checklist.item(review).status is StepStatus.READY
    assert (await execution.get_instance(instance.id)).status == "in_progress"


@pytest.mark.asyncio
async def test_loose_mode_lets_unrelated_steps_proceed():
    templates = InMemoryTemplateStore()
    execution = InMemoryExecutionStore(templates)
    template = await _course_review(ProgressMode.LOOSE).save(templates)
    verify, review, notes, publish = (s.identifier for s in template.steps)

    instance = await auto_create_instance(templates, execution, submission_id=56)
    engine = ChecklistEngine(execution)
    checklist = await engine.load(instance.id)

    assert checklist.item(review).status is StepStatus.BLOCKED
    assert checklist.item(notes).status is StepStatus.READY
    assert checklist.item(publish).status is StepStatus.BLOCKED

    result = await engine.complete(instance.id, notes)
    assert result.outcome is ActionOutcome.DONE
    assert result.checklist.item(notes).status is StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_auto_create_without_template_fails():
    templates = InMemoryTemplateStore()
    execution = InMemoryExecutionStore(templates)
    await _course_review().save(templates)
    with pytest.raises(ServerError):
        await auto_create_instance(
            templates, execution, submission_id=1, workflow_type=WorkflowType.ITEM
        )


@pytest.mark.asyncio
async def test_auto_create_falls_back_to_uncategorized_template():
    templates = InMemoryTemplateStore()
    execution = InMemoryExecutionStore(templates)
    await _course_review().save(templates)
    builder = TemplateBuilder(name="Item intake", workflow_type=WorkflowType.ITEM)
    builder.add_step(key="intake", name="Intake")
    item_template = await builder.save(templates)
    assert item_template.category is None

    instance = await auto_create_instance(
        templates, execution, submission_id=8, category="book", workflow_type=WorkflowType.ITEM
    )
    assert instance.template_id == item_template.id


@pytest.mark.asyncio
async def test_auto_create_prefers_matching_category():
    templates = InMemoryTemplateStore()
    execution = InMemoryExecutionStore(templates)
    await _course_review().save(templates)
    builder = TemplateBuilder(name="Biology review", category="biology")
    builder.add_step(key="lab_safety", name="Lab safety")
    biology = await builder.save(templates)

    instance = await auto_create_instance(templates, execution, submission_id=9, category="biology")
    assert instance.template_id == biology.id


@pytest.mark.asyncio
async def test_templates_saved_to_sqlite_run_in_memory(tmp_path):
    templates = SQLiteTemplateStore(tmp_path / "templates.db")
    builder = _course_review()
    template = await builder.save(templates)

    reloaded = await templates.get_template(template.id)
    assert [(s.key, s.depends_on, s.is_gate, s.is_required) for s in reloaded.steps] == [
        (s.key, s.depends_on, s.is_gate, s.is_required) for s in template.steps
    ]

    execution = InMemoryExecutionStore(templates)
    instance = await auto_create_instance(templates, execution, submission_id=7)
    checklist = await ChecklistEngine(execution).load(instance.id)
    assert len(checklist.items) == 4
    await templates.close()
