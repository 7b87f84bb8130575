from stepgate.checklist import derive_checklist, progress_percentage
from stepgate.contracts import (
    Blocker,
    ExternalLinkage,
    ExternalVerification,
    HandlerAutomation,
    ProgressMode,
    Step,
    StepState,
    StepStatus,
)


def _steps():
    return [
        Step(identifier=1, key="a", name="A", sequence_order=1, is_gate=True),
        Step(identifier=2, key="b", name="B", sequence_order=2),
        Step(identifier=3, key="c", name="C", sequence_order=3, depends_on=[2]),
    ]


def _states(**statuses):
    ids = {"a": 1, "b": 2, "c": 3}
    return {
        ids[key]: StepState(step_id=ids[key], status=StepStatus(status))
        for key, status in statuses.items()
    }


def _status(items, step_id):
    return next(i for i in items if i.step_id == step_id).status


def test_strict_gate_blocks_every_later_step():
    items = derive_checklist(_steps(), _states(a="ready"), ProgressMode.STRICT)
    assert _status(items, 1) is StepStatus.READY
    assert _status(items, 2) is StepStatus.BLOCKED
    assert items[1].blocked_by == [1]
    assert items[2].blocked_by == [1, 2]


def test_loose_only_blocks_direct_dependents():
    items = derive_checklist(_steps(), _states(a="ready"), ProgressMode.LOOSE)
    assert _status(items, 2) is StepStatus.READY
    assert _status(items, 3) is StepStatus.BLOCKED
    assert items[2].blocked_by == [2]


def test_completed_gate_releases_strict_steps():
    items = derive_checklist(_steps(), _states(a="completed"), ProgressMode.STRICT)
    assert [i.status for i in items] == [
        StepStatus.COMPLETED,
        StepStatus.READY,
        StepStatus.BLOCKED,
    ]


def test_skip_satisfies_dependency_only_in_loose():
    states = _states(a="completed", b="skipped")
    loose = derive_checklist(_steps(), states, ProgressMode.LOOSE)
    strict = derive_checklist(_steps(), states, ProgressMode.STRICT)
    assert _status(loose, 3) is StepStatus.READY
    assert _status(strict, 3) is StepStatus.BLOCKED


def test_skipped_gate_still_blocks_in_strict():
    steps = _steps()
    items = derive_checklist(steps, _states(a="skipped"), ProgressMode.STRICT)
    assert _status(items, 2) is StepStatus.BLOCKED


def test_legacy_passes_statuses_through():
    states = _states(a="ready", b="blocked", c="ready")
    states[2] = states[2].model_copy(update={"blockers": [Blocker(message="A", step_id=1)]})
    items = derive_checklist(_steps(), states, ProgressMode.LEGACY)
    assert [i.status for i in items] == [
        StepStatus.READY,
        StepStatus.BLOCKED,
        StepStatus.READY,
    ]
    assert items[1].blocked_by == [1]


def test_manual_block_is_kept():
    states = _states(a="completed")
    states[2] = StepState(step_id=2, status=StepStatus.BLOCKED, reason="Waiting on instructor")
    items = derive_checklist(_steps(), states, ProgressMode.STRICT)
    assert _status(items, 2) is StepStatus.BLOCKED
    assert items[1].blocked_by == []
    assert items[1].reason == "Waiting on instructor"
    assert not items[1].can_act


def test_in_progress_and_failed_are_reported_as_is():
    states = _states(a="in_progress", b="failed")
    items = derive_checklist(_steps(), states, ProgressMode.STRICT)
    assert _status(items, 1) is StepStatus.IN_PROGRESS
    assert _status(items, 2) is StepStatus.FAILED
    assert items[0].can_act
    assert not items[1].can_act


def test_busy_steps_cannot_act():
    items = derive_checklist(_steps(), _states(a="ready"), ProgressMode.STRICT, busy={1})
    assert items[0].status is StepStatus.READY
    assert not items[0].can_act


def test_missing_states_default_to_not_started():
    items = derive_checklist(_steps(), {}, ProgressMode.LOOSE)
    assert [i.status for i in items] == [
        StepStatus.READY,
        StepStatus.READY,
        StepStatus.BLOCKED,
    ]


def test_automation_info_carries_variant_and_linkage():
    steps = [
        Step(
            identifier=1,
            key="verify",
            sequence_order=1,
            is_gate=True,
            is_automated=True,
            automation_handler="check_course_exists",
        ),
        Step(identifier=2, key="notify", sequence_order=2, is_automated=True, automation_handler="send_email"),
        Step(identifier=3, key="manual", sequence_order=3),
    ]
    linkage = ExternalLinkage(external_id="123", verified_by="check_course_exists")
    states = {1: StepState(step_id=1, status=StepStatus.COMPLETED, linkage=linkage)}
    items = derive_checklist(steps, states, ProgressMode.LOOSE)

    verify = items[0].automation_info
    assert isinstance(verify.automation, ExternalVerification)
    assert verify.automation.required_identifiers == ("course_id",)
    assert verify.linkage.external_id == "123"
    assert isinstance(items[1].automation_info.automation, HandlerAutomation)
    assert items[2].automation_info is None


def test_progress_counts_completed_and_skipped():
    items = derive_checklist(
        _steps(), _states(a="completed", b="skipped"), ProgressMode.LOOSE
    )
    assert progress_percentage(items) == 67
    assert progress_percentage([]) == 0
