import asyncio
from typing import Any, Dict, List, Optional

import pytest

from stepgate.checklist import ActionOutcome, ChecklistEngine
from stepgate.contracts import (
    Blocker,
    InstanceChecklist,
    ProgressMode,
    Step,
    StepAction,
    StepState,
    StepStatus,
)
from stepgate.errors import (
    ConflictCode,
    ConflictError,
    InvalidTransitionError,
    NetworkError,
)
from stepgate.stores.base import ExecutionStore


class RecordingStore(ExecutionStore):
    """Execution store double that records calls and replays scripted failures."""

    def __init__(self, checklist: InstanceChecklist) -> None:
        self.checklist = checklist
        self.calls: List[tuple] = []
        self.errors: List[Exception] = []
        self.release: Optional[asyncio.Event] = None
        self.response: Dict[str, Any] = {"success": True}

    def set_status(self, step_id: int, status: StepStatus, **fields) -> None:
        self.checklist.states = [
            s.model_copy(update={"status": status, **fields}) if s.step_id == step_id else s
            for s in self.checklist.states
        ]

    async def _call(self, *call) -> Dict[str, Any]:
        self.calls.append(call)
        if self.release is not None:
            await self.release.wait()
        if self.errors:
            raise self.errors.pop(0)
        return self.response

    async def list_instances(self, filters=None):
        return []

    async def get_instance(self, instance_id):
        return None

    async def create_instance(self, data):
        raise NotImplementedError

    async def start_workflow(self, instance_id):
        return await self._call("start_workflow", instance_id)

    async def get_instance_checklist(self, instance_id):
        self.calls.append(("get_instance_checklist", instance_id))
        return self.checklist.model_copy(deep=True)

    async def transition_step(self, instance_id, step_id, request):
        return await self._call("transition_step", instance_id, step_id, request.action)

    async def run_step_automation(self, instance_id, step_id, request):
        return await self._call("run_step_automation", instance_id, step_id, request.intent)

    async def run_external_verification(self, instance_id, step_id, identifiers):
        return await self._call("run_external_verification", instance_id, step_id, identifiers)


def _store(mode: ProgressMode = ProgressMode.STRICT, **statuses) -> RecordingStore:
    steps = [
        Step(identifier=1, key="intake", name="Intake", sequence_order=1, is_gate=True),
        Step(identifier=2, key="review", name="Review", sequence_order=2, depends_on=[1]),
        Step(identifier=3, key="notes", name="Notes", sequence_order=3, is_required=False),
        Step(
            identifier=4,
            key="verify",
            name="Verify course",
            sequence_order=4,
            is_automated=True,
            automation_handler="check_course_exists",
        ),
        Step(
            identifier=5,
            key="email",
            name="Email",
            sequence_order=5,
            is_automated=True,
            automation_handler="send_email",
        ),
    ]
    states = [
        StepState(step_id=s.identifier, status=StepStatus(statuses.get(s.key, "not_started")))
        for s in steps
    ]
    return RecordingStore(
        InstanceChecklist(instance_id=7, progress_mode=mode, steps=steps, states=states)
    )


def _network_calls(store: RecordingStore) -> List[tuple]:
    return [c for c in store.calls if c[0] != "get_instance_checklist"]


@pytest.mark.asyncio
async def test_load_derives_checklist():
    engine = ChecklistEngine(_store())
    checklist = await engine.load(7)
    assert checklist.item(1).status is StepStatus.READY
    assert checklist.item(2).status is StepStatus.BLOCKED
    assert checklist.item(2).blocked_by == [1]
    assert checklist.progress == 0


def test_checklist_requires_load():
    engine = ChecklistEngine(_store())
    with pytest.raises(KeyError):
        engine.checklist(7)


@pytest.mark.asyncio
async def test_complete_refetches_checklist():
    store = _store()
    engine = ChecklistEngine(store)
    await engine.load(7)
    store.set_status(1, StepStatus.COMPLETED)

    result = await engine.complete(7, 1)

    assert result.outcome is ActionOutcome.DONE
    assert ("transition_step", 7, 1, StepAction.COMPLETE) in store.calls
    assert store.calls[-1] == ("get_instance_checklist", 7)
    assert result.checklist.item(2).status is StepStatus.READY


@pytest.mark.asyncio
async def test_duplicate_action_in_flight_is_suppressed():
    store = _store()
    store.release = asyncio.Event()
    engine = ChecklistEngine(store)
    await engine.load(7)

    first = asyncio.create_task(engine.complete(7, 1))
    await asyncio.sleep(0)
    assert engine.is_pending(7, 1, "complete")
    assert not engine.checklist(7).item(1).can_act

    second = await engine.complete(7, 1)
    assert second.outcome is ActionOutcome.SUPPRESSED

    store.release.set()
    result = await first
    assert result.outcome is ActionOutcome.DONE
    assert len(_network_calls(store)) == 1
    assert not engine.is_pending(7, 1, "complete")


@pytest.mark.asyncio
async def test_actions_on_different_steps_run_concurrently():
    store = _store(ProgressMode.LOOSE)
    store.release = asyncio.Event()
    engine = ChecklistEngine(store)
    await engine.load(7)

    tasks = [
        asyncio.create_task(engine.complete(7, 1)),
        asyncio.create_task(engine.start(7, 3)),
    ]
    await asyncio.sleep(0)
    assert len(_network_calls(store)) == 2
    store.release.set()
    results = await asyncio.gather(*tasks)
    assert all(r.outcome is ActionOutcome.DONE for r in results)


@pytest.mark.asyncio
async def test_already_completed_is_informational():
    store = _store(intake="completed")
    engine = ChecklistEngine(store)
    await engine.load(7)

    result = await engine.complete(7, 1)

    assert result.outcome is ActionOutcome.ALREADY_COMPLETED
    assert _network_calls(store) == []


@pytest.mark.asyncio
async def test_already_completed_from_server_refetches():
    store = _store(ProgressMode.LEGACY, intake="ready")
    store.errors.append(ConflictError(ConflictCode.STEP_ALREADY_COMPLETED, "done already"))
    engine = ChecklistEngine(store)
    await engine.load(7)

    result = await engine.complete(7, 1)

    assert result.outcome is ActionOutcome.ALREADY_COMPLETED
    assert result.checklist is not None
    assert store.calls[-1] == ("get_instance_checklist", 7)


@pytest.mark.asyncio
async def test_manual_complete_of_automated_step_conflicts():
    store = _store(ProgressMode.LOOSE)
    engine = ChecklistEngine(store)
    await engine.load(7)

    with pytest.raises(ConflictError) as exc:
        await engine.complete(7, 5)
    assert exc.value.code is ConflictCode.AUTOMATED_STEP_REQUIRES_AUTOMATION
    assert exc.value.code is ConflictCode.AUTOMATED_STEP_USE_AUTOMATION_ENDPOINT

    with pytest.raises(ConflictError):
        await engine.skip(7, 5)
    assert _network_calls(store) == []


@pytest.mark.asyncio
async def test_local_gating_rejects_blocked_step():
    store = _store()
    engine = ChecklistEngine(store)
    await engine.load(7)

    with pytest.raises(ConflictError) as exc:
        await engine.complete(7, 2)
    assert exc.value.code is ConflictCode.WORKFLOW_GATED
    assert exc.value.blocker_messages == ["Intake"]
    assert engine.blockers_for(7, 2) == ["Intake"]
    assert _network_calls(store) == []


@pytest.mark.asyncio
async def test_gated_response_fills_and_success_clears_blockers():
    store = _store(ProgressMode.LEGACY, review="ready")
    store.errors.append(
        ConflictError(ConflictCode.WORKFLOW_GATED, "gated", blockers=[Blocker(message="X")])
    )
    engine = ChecklistEngine(store)
    await engine.load(7)

    with pytest.raises(ConflictError):
        await engine.complete(7, 2)
    assert engine.blockers_for(7, 2) == ["X"]
    assert not engine.is_pending(7, 2, "complete")

    # an action on a different step leaves the cache alone
    await engine.start(7, 3)
    assert engine.blockers_for(7, 2) == ["X"]

    await engine.complete(7, 2)
    assert engine.blockers_for(7, 2) == []


@pytest.mark.asyncio
async def test_start_releases_manual_hold():
    store = _store()
    store.set_status(1, StepStatus.BLOCKED, reason="Waiting on faculty")
    engine = ChecklistEngine(store)
    await engine.load(7)

    with pytest.raises(ConflictError) as exc:
        await engine.complete(7, 1)
    assert exc.value.blocker_messages == ["Waiting on faculty"]

    store.set_status(1, StepStatus.IN_PROGRESS, reason=None)
    result = await engine.start(7, 1)
    assert result.outcome is ActionOutcome.DONE
    assert ("transition_step", 7, 1, StepAction.START) in store.calls
    assert result.checklist.item(1).status is StepStatus.IN_PROGRESS

    store.set_status(1, StepStatus.COMPLETED)
    result = await engine.complete(7, 1)
    assert result.checklist.item(2).status is StepStatus.READY


@pytest.mark.asyncio
async def test_start_on_dependency_blocked_step_stays_local():
    store = _store()
    engine = ChecklistEngine(store)
    await engine.load(7)

    with pytest.raises(ConflictError) as exc:
        await engine.start(7, 2)
    assert exc.value.code is ConflictCode.WORKFLOW_GATED
    assert _network_calls(store) == []


@pytest.mark.asyncio
async def test_network_failure_leaves_state_unchanged():
    store = _store()
    store.errors.append(NetworkError("connection refused"))
    engine = ChecklistEngine(store)
    before = await engine.load(7)

    with pytest.raises(NetworkError):
        await engine.complete(7, 1)
    assert engine.checklist(7) == before
    assert not engine.is_pending(7, 1, "complete")


@pytest.mark.asyncio
async def test_skip_required_step_is_rejected_locally():
    store = _store(intake="completed")
    engine = ChecklistEngine(store)
    await engine.load(7)
    with pytest.raises(InvalidTransitionError):
        await engine.skip(7, 2)

    result = await engine.skip(7, 3, reason="not needed")
    assert result.outcome is ActionOutcome.DONE
    assert ("transition_step", 7, 3, StepAction.SKIP) in store.calls


@pytest.mark.asyncio
async def test_revert_only_from_completed_and_rederives_downstream():
    store = _store(intake="completed", review="ready")
    engine = ChecklistEngine(store)
    await engine.load(7)

    with pytest.raises(InvalidTransitionError):
        await engine.revert(7, 2)

    store.set_status(1, StepStatus.READY)
    result = await engine.revert(7, 1)
    # review was released by intake and is gated again after the revert
    assert result.checklist.item(1).status is StepStatus.READY
    assert result.checklist.item(2).status is StepStatus.BLOCKED


@pytest.mark.asyncio
async def test_assign_requires_assignee():
    engine = ChecklistEngine(_store())
    await engine.load(7)
    with pytest.raises(InvalidTransitionError):
        await engine.assign(7, 1, None)
    result = await engine.assign(7, 1, "editor@example.edu")
    assert result.outcome is ActionOutcome.DONE


@pytest.mark.asyncio
async def test_block_terminal_step_is_rejected():
    engine = ChecklistEngine(_store(intake="completed"))
    await engine.load(7)
    with pytest.raises(InvalidTransitionError):
        await engine.block(7, 1, reason="hold")


@pytest.mark.asyncio
async def test_run_automation_checks_variant():
    store = _store(ProgressMode.LOOSE)
    engine = ChecklistEngine(store)
    await engine.load(7)

    with pytest.raises(InvalidTransitionError):
        await engine.run_automation(7, 1)
    with pytest.raises(InvalidTransitionError):
        await engine.run_automation(7, 4)

    result = await engine.run_automation(7, 5, payload={"to": "faculty"})
    assert result.outcome is ActionOutcome.DONE
    assert ("run_step_automation", 7, 5, "run") in store.calls


@pytest.mark.asyncio
async def test_external_verification_requires_identifiers():
    store = _store(ProgressMode.LOOSE)
    engine = ChecklistEngine(store)
    await engine.load(7)

    with pytest.raises(ConflictError) as exc:
        await engine.run_external_verification(7, 4, {"term_id": "2026FA"})
    assert exc.value.code is ConflictCode.MISSING_IDENTIFIERS
    assert exc.value.details["missing"] == ["course_id"]
    assert _network_calls(store) == []


@pytest.mark.asyncio
async def test_external_verification_stores_linkage():
    store = _store(ProgressMode.LOOSE)
    store.response = {
        "success": True,
        "linkage": {"external_id": 4411, "verified_by": "registrar"},
    }
    engine = ChecklistEngine(store)
    await engine.load(7)
    store.set_status(4, StepStatus.COMPLETED)

    result = await engine.run_external_verification(7, 4, {"course_id": 4411})

    linkage = engine.linkage_for(7, 4)
    assert linkage.external_id == "4411"
    assert linkage.verified_by == "registrar"
    assert linkage.verified_at is not None
    assert result.checklist.item(4).automation_info.linkage == linkage


@pytest.mark.asyncio
async def test_legacy_mode_defers_gating_to_store():
    store = _store(ProgressMode.LEGACY, review="blocked")
    engine = ChecklistEngine(store)
    checklist = await engine.load(7)
    assert checklist.item(2).status is StepStatus.BLOCKED

    # no local gate check; the store decides
    await engine.complete(7, 2)
    assert ("transition_step", 7, 2, StepAction.COMPLETE) in store.calls


@pytest.mark.asyncio
async def test_start_workflow_is_suppressed_while_pending():
    store = _store()
    store.release = asyncio.Event()
    engine = ChecklistEngine(store)

    first = asyncio.create_task(engine.start_workflow(7))
    await asyncio.sleep(0)
    second = await engine.start_workflow(7)
    assert second.outcome is ActionOutcome.SUPPRESSED
    store.release.set()
    assert (await first).outcome is ActionOutcome.DONE
