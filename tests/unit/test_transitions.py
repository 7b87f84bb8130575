from stepgate.contracts import Step, Transition
from stepgate.transitions import generate_sequential


def _steps():
    return [
        Step(identifier=-3, key="c", sequence_order=3),
        Step(identifier=-1, key="a", sequence_order=1),
        Step(identifier=-2, key="b", sequence_order=2),
    ]


def test_generates_edges_in_sequence_order():
    transitions = generate_sequential(_steps(), [])
    assert [(t.from_step, t.to_step) for t in transitions] == [(-1, -2), (-2, -3)]
    assert all(t.type == "sequential" and t.condition is None for t in transitions)


def test_generation_is_idempotent():
    once = generate_sequential(_steps(), [])
    twice = generate_sequential(_steps(), once)
    assert twice == once


def test_existing_edges_are_kept():
    existing = [Transition(from_step=-1, to_step=-2, condition=4, type="conditional")]
    transitions = generate_sequential(_steps(), existing)
    assert transitions[0] == existing[0]
    assert [(t.from_step, t.to_step) for t in transitions] == [(-1, -2), (-2, -3)]


def test_single_step_has_no_edges():
    assert generate_sequential([Step(key="only")], []) == []
