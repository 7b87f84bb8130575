"""Default sequential transitions derived from step order."""

from __future__ import annotations

from typing import List, Sequence

from .contracts import Step, Transition


def generate_sequential(
    steps: Sequence[Step], existing: Sequence[Transition]
) -> List[Transition]:
    """Return ``existing`` plus a sequential edge for every adjacent pair of steps.

    An edge is only added when no transition with the same ``(from, to)`` pair
    exists, so repeated calls never duplicate edges.
    """
    ordered = sorted(steps, key=lambda s: s.sequence_order)
    transitions = list(existing)
    seen = {(t.from_step, t.to_step) for t in transitions}
    for current, following in zip(ordered, ordered[1:]):
        pair = (current.identifier, following.identifier)
        if pair in seen:
            continue
        transitions.append(
            Transition(from_step=pair[0], to_step=pair[1], condition=None, type="sequential")
        )
        seen.add(pair)
    return transitions
