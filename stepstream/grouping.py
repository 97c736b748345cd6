from typing import Iterable

from stepstream.models import Step, StepGroup


def _flush(run: list[Step]) -> StepGroup:
    return StepGroup(
        kind="parallel" if len(run) > 1 else "single",
        steps=tuple(run),
        group_key=run[0].group_key,
    )


def group_steps(steps: Iterable[Step]) -> list[StepGroup]:
    """Cluster consecutive steps sharing a group key into parallel groups.

    Order is preserved. Steps without a group key are never merged, not even
    with an adjacent keyless step.
    """
    groups: list[StepGroup] = []
    pending: list[Step] = []

    for step in steps:
        if step.group_key is None:
            if pending:
                groups.append(_flush(pending))
                pending = []
            groups.append(StepGroup(kind="single", steps=(step,)))
            continue
        if pending and pending[0].group_key != step.group_key:
            groups.append(_flush(pending))
            pending = []
        pending.append(step)

    if pending:
        groups.append(_flush(pending))
    return groups
