import logging
from collections import defaultdict
from typing import Dict, Iterable, Iterator, List, Tuple

from shopfloor.models.entities import Reservation, ResourceKind, Task

logger = logging.getLogger(__name__)

ResourceKey = Tuple[ResourceKind, str]


class ResourceCalendar:
    """
    Reservations per (resource kind, resource id) for one scheduling pass.

    Built from existing tasks (slots joined through the task's machine and
    operator assignments) and threaded explicitly through the scheduler, which
    adds each commit before the next task is considered.
    """

    def __init__(self, reservations: Iterable[Reservation] = ()):
        self._by_resource: Dict[ResourceKey, List[Reservation]] = defaultdict(list)
        for r in reservations:
            self.reserve(r)

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task]) -> "ResourceCalendar":
        calendar = cls()
        for task in tasks:
            for reservation in reservations_for_task(task):
                calendar.reserve(reservation)
        return calendar

    def reserve(self, reservation: Reservation) -> None:
        self._by_resource[(reservation.resource_kind, reservation.resource_id)].append(reservation)

    def reservations_for(self, kind: ResourceKind, resource_id: str) -> List[Reservation]:
        return list(self._by_resource.get((kind, resource_id), ()))

    def release_task(self, task_id: str) -> int:
        """Drop every reservation held by ``task_id``; returns how many were removed."""
        removed = 0
        for key, reservations in self._by_resource.items():
            kept = [r for r in reservations if r.task_id != task_id]
            removed += len(reservations) - len(kept)
            self._by_resource[key] = kept
        return removed

    def without_task(self, task_id: str) -> "ResourceCalendar":
        return ResourceCalendar(r for r in self if r.task_id != task_id)

    def __iter__(self) -> Iterator[Reservation]:
        for reservations in self._by_resource.values():
            yield from reservations

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_resource.values())


def reservations_for_task(task: Task) -> List[Reservation]:
    """Project a task's slots onto its assigned machines and operators."""
    out: List[Reservation] = []
    for slot, start, end in task.intervals():
        if end <= start:
            logger.warning(f"Skipping malformed slot {slot.id} of task {task.id} ({start} -> {end})")
            continue
        for machine_id in sorted(task.assigned_machine_ids):
            out.append(Reservation(ResourceKind.MACHINE, machine_id, start, end, task.id))
        for operator_id in sorted(task.assigned_operator_ids):
            out.append(Reservation(ResourceKind.OPERATOR, operator_id, start, end, task.id))
    return out
