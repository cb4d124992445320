from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence

from shopfloor.engine.calendar import ResourceCalendar
from shopfloor.models.entities import Reservation, ResourceKind


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """
    Half-open overlap test for [start_a, end_a) and [start_b, end_b).

    A reservation ending exactly when another begins is not an overlap.
    """
    return start_a < end_b and end_a > start_b


def find_conflict(existing: Iterable[Reservation], start: datetime, end: datetime) -> Optional[Reservation]:
    """First reservation overlapping the candidate interval, or None."""
    for r in existing:
        if intervals_overlap(r.start, r.end, start, end):
            return r
    return None


def has_conflict(existing: Iterable[Reservation], start: datetime, end: datetime) -> bool:
    return find_conflict(existing, start, end) is not None


def find_free(
    resource_ids: Sequence[str],
    calendar: ResourceCalendar,
    kind: ResourceKind,
    start: datetime,
    end: datetime,
) -> Optional[str]:
    """
    First resource, in caller order, with no reservation overlapping [start, end).

    No load balancing: identical input order gives identical picks.
    """
    for resource_id in resource_ids:
        if not has_conflict(calendar.reservations_for(kind, resource_id), start, end):
            return resource_id
    return None


@dataclass(frozen=True)
class ConflictReport:
    has_conflict: bool
    resource_kind: Optional[ResourceKind] = None
    resource_id: Optional[str] = None
    blocking: Optional[Reservation] = None


def check_assignment(
    calendar: ResourceCalendar,
    start: datetime,
    end: datetime,
    machine_ids: Sequence[str] = (),
    operator_ids: Sequence[str] = (),
) -> ConflictReport:
    """Check a manual assignment: machines first, then operators; report the first clash."""
    for kind, ids in ((ResourceKind.MACHINE, machine_ids), (ResourceKind.OPERATOR, operator_ids)):
        for resource_id in ids:
            blocking = find_conflict(calendar.reservations_for(kind, resource_id), start, end)
            if blocking is not None:
                return ConflictReport(True, kind, resource_id, blocking)
    return ConflictReport(False)
