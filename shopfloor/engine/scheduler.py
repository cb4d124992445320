"""
First-Fit Resource Scheduler

Assigns one machine and one operator to a task by scanning a bounded horizon
of display-timezone workdays for the first start time at which both resource
types have a free member.

Search space:
    days   = search_horizon_days, starting tomorrow (display timezone)
    starts = workday_start_hour .. workday_end_hour - ceil(duration / 60),
             step slot_granularity_minutes

Time Complexity: O(d * s * (m + o) * r) worst case where:
    d = horizon days, s = starts per day,
    m, o = machine / operator pool sizes,
    r = reservations per resource

Key properties:
- First fit: the earliest candidate with a free pair wins; no best-fit search
- Pool order decides which free machine/operator is taken
- Every commit is added to the calendar before the next task is considered
- An exhausted horizon is an UNSCHEDULED outcome, not an error
"""

import logging
import math
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

from shopfloor.engine.calendar import ResourceCalendar, reservations_for_task
from shopfloor.engine.conflicts import find_free, has_conflict
from shopfloor.models.entities import Reservation, ResourceKind, Task, TaskStatus, TimeSlot
from shopfloor.utils.errors import ConcurrentConflictError, MalformedIntervalError
from shopfloor.utils.timezone import TimezoneConverter

logger = logging.getLogger(__name__)


class ScheduleStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    UNSCHEDULED = "UNSCHEDULED"


@dataclass(frozen=True)
class SchedulerConfig:
    search_horizon_days: int = 14
    workday_start_hour: int = 8
    workday_end_hour: int = 17
    slot_granularity_minutes: int = 30

    def __post_init__(self):
        if self.search_horizon_days < 1:
            raise ValueError("search_horizon_days must be at least 1")
        if not 0 <= self.workday_start_hour < self.workday_end_hour <= 24:
            raise ValueError("workday hours must satisfy 0 <= start < end <= 24")
        if self.slot_granularity_minutes < 1:
            raise ValueError("slot_granularity_minutes must be positive")

    @classmethod
    def from_settings(cls, settings) -> "SchedulerConfig":
        return cls(
            search_horizon_days=settings.search_horizon_days,
            workday_start_hour=settings.workday_start_hour,
            workday_end_hour=settings.workday_end_hour,
            slot_granularity_minutes=settings.slot_granularity_minutes,
        )


@dataclass(frozen=True)
class ScheduleOutcome:
    task: Task
    status: ScheduleStatus
    slot: Optional[TimeSlot] = None
    machine_id: Optional[str] = None
    operator_id: Optional[str] = None
    candidates_examined: int = 0
    retries: int = 0

    @property
    def scheduled(self) -> bool:
        return self.status == ScheduleStatus.SCHEDULED


# commit(task, start, end, machine_id, operator_id) -> TimeSlot; may raise ConcurrentConflictError
Committer = Callable[[Task, datetime, datetime, str, str], TimeSlot]


def in_memory_commit(task: Task, start: datetime, end: datetime, machine_id: str, operator_id: str) -> TimeSlot:
    """Default committer: mint the slot; nothing outside this pass can race it."""
    if end <= start:
        raise MalformedIntervalError(start, end, task.id)
    return TimeSlot(id=str(uuid.uuid4()), task_id=task.id, start=start, end=end, is_primary=True)


class ResourceScheduler:
    def __init__(
        self,
        converter: TimezoneConverter,
        config: Optional[SchedulerConfig] = None,
        commit: Optional[Committer] = None,
    ):
        self.converter = converter
        self.config = config or SchedulerConfig()
        self.commit = commit or in_memory_commit

    def start_minutes(self, duration_minutes: int) -> List[int]:
        """Candidate start offsets (minutes after display midnight) for one workday."""
        cfg = self.config
        first = cfg.workday_start_hour * 60
        last = (cfg.workday_end_hour - math.ceil(duration_minutes / 60)) * 60
        return list(range(first, last + 1, cfg.slot_granularity_minutes))

    def candidate_days(self, today: date) -> List[date]:
        tomorrow = today + timedelta(days=1)
        return [tomorrow + timedelta(days=i) for i in range(self.config.search_horizon_days)]

    def candidates(self, duration_minutes: int, today: date) -> Iterator[Tuple[datetime, datetime]]:
        """(start, end) UTC pairs in scan order: day by day, earliest start first."""
        minutes = self.start_minutes(duration_minutes)
        for day in self.candidate_days(today):
            for minute in minutes:
                start = self.converter.at(day, minute)
                yield start, start + timedelta(minutes=duration_minutes)

    def today(self, now: Optional[datetime] = None) -> date:
        return self.converter.display_date(now or datetime.now(timezone.utc))

    def schedule_task(
        self,
        task: Task,
        machine_pool: Sequence[str],
        operator_pool: Sequence[str],
        calendar: ResourceCalendar,
        today: Optional[date] = None,
    ) -> ScheduleOutcome:
        """
        Find and commit the first slot where a machine and an operator are both free.

        The task's own existing reservations are released first (reschedule =
        delete + recreate). On success the calendar holds the new reservations;
        on failure the task comes back PENDING with no slots.

        A ConcurrentConflictError from the committer means another writer took
        the interval: its reservations are folded into the calendar and the
        scan resumes at the contested candidate.
        """
        today = today or self.today()
        calendar.release_task(task.id)

        if task.duration_minutes <= 0:
            logger.warning(f"Task {task.id} has non-positive duration {task.duration_minutes}; not schedulable")
            return self._unscheduled(task, 0, 0)

        examined = 0
        retries = 0
        pending: Optional[Tuple[datetime, datetime]] = None
        scan = self.candidates(task.duration_minutes, today)

        while True:
            if pending is None:
                pending = next(scan, None)
                if pending is None:
                    break
                examined += 1
            start, end = pending

            machine_id = find_free(machine_pool, calendar, ResourceKind.MACHINE, start, end)
            operator_id = find_free(operator_pool, calendar, ResourceKind.OPERATOR, start, end) if machine_id else None
            if machine_id is None or operator_id is None:
                pending = None
                continue

            try:
                slot = self.commit(task, start, end, machine_id, operator_id)
            except ConcurrentConflictError as exc:
                retries += 1
                logger.info(f"Commit for task {task.id} at {start.isoformat()} lost a race; retrying forward")
                for reservation in exc.reservations:
                    calendar.reserve(reservation)
                # Re-check the same candidate only if the picked pair is now blocked
                picked = [
                    r for r in exc.reservations
                    if (r.resource_kind, r.resource_id) in
                    ((ResourceKind.MACHINE, machine_id), (ResourceKind.OPERATOR, operator_id))
                ]
                if not has_conflict(picked, start, end):
                    pending = None
                continue

            scheduled = replace(
                task,
                status=TaskStatus.SCHEDULED,
                assigned_machine_ids=frozenset({machine_id}),
                assigned_operator_ids=frozenset({operator_id}),
                time_slots=(slot,),
            )
            for reservation in reservations_for_task(scheduled):
                calendar.reserve(reservation)

            logger.debug(
                f"Task {task.id} scheduled {slot.start.isoformat()} -> {slot.end.isoformat()} "
                f"on machine={machine_id} operator={operator_id}"
            )
            return ScheduleOutcome(
                task=scheduled,
                status=ScheduleStatus.SCHEDULED,
                slot=slot,
                machine_id=machine_id,
                operator_id=operator_id,
                candidates_examined=examined,
                retries=retries,
            )

        logger.warning(
            f"Task {task.id} could not be scheduled within {self.config.search_horizon_days} day(s) "
            f"({examined} candidates examined)"
        )
        return self._unscheduled(task, examined, retries)

    def schedule_batch(
        self,
        tasks: Iterable[Task],
        machine_pool: Sequence[str],
        operator_pool: Sequence[str],
        calendar: ResourceCalendar,
        today: Optional[date] = None,
    ) -> List[ScheduleOutcome]:
        """Schedule tasks one at a time on a shared calendar; one failure never aborts the batch."""
        today = today or self.today()
        outcomes = [self.schedule_task(t, machine_pool, operator_pool, calendar, today) for t in tasks]
        done = sum(1 for o in outcomes if o.scheduled)
        logger.info(f"Batch scheduled {done}/{len(outcomes)} task(s)")
        return outcomes

    @staticmethod
    def _unscheduled(task: Task, examined: int, retries: int) -> ScheduleOutcome:
        pending = replace(task, status=TaskStatus.PENDING, time_slots=())
        return ScheduleOutcome(
            task=pending,
            status=ScheduleStatus.UNSCHEDULED,
            candidates_examined=examined,
            retries=retries,
        )


def committed_reservations(outcomes: Iterable[ScheduleOutcome]) -> List[Reservation]:
    """Reservations created by a batch; used to audit the no-double-booking invariant."""
    out: List[Reservation] = []
    for outcome in outcomes:
        if outcome.scheduled:
            out.extend(reservations_for_task(outcome.task))
    return out
