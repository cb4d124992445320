from typing import List, Optional


class SchedulingError(Exception):
    """Base class for scheduling and timeline errors."""


class MalformedIntervalError(SchedulingError):
    """A time slot whose end is not after its start."""

    def __init__(self, start, end, task_id: Optional[str] = None):
        self.start = start
        self.end = end
        self.task_id = task_id
        owner = f" for task {task_id}" if task_id else ""
        super().__init__(f"time slot{owner} must end after it starts (start={start}, end={end})")


class ConcurrentConflictError(SchedulingError):
    """
    A commit lost a race: a conflicting reservation was written after the
    scheduler read its calendar. Carries the reservations that now block the
    contested interval so the caller can fold them in and search forward.
    """

    def __init__(self, reservations: Optional[List] = None, message: str = "resource was booked concurrently"):
        self.reservations = list(reservations or [])
        super().__init__(message)


class InvalidViewWindowError(SchedulingError):
    """A view window that yields no day buckets."""


class EntityNotFoundError(SchedulingError):
    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class TaskNotSchedulableError(SchedulingError):
    """A task that has started or finished cannot be auto-scheduled again."""

    def __init__(self, task_id: str, status: str):
        self.task_id = task_id
        self.status = status
        super().__init__(f"task {task_id} is {status} and cannot be rescheduled")


class ResourceConflictError(SchedulingError):
    """
    A manual time slot would double-book one of the task's machines or
    operators. ``blocking`` is the existing reservation it collides with.
    """

    def __init__(self, task_id: str, blocking):
        self.task_id = task_id
        self.blocking = blocking
        self.resource_kind = blocking.resource_kind
        self.resource_id = blocking.resource_id
        super().__init__(
            f"{blocking.resource_kind.value} {blocking.resource_id} is already assigned to task "
            f"{blocking.task_id} from {blocking.start.isoformat()} to {blocking.end.isoformat()}"
        )


class TimeSlotOverlapError(SchedulingError):
    """Slots of the same task may not overlap each other."""

    def __init__(self, task_id: str, slot_id: str):
        self.task_id = task_id
        self.slot_id = slot_id
        super().__init__(f"time slot overlaps slot {slot_id} of the same task {task_id}")
