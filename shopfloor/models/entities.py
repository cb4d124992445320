from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple


class ResourceKind(str, Enum):
    MACHINE = "machine"
    OPERATOR = "operator"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    BLOCKED = "BLOCKED"


class ViewMode(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class RowKind(str, Enum):
    PROJECT = "project"
    ITEM = "item"
    TASK = "task"


def as_utc(instant: datetime) -> datetime:
    """Stored instants are UTC; naive values (e.g. read back from SQLite) are tagged as such."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


@dataclass(frozen=True)
class Reservation:
    resource_kind: ResourceKind
    resource_id: str
    start: datetime
    end: datetime
    task_id: Optional[str] = None


@dataclass(frozen=True)
class TimeSlot:
    id: str
    task_id: str
    start: datetime
    end: Optional[datetime] = None  # None: start + task duration
    is_primary: bool = False

    def resolved_end(self, duration_minutes: int) -> datetime:
        if self.end is not None:
            return self.end
        return self.start + timedelta(minutes=duration_minutes)


@dataclass(frozen=True)
class MachineSummary:
    id: str
    name: str
    type: Optional[str] = None


@dataclass(frozen=True)
class OperatorSummary:
    id: str
    name: str
    color: Optional[str] = None


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    duration_minutes: int
    status: TaskStatus = TaskStatus.PENDING
    assigned_machine_ids: FrozenSet[str] = frozenset()
    assigned_operator_ids: FrozenSet[str] = frozenset()
    time_slots: Tuple[TimeSlot, ...] = ()
    item_id: Optional[str] = None
    # Filled by the tree fetch and the scheduled-range listing
    machines: Tuple[MachineSummary, ...] = field(default=(), compare=False)
    operators: Tuple[OperatorSummary, ...] = field(default=(), compare=False)

    def intervals(self) -> List[Tuple[TimeSlot, datetime, datetime]]:
        """(slot, start, resolved end) for every slot, in slot order."""
        return [(s, s.start, s.resolved_end(self.duration_minutes)) for s in self.time_slots]

    @property
    def is_scheduled(self) -> bool:
        return bool(self.time_slots)


@dataclass(frozen=True)
class Item:
    id: str
    name: str
    tasks: Tuple[Task, ...] = ()
    status: str = "ACTIVE"


@dataclass(frozen=True)
class Project:
    id: str
    name: str
    items: Tuple[Item, ...] = ()
    status: str = "ACTIVE"
    color: Optional[str] = None


@dataclass(frozen=True)
class ViewWindow:
    mode: ViewMode
    anchor: date  # display-timezone calendar date


@dataclass(frozen=True)
class ExpansionState:
    expanded_project_ids: FrozenSet[str] = field(default_factory=frozenset)
    expanded_item_ids: FrozenSet[str] = field(default_factory=frozenset)
