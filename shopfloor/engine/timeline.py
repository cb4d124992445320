"""
Gantt timeline layout.

Maps project -> item -> task trees onto day buckets of a day/week/month view
in the display timezone:

1. Viewport filter: keep tasks with a slot overlapping the visible range
   (half-open), then prune empty items and projects.
2. Position: turn a task's displayed slot into a bucket span and pixels.
3. Row assembly: walk the filtered tree in document order, descending only
   into expanded projects and items.

Everything here is a pure function of its inputs.
"""

import calendar as _calendar
import logging
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from shopfloor.engine.conflicts import intervals_overlap
from shopfloor.models.entities import (
    ExpansionState,
    Item,
    MachineSummary,
    OperatorSummary,
    Project,
    RowKind,
    Task,
    TimeSlot,
    ViewMode,
    ViewWindow,
)
from shopfloor.utils.errors import InvalidViewWindowError
from shopfloor.utils.timezone import TimezoneConverter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LayoutConfig:
    day_widths: Dict[ViewMode, int] = field(
        default_factory=lambda: {ViewMode.DAY: 960, ViewMode.WEEK: 120, ViewMode.MONTH: 40}
    )
    border_inset: int = 2
    project_row_height: int = 40
    item_row_height: int = 36
    task_row_height: int = 32

    def day_width(self, mode: ViewMode) -> int:
        return self.day_widths[mode]


@dataclass(frozen=True)
class BarPosition:
    left: int
    width: int
    start_index: int
    end_index: int
    duration_days: int


@dataclass(frozen=True)
class Row:
    kind: RowKind
    id: str
    label: str
    level: int
    height: int
    parent_id: Optional[str] = None
    expanded: bool = False
    position: Optional[BarPosition] = None
    status: Optional[str] = None
    slot_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    machines: Tuple[MachineSummary, ...] = ()
    operators: Tuple[OperatorSummary, ...] = ()


@dataclass(frozen=True)
class Layout:
    window: ViewWindow
    days: List[date]
    rows: List[Row]
    day_width: int
    visible_task_count: int

    @property
    def total_width(self) -> int:
        return len(self.days) * self.day_width

    @property
    def empty(self) -> bool:
        """True when nothing is scheduled in the visible range."""
        return self.visible_task_count == 0


def view_days(window: ViewWindow) -> List[date]:
    """Day buckets for a view window; anchor is already a display-timezone date."""
    anchor = window.anchor
    if window.mode == ViewMode.DAY:
        days = [anchor]
    elif window.mode == ViewMode.WEEK:
        sunday = anchor - timedelta(days=(anchor.weekday() + 1) % 7)
        days = [sunday + timedelta(days=i) for i in range(7)]
    elif window.mode == ViewMode.MONTH:
        count = _calendar.monthrange(anchor.year, anchor.month)[1]
        days = [date(anchor.year, anchor.month, d) for d in range(1, count + 1)]
    else:
        raise InvalidViewWindowError(f"unknown view mode {window.mode!r}")
    if not days:
        raise InvalidViewWindowError(f"view window {window} produced no days")
    return days


class DayBuckets:
    """Display-local day boundaries for a list of consecutive days."""

    def __init__(self, days: Sequence[date], converter: TimezoneConverter):
        if not days:
            raise InvalidViewWindowError("no day buckets")
        self.days = list(days)
        self.starts = [converter.day_start(d) for d in self.days]
        self.view_start = self.starts[0]
        self.view_end = converter.day_end(self.days[-1])

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return intervals_overlap(start, end, self.view_start, self.view_end)

    def start_index(self, instant: datetime) -> int:
        """Bucket containing ``instant``; the first bucket when it precedes the view."""
        return self._clamp(bisect_right(self.starts, instant) - 1)

    def end_index(self, instant: datetime) -> int:
        """Bucket containing the exclusive end; the last bucket when it runs past the view."""
        return self._clamp(bisect_left(self.starts, instant) - 1)

    def _clamp(self, index: int) -> int:
        return max(0, min(index, len(self.starts) - 1))


def displayed_slot(task: Task, buckets: DayBuckets) -> Optional[Tuple[TimeSlot, datetime, datetime]]:
    """
    Slot drawn for a task: the first primary slot overlapping the view, else
    the first overlapping slot. Any number of primary slots is tolerated.
    """
    overlapping = [
        (slot, start, end)
        for slot, start, end in sorted(task.intervals(), key=lambda x: x[1])
        if end > start and buckets.overlaps(start, end)
    ]
    if not overlapping:
        return None
    for entry in overlapping:
        if entry[0].is_primary:
            return entry
    return overlapping[0]


def position_bar(
    start: Optional[datetime],
    end: Optional[datetime],
    buckets: DayBuckets,
    day_width: int,
    border_inset: int,
) -> Optional[BarPosition]:
    if start is None or end is None or end <= start:
        return None
    start_index = buckets.start_index(start)
    end_index = buckets.end_index(end)
    duration_days = max(1, end_index - start_index + 1)
    return BarPosition(
        left=start_index * day_width,
        width=duration_days * day_width - border_inset,
        start_index=start_index,
        end_index=end_index,
        duration_days=duration_days,
    )


def filter_visible(projects: Sequence[Project], buckets: DayBuckets) -> List[Project]:
    """Keep tasks overlapping the view; drop items and projects left empty."""
    kept_projects: List[Project] = []
    for project in projects:
        kept_items: List[Item] = []
        for item in project.items:
            tasks = tuple(t for t in item.tasks if displayed_slot(t, buckets) is not None)
            if tasks:
                kept_items.append(Item(id=item.id, name=item.name, tasks=tasks, status=item.status))
        if kept_items:
            kept_projects.append(
                Project(
                    id=project.id,
                    name=project.name,
                    items=tuple(kept_items),
                    status=project.status,
                    color=project.color,
                )
            )
    return kept_projects


def compute_layout(
    projects: Sequence[Project],
    window: ViewWindow,
    expansion: ExpansionState,
    converter: TimezoneConverter,
    config: Optional[LayoutConfig] = None,
) -> Layout:
    config = config or LayoutConfig()
    days = view_days(window)
    buckets = DayBuckets(days, converter)
    day_width = config.day_width(window.mode)

    visible = filter_visible(projects, buckets)
    visible_tasks = sum(len(i.tasks) for p in visible for i in p.items)

    rows: List[Row] = []
    for project in visible:
        project_open = project.id in expansion.expanded_project_ids
        rows.append(Row(
            kind=RowKind.PROJECT,
            id=project.id,
            label=project.name,
            level=0,
            height=config.project_row_height,
            expanded=project_open,
            status=project.status,
        ))
        if not project_open:
            continue
        for item in project.items:
            item_open = item.id in expansion.expanded_item_ids
            rows.append(Row(
                kind=RowKind.ITEM,
                id=item.id,
                label=item.name,
                level=1,
                height=config.item_row_height,
                parent_id=project.id,
                expanded=item_open,
                status=item.status,
            ))
            if not item_open:
                continue
            for task in item.tasks:
                rows.append(_task_row(task, item.id, buckets, day_width, config))

    logger.debug(
        f"Layout {window.mode.value}@{window.anchor}: {len(days)} days, "
        f"{visible_tasks} visible task(s), {len(rows)} row(s)"
    )
    return Layout(window=window, days=days, rows=rows, day_width=day_width, visible_task_count=visible_tasks)


def _task_row(task: Task, item_id: str, buckets: DayBuckets, day_width: int, config: LayoutConfig) -> Row:
    shown = displayed_slot(task, buckets)
    slot, start, end = shown if shown else (None, None, None)
    return Row(
        kind=RowKind.TASK,
        id=task.id,
        label=task.title,
        level=2,
        height=config.task_row_height,
        parent_id=item_id,
        position=position_bar(start, end, buckets, day_width, config.border_inset),
        status=task.status.value,
        slot_id=slot.id if slot else None,
        start=start,
        end=end,
        machines=task.machines,
        operators=task.operators,
    )
