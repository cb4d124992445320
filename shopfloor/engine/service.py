import logging
import threading
from datetime import date, datetime
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from shopfloor.config.settings import Settings, get_settings
from shopfloor.engine.conflicts import ConflictReport, check_assignment
from shopfloor.engine.hierarchy import expand_all_items, expand_all_projects, prune_orphans
from shopfloor.engine.scheduler import ResourceScheduler, ScheduleOutcome, SchedulerConfig
from shopfloor.engine.timeline import Layout, LayoutConfig, compute_layout
from shopfloor.models.entities import ExpansionState, Task, TaskStatus, TimeSlot, ViewWindow
from shopfloor.storage.repositories import (
    MachineRepository,
    OperatorRepository,
    ProjectRepository,
    ScheduleRepository,
    TaskRepository,
)
from shopfloor.utils.errors import TaskNotSchedulableError
from shopfloor.utils.timezone import TimezoneConverter, get_converter

logger = logging.getLogger(__name__)

# One scheduling pass at a time per process; the store transaction covers other processes
_schedule_lock = threading.Lock()

NOT_RESCHEDULABLE = {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED}


class SchedulingService:
    """Wires the entity store to the scheduler and the timeline for one DB session."""

    def __init__(
        self,
        db: Session,
        converter: Optional[TimezoneConverter] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.converter = converter or get_converter()
        self.tasks = TaskRepository(db)
        self.schedules = ScheduleRepository(db)
        self.scheduler = ResourceScheduler(
            self.converter,
            SchedulerConfig.from_settings(self.settings),
            commit=self._commit,
        )

    def _commit(self, task: Task, start: datetime, end: datetime, machine_id: str, operator_id: str) -> TimeSlot:
        return self.schedules.commit_schedule(task.id, start, end, machine_id, operator_id)

    def _pools(self):
        return MachineRepository(self.db).list_ids(), OperatorRepository(self.db).list_ids()

    def schedule_task(self, task_id: str, today: Optional[date] = None) -> ScheduleOutcome:
        with _schedule_lock:
            # Status is read under the lock
            task = self.tasks.require(task_id)
            if task.status in NOT_RESCHEDULABLE:
                raise TaskNotSchedulableError(task_id, task.status.value)
            machines, operators = self._pools()
            calendar = self.schedules.load_calendar()
            outcome = self.scheduler.schedule_task(task, machines, operators, calendar, today)
            self._settle_unscheduled(task, outcome)
        return outcome

    def schedule_batch(self, task_ids: Optional[Sequence[str]] = None, today: Optional[date] = None) -> List[ScheduleOutcome]:
        """Schedule the given tasks (default: every PENDING task) in order, one commit at a time."""
        with _schedule_lock:
            if task_ids is None:
                tasks = self.tasks.list_pending()
            else:
                tasks = [self.tasks.require(tid) for tid in task_ids]
            tasks = [t for t in tasks if t.status not in NOT_RESCHEDULABLE]
            machines, operators = self._pools()
            calendar = self.schedules.load_calendar()
            outcomes = self.scheduler.schedule_batch(tasks, machines, operators, calendar, today)
            for task, outcome in zip(tasks, outcomes):
                self._settle_unscheduled(task, outcome)
        return outcomes

    def unschedule_task(self, task_id: str) -> Task:
        self.tasks.require(task_id)
        removed = self.schedules.clear_schedule(task_id)
        logger.info(f"Unscheduled task {task_id} ({removed} slot(s) removed)")
        return self.tasks.require(task_id)

    def _settle_unscheduled(self, task: Task, outcome: ScheduleOutcome) -> None:
        # A failed reschedule leaves the task PENDING without slots
        if not outcome.scheduled and task.time_slots:
            self.schedules.clear_schedule(task.id)

    def check_conflicts(
        self,
        start: datetime,
        end: datetime,
        machine_ids: Sequence[str] = (),
        operator_ids: Sequence[str] = (),
        exclude_task_id: Optional[str] = None,
    ) -> ConflictReport:
        calendar = self.schedules.load_calendar()
        if exclude_task_id:
            calendar = calendar.without_task(exclude_task_id)
        return check_assignment(calendar, start, end, machine_ids, operator_ids)

    def build_layout(
        self,
        window: ViewWindow,
        expansion: ExpansionState,
        expand_all: bool = False,
        config: Optional[LayoutConfig] = None,
    ) -> Layout:
        tree = ProjectRepository(self.db).fetch_tree(self.settings.gantt_project_statuses)
        if expand_all:
            expansion = expand_all_items(expand_all_projects(expansion, tree), tree)
        expansion = prune_orphans(expansion, tree)
        return compute_layout(tree, window, expansion, self.converter, config)
