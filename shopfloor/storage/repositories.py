import logging
import uuid
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from shopfloor.engine.calendar import ResourceCalendar
from shopfloor.engine.conflicts import intervals_overlap
from shopfloor.models.entities import (
    Item,
    MachineSummary,
    OperatorSummary,
    Project,
    Reservation,
    ResourceKind,
    Task,
    TaskStatus,
    TimeSlot,
    as_utc,
)
from shopfloor.storage.database import (
    ItemModel,
    MachineModel,
    OperatorModel,
    ProjectModel,
    TaskMachineModel,
    TaskModel,
    TaskOperatorModel,
    TimeSlotModel,
)
from shopfloor.utils.errors import (
    ConcurrentConflictError,
    EntityNotFoundError,
    MalformedIntervalError,
    ResourceConflictError,
    TimeSlotOverlapError,
)

logger = logging.getLogger(__name__)


class MachineRepository:
    def __init__(self, db: Session):
        self.db = db

    def list_ids(self) -> List[str]:
        """Machine pool in a stable order (name, then id)."""
        rows = self.db.query(MachineModel.id).order_by(MachineModel.name, MachineModel.id).all()
        return [r.id for r in rows]

    def save(self, machine_id: str, name: str, type: Optional[str] = None) -> None:
        existing = self.db.query(MachineModel).filter(MachineModel.id == machine_id).first()
        if existing:
            existing.name = name
            existing.type = type
        else:
            self.db.add(MachineModel(id=machine_id, name=name, type=type))
        self.db.commit()


class OperatorRepository:
    def __init__(self, db: Session):
        self.db = db

    def list_ids(self) -> List[str]:
        rows = self.db.query(OperatorModel.id).order_by(OperatorModel.name, OperatorModel.id).all()
        return [r.id for r in rows]

    def save(self, operator_id: str, name: str, color: Optional[str] = None) -> None:
        existing = self.db.query(OperatorModel).filter(OperatorModel.id == operator_id).first()
        if existing:
            existing.name = name
            existing.color = color
        else:
            self.db.add(OperatorModel(id=operator_id, name=name, color=color))
        self.db.commit()


class TaskRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, task_id: str) -> Optional[Task]:
        model = self.db.query(TaskModel).filter(TaskModel.id == task_id).first()
        if not model:
            return None
        return self._hydrate([model])[0]

    def require(self, task_id: str) -> Task:
        task = self.get_by_id(task_id)
        if task is None:
            raise EntityNotFoundError("task", task_id)
        return task

    def list_for_item(self, item_id: str) -> List[Task]:
        models = (
            self.db.query(TaskModel)
            .filter(TaskModel.item_id == item_id)
            .order_by(TaskModel.created_at, TaskModel.id)
            .all()
        )
        return self._hydrate(models)

    def list_pending(self) -> List[Task]:
        models = (
            self.db.query(TaskModel)
            .filter(TaskModel.status == TaskStatus.PENDING.value)
            .order_by(TaskModel.created_at, TaskModel.id)
            .all()
        )
        return self._hydrate(models)

    def list_scheduled(self) -> List[Task]:
        """Every task owning at least one time slot."""
        task_ids = select(TimeSlotModel.task_id).distinct()
        models = self.db.query(TaskModel).filter(TaskModel.id.in_(task_ids)).all()
        return self._hydrate(models)

    def list_scheduled_between(self, start: datetime, end: datetime) -> List[Task]:
        """
        Tasks with at least one slot starting in [start, end), oldest first.

        Every slot of a matching task is returned, not only the ones in range,
        along with the assigned machine and operator summaries.
        """
        start, end = as_utc(start), as_utc(end)
        task_ids = (
            select(TimeSlotModel.task_id)
            .where(TimeSlotModel.start >= start, TimeSlotModel.start < end)
            .distinct()
        )
        models = (
            self.db.query(TaskModel)
            .filter(TaskModel.id.in_(task_ids))
            .order_by(TaskModel.created_at, TaskModel.id)
            .all()
        )
        return _with_resources(self.db, self._hydrate(models))

    def save(self, task: Task) -> None:
        """Upsert a task with its assignments. Time slots go through TimeSlotRepository."""
        existing = self.db.query(TaskModel).filter(TaskModel.id == task.id).first()
        if existing:
            existing.title = task.title
            existing.duration_minutes = task.duration_minutes
            existing.status = task.status.value
            existing.item_id = task.item_id
        else:
            self.db.add(TaskModel(
                id=task.id,
                item_id=task.item_id,
                title=task.title,
                duration_minutes=task.duration_minutes,
                status=task.status.value,
            ))
        _replace_assignments(self.db, task.id, task.assigned_machine_ids, task.assigned_operator_ids)
        self.db.commit()

    def _hydrate(self, models: Sequence[TaskModel]) -> List[Task]:
        if not models:
            return []
        ids = [m.id for m in models]
        slots: Dict[str, List[TimeSlot]] = defaultdict(list)
        for s in (
            self.db.query(TimeSlotModel)
            .filter(TimeSlotModel.task_id.in_(ids))
            .order_by(TimeSlotModel.start, TimeSlotModel.id)
        ):
            slots[s.task_id].append(_slot_to_domain(s))
        machines: Dict[str, Set[str]] = defaultdict(set)
        for link in self.db.query(TaskMachineModel).filter(TaskMachineModel.task_id.in_(ids)):
            machines[link.task_id].add(link.machine_id)
        operators: Dict[str, Set[str]] = defaultdict(set)
        for link in self.db.query(TaskOperatorModel).filter(TaskOperatorModel.task_id.in_(ids)):
            operators[link.task_id].add(link.operator_id)
        return [
            Task(
                id=m.id,
                title=m.title,
                duration_minutes=m.duration_minutes,
                status=TaskStatus(m.status),
                assigned_machine_ids=frozenset(machines[m.id]),
                assigned_operator_ids=frozenset(operators[m.id]),
                time_slots=tuple(slots[m.id]),
                item_id=m.item_id,
            )
            for m in models
        ]


class ProjectRepository:
    def __init__(self, db: Session):
        self.db = db

    def save(self, project_id: str, name: str, status: str = "ACTIVE", color: Optional[str] = None) -> None:
        existing = self.db.query(ProjectModel).filter(ProjectModel.id == project_id).first()
        if existing:
            existing.name = name
            existing.status = status
            existing.color = color
        else:
            self.db.add(ProjectModel(id=project_id, name=name, status=status, color=color))
        self.db.commit()

    def save_item(self, item_id: str, project_id: str, name: str, status: str = "ACTIVE") -> None:
        existing = self.db.query(ItemModel).filter(ItemModel.id == item_id).first()
        if existing:
            existing.project_id = project_id
            existing.name = name
            existing.status = status
        else:
            self.db.add(ItemModel(id=item_id, project_id=project_id, name=name, status=status))
        self.db.commit()

    def fetch_tree(self, statuses: Optional[Iterable[str]] = None) -> List[Project]:
        """
        Projects (by name) -> items -> tasks that own at least one time slot,
        each task carrying its machine and operator summaries.

        Items and projects left without scheduled tasks are dropped, as the
        timeline has nothing to draw for them.
        """
        query = self.db.query(ProjectModel)
        if statuses:
            query = query.filter(ProjectModel.status.in_(list(statuses)))
        projects = query.order_by(ProjectModel.name, ProjectModel.id).all()
        if not projects:
            return []

        items_by_project: Dict[str, List[ItemModel]] = defaultdict(list)
        for item in (
            self.db.query(ItemModel)
            .filter(ItemModel.project_id.in_([p.id for p in projects]))
            .order_by(ItemModel.created_at, ItemModel.id)
        ):
            items_by_project[item.project_id].append(item)

        item_ids = [i.id for items in items_by_project.values() for i in items]
        scheduled_ids = select(TimeSlotModel.task_id).distinct()
        task_models = (
            self.db.query(TaskModel)
            .filter(TaskModel.item_id.in_(item_ids), TaskModel.id.in_(scheduled_ids))
            .order_by(TaskModel.created_at, TaskModel.id)
            .all()
        )
        tasks_by_item: Dict[str, List[Task]] = defaultdict(list)
        for task in _with_resources(self.db, TaskRepository(self.db)._hydrate(task_models)):
            tasks_by_item[task.item_id].append(task)

        tree: List[Project] = []
        for p in projects:
            items = tuple(
                Item(id=i.id, name=i.name, status=i.status, tasks=tuple(tasks_by_item[i.id]))
                for i in items_by_project[p.id]
                if tasks_by_item[i.id]
            )
            if items:
                tree.append(Project(id=p.id, name=p.name, status=p.status, color=p.color, items=items))
        return tree


class TimeSlotRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        task_id: str,
        start: datetime,
        end: Optional[datetime] = None,
        is_primary: bool = False,
    ) -> TimeSlot:
        """
        Add a slot to a task.

        Rejected when the resolved end is not after start, when the slot
        overlaps another slot of the same task (TimeSlotOverlapError) or when
        one of the task's machines or operators is already booked by another
        task for part of it (ResourceConflictError, machines checked first).
        """
        task = self.db.query(TaskModel).filter(TaskModel.id == task_id).first()
        if not task:
            raise EntityNotFoundError("task", task_id)
        start = as_utc(start)
        end = as_utc(end) if end is not None else None
        resolved_end = end if end is not None else start + timedelta(minutes=task.duration_minutes)
        if resolved_end <= start:
            raise MalformedIntervalError(start, resolved_end, task_id)

        for existing in self.list_for_task(task_id):
            if intervals_overlap(existing.start, existing.resolved_end(task.duration_minutes), start, resolved_end):
                raise TimeSlotOverlapError(task_id, existing.id)

        resources = [
            (ResourceKind.MACHINE, link.machine_id)
            for link in self.db.query(TaskMachineModel)
            .filter(TaskMachineModel.task_id == task_id)
            .order_by(TaskMachineModel.machine_id)
        ] + [
            (ResourceKind.OPERATOR, link.operator_id)
            for link in self.db.query(TaskOperatorModel)
            .filter(TaskOperatorModel.task_id == task_id)
            .order_by(TaskOperatorModel.operator_id)
        ]
        clashes = ScheduleRepository(self.db).overlapping_reservations(
            resources, start, resolved_end, exclude_task_id=task_id
        )
        if clashes:
            raise ResourceConflictError(task_id, clashes[0])

        model = TimeSlotModel(id=str(uuid.uuid4()), task_id=task_id, start=start, end=end, is_primary=is_primary)
        self.db.add(model)
        if task.status == TaskStatus.PENDING.value:
            task.status = TaskStatus.SCHEDULED.value
        self.db.commit()
        logger.info(f"Created time slot {model.id} for task {task_id}")
        return TimeSlot(id=model.id, task_id=task_id, start=start, end=end, is_primary=is_primary)

    def delete(self, slot_id: str) -> None:
        """Remove a slot; a task left without slots goes back to PENDING."""
        model = self.db.query(TimeSlotModel).filter(TimeSlotModel.id == slot_id).first()
        if not model:
            raise EntityNotFoundError("time slot", slot_id)
        task_id = model.task_id
        self.db.delete(model)
        self.db.flush()
        remaining = self.db.query(TimeSlotModel).filter(TimeSlotModel.task_id == task_id).count()
        if remaining == 0:
            task = self.db.query(TaskModel).filter(TaskModel.id == task_id).first()
            if task is not None:
                task.status = TaskStatus.PENDING.value
        self.db.commit()
        logger.info(f"Deleted time slot {slot_id} of task {task_id}")

    def list_for_task(self, task_id: str) -> List[TimeSlot]:
        models = (
            self.db.query(TimeSlotModel)
            .filter(TimeSlotModel.task_id == task_id)
            .order_by(TimeSlotModel.start, TimeSlotModel.id)
            .all()
        )
        return [_slot_to_domain(m) for m in models]


class ScheduleRepository:
    def __init__(self, db: Session):
        self.db = db

    def load_calendar(self) -> ResourceCalendar:
        return ResourceCalendar.from_tasks(TaskRepository(self.db).list_scheduled())

    def overlapping_reservations(
        self,
        resources: Iterable[Tuple[ResourceKind, str]],
        start: datetime,
        end: datetime,
        exclude_task_id: Optional[str] = None,
    ) -> List[Reservation]:
        """Reservations currently in the store that overlap [start, end) on the given resources."""
        found: List[Reservation] = []
        for kind, resource_id in resources:
            if kind == ResourceKind.MACHINE:
                link, column = TaskMachineModel, TaskMachineModel.machine_id
            else:
                link, column = TaskOperatorModel, TaskOperatorModel.operator_id
            query = (
                self.db.query(TimeSlotModel, TaskModel.duration_minutes)
                .join(TaskModel, TaskModel.id == TimeSlotModel.task_id)
                .join(link, link.task_id == TimeSlotModel.task_id)
                .filter(column == resource_id, TimeSlotModel.start < end)
            )
            if exclude_task_id:
                query = query.filter(TimeSlotModel.task_id != exclude_task_id)
            for slot_model, duration in query:
                slot = _slot_to_domain(slot_model)
                slot_end = slot.resolved_end(duration)
                if intervals_overlap(slot.start, slot_end, start, end):
                    found.append(Reservation(kind, resource_id, slot.start, slot_end, slot.task_id))
        return found

    def commit_schedule(
        self,
        task_id: str,
        start: datetime,
        end: datetime,
        machine_id: str,
        operator_id: str,
    ) -> TimeSlot:
        """
        Replace a task's slots and assignments with one primary slot on one
        machine and one operator, in a single transaction.

        The machine and operator rows are locked and the interval re-validated
        against what is stored now; a clash rolls back and raises
        ConcurrentConflictError with the blocking reservations.
        """
        start, end = as_utc(start), as_utc(end)
        if end <= start:
            raise MalformedIntervalError(start, end, task_id)
        try:
            task = self.db.query(TaskModel).filter(TaskModel.id == task_id).with_for_update().first()
            if not task:
                raise EntityNotFoundError("task", task_id)
            self.db.query(MachineModel).filter(MachineModel.id == machine_id).with_for_update().first()
            self.db.query(OperatorModel).filter(OperatorModel.id == operator_id).with_for_update().first()

            clashes = self.overlapping_reservations(
                [(ResourceKind.MACHINE, machine_id), (ResourceKind.OPERATOR, operator_id)],
                start,
                end,
                exclude_task_id=task_id,
            )
            if clashes:
                self.db.rollback()
                raise ConcurrentConflictError(clashes)

            self.db.query(TimeSlotModel).filter(TimeSlotModel.task_id == task_id).delete()
            _replace_assignments(self.db, task_id, [machine_id], [operator_id])
            slot_id = str(uuid.uuid4())
            self.db.add(TimeSlotModel(id=slot_id, task_id=task_id, start=start, end=end, is_primary=True))
            task.status = TaskStatus.SCHEDULED.value
            self.db.commit()
        except ConcurrentConflictError:
            raise
        except Exception:
            self.db.rollback()
            raise
        return TimeSlot(id=slot_id, task_id=task_id, start=start, end=end, is_primary=True)

    def clear_schedule(self, task_id: str) -> int:
        """Delete every slot of a task and return it to PENDING; returns the number of slots removed."""
        task = self.db.query(TaskModel).filter(TaskModel.id == task_id).first()
        if not task:
            raise EntityNotFoundError("task", task_id)
        removed = self.db.query(TimeSlotModel).filter(TimeSlotModel.task_id == task_id).delete()
        task.status = TaskStatus.PENDING.value
        self.db.commit()
        return removed


def _replace_assignments(db: Session, task_id: str, machine_ids: Iterable[str], operator_ids: Iterable[str]) -> None:
    db.query(TaskMachineModel).filter(TaskMachineModel.task_id == task_id).delete()
    db.query(TaskOperatorModel).filter(TaskOperatorModel.task_id == task_id).delete()
    for machine_id in sorted(machine_ids):
        db.add(TaskMachineModel(task_id=task_id, machine_id=machine_id))
    for operator_id in sorted(operator_ids):
        db.add(TaskOperatorModel(task_id=task_id, operator_id=operator_id))


def _slot_to_domain(model: TimeSlotModel) -> TimeSlot:
    return TimeSlot(
        id=model.id,
        task_id=model.task_id,
        start=as_utc(model.start),
        end=as_utc(model.end) if model.end is not None else None,
        is_primary=bool(model.is_primary),
    )


def _with_resources(db: Session, tasks: List[Task]) -> List[Task]:
    """Attach machine and operator summaries (ordered by name) to hydrated tasks."""
    if not tasks:
        return tasks
    ids = [t.id for t in tasks]
    machines: Dict[str, List[MachineSummary]] = defaultdict(list)
    for link, machine in (
        db.query(TaskMachineModel, MachineModel)
        .join(MachineModel, MachineModel.id == TaskMachineModel.machine_id)
        .filter(TaskMachineModel.task_id.in_(ids))
        .order_by(MachineModel.name, MachineModel.id)
    ):
        machines[link.task_id].append(MachineSummary(id=machine.id, name=machine.name, type=machine.type))
    operators: Dict[str, List[OperatorSummary]] = defaultdict(list)
    for link, operator in (
        db.query(TaskOperatorModel, OperatorModel)
        .join(OperatorModel, OperatorModel.id == TaskOperatorModel.operator_id)
        .filter(TaskOperatorModel.task_id.in_(ids))
        .order_by(OperatorModel.name, OperatorModel.id)
    ):
        operators[link.task_id].append(OperatorSummary(id=operator.id, name=operator.name, color=operator.color))
    return [replace(t, machines=tuple(machines[t.id]), operators=tuple(operators[t.id])) for t in tasks]
