from datetime import date, datetime, timedelta
from typing import List, Optional
import logging

from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.orm import Session

from shopfloor.engine.scheduler import ScheduleOutcome, ScheduleStatus
from shopfloor.engine.service import SchedulingService
from shopfloor.engine.timeline import Layout, Row
from shopfloor.models.entities import (
    ExpansionState,
    MachineSummary,
    OperatorSummary,
    RowKind,
    Task,
    TimeSlot,
    ViewMode,
    ViewWindow,
)
from shopfloor.storage.database import get_db
from shopfloor.storage.repositories import TaskRepository, TimeSlotRepository
from shopfloor.utils.errors import (
    EntityNotFoundError,
    MalformedIntervalError,
    ResourceConflictError,
    TaskNotSchedulableError,
    TimeSlotOverlapError,
)
from shopfloor.utils.timezone import DATE_FORMAT, TIME_FORMAT, get_converter

router = APIRouter()
logger = logging.getLogger(__name__)


def get_service(db: Session = Depends(get_db)) -> SchedulingService:
    return SchedulingService(db)


def _check_format(value: str, fmt: str, label: str) -> str:
    try:
        datetime.strptime(value, fmt)
    except ValueError:
        raise ValueError(f"{label} must match {fmt}")
    return value


class TimeSlotDTO(BaseModel):
    id: str
    task_id: str
    start: datetime
    end: Optional[datetime] = None
    is_primary: bool
    date: str
    time: str

    @classmethod
    def from_domain(cls, slot: TimeSlot) -> "TimeSlotDTO":
        split = get_converter().format_split(slot.start)
        return cls(
            id=slot.id,
            task_id=slot.task_id,
            start=slot.start,
            end=slot.end,
            is_primary=slot.is_primary,
            date=split.date,
            time=split.time,
        )


class MachineDTO(BaseModel):
    id: str
    name: str
    type: Optional[str] = None

    @classmethod
    def from_domain(cls, machine: MachineSummary) -> "MachineDTO":
        return cls(id=machine.id, name=machine.name, type=machine.type)


class OperatorDTO(BaseModel):
    id: str
    name: str
    color: Optional[str] = None

    @classmethod
    def from_domain(cls, operator: OperatorSummary) -> "OperatorDTO":
        return cls(id=operator.id, name=operator.name, color=operator.color)


class TaskDTO(BaseModel):
    id: str
    title: str
    duration_minutes: int
    status: str
    machine_ids: List[str]
    operator_ids: List[str]
    time_slots: List[TimeSlotDTO]
    machines: List[MachineDTO] = []
    operators: List[OperatorDTO] = []

    @classmethod
    def from_domain(cls, task: Task) -> "TaskDTO":
        return cls(
            id=task.id,
            title=task.title,
            duration_minutes=task.duration_minutes,
            status=task.status.value,
            machine_ids=sorted(task.assigned_machine_ids),
            operator_ids=sorted(task.assigned_operator_ids),
            time_slots=[TimeSlotDTO.from_domain(s) for s in task.time_slots],
            machines=[MachineDTO.from_domain(m) for m in task.machines],
            operators=[OperatorDTO.from_domain(o) for o in task.operators],
        )


class ScheduleResponse(BaseModel):
    task_id: str
    status: ScheduleStatus
    slot: Optional[TimeSlotDTO] = None
    machine_id: Optional[str] = None
    operator_id: Optional[str] = None
    candidates_examined: int = 0

    @classmethod
    def from_domain(cls, outcome: ScheduleOutcome) -> "ScheduleResponse":
        return cls(
            task_id=outcome.task.id,
            status=outcome.status,
            slot=TimeSlotDTO.from_domain(outcome.slot) if outcome.slot else None,
            machine_id=outcome.machine_id,
            operator_id=outcome.operator_id,
            candidates_examined=outcome.candidates_examined,
        )


class BatchScheduleRequest(BaseModel):
    task_ids: Optional[List[str]] = None


class BatchScheduleResponse(BaseModel):
    results: List[ScheduleResponse]
    scheduled: int
    unscheduled: int


class ConflictCheckRequest(BaseModel):
    date: str
    time: str
    duration_minutes: int = Field(..., gt=0)
    machine_ids: List[str] = []
    operator_ids: List[str] = []
    exclude_task_id: Optional[str] = None

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: str):
        return _check_format(v, DATE_FORMAT, "date")

    @field_validator("time")
    @classmethod
    def validate_time(cls, v: str):
        return _check_format(v, TIME_FORMAT, "time")


class ConflictCheckResponse(BaseModel):
    has_conflict: bool
    conflict_type: Optional[str] = None
    resource_id: Optional[str] = None
    conflicting_task_id: Optional[str] = None
    error: Optional[str] = None


class CreateTimeSlotRequest(BaseModel):
    task_id: str
    date: str
    time: str
    end_date: Optional[str] = None
    end_time: Optional[str] = None
    is_primary: bool = False

    @field_validator("date", "end_date")
    @classmethod
    def validate_dates(cls, v: Optional[str]):
        """Dates are display-local YYYY-MM-DD."""
        return v if v is None else _check_format(v, DATE_FORMAT, "date")

    @field_validator("time", "end_time")
    @classmethod
    def validate_times(cls, v: Optional[str]):
        """Times are display-local HH:MM."""
        return v if v is None else _check_format(v, TIME_FORMAT, "time")

    @model_validator(mode="after")
    def end_date_needs_end_time(self):
        if self.end_date is not None and self.end_time is None:
            raise ValueError("end_date requires end_time")
        return self


class BarDTO(BaseModel):
    left: int
    width: int
    duration_days: int


class RowDTO(BaseModel):
    kind: RowKind
    id: str
    label: str
    level: int
    height: int
    parent_id: Optional[str] = None
    expanded: bool = False
    status: Optional[str] = None
    position: Optional[BarDTO] = None
    start: Optional[str] = None
    end: Optional[str] = None
    machines: List[MachineDTO] = []
    operators: List[OperatorDTO] = []

    @classmethod
    def from_domain(cls, row: Row) -> "RowDTO":
        converter = get_converter()
        return cls(
            kind=row.kind,
            id=row.id,
            label=row.label,
            level=row.level,
            height=row.height,
            parent_id=row.parent_id,
            expanded=row.expanded,
            status=row.status,
            position=(
                BarDTO(left=row.position.left, width=row.position.width, duration_days=row.position.duration_days)
                if row.position else None
            ),
            start=" ".join(converter.format_split(row.start)) if row.start else None,
            end=" ".join(converter.format_split(row.end)) if row.end else None,
            machines=[MachineDTO.from_domain(m) for m in row.machines],
            operators=[OperatorDTO.from_domain(o) for o in row.operators],
        )


class LayoutResponse(BaseModel):
    mode: ViewMode
    anchor: date
    days: List[date]
    rows: List[RowDTO]
    day_width: int
    total_width: int
    empty: bool
    message: Optional[str] = None

    @classmethod
    def from_domain(cls, layout: Layout) -> "LayoutResponse":
        return cls(
            mode=layout.window.mode,
            anchor=layout.window.anchor,
            days=layout.days,
            rows=[RowDTO.from_domain(r) for r in layout.rows],
            day_width=layout.day_width,
            total_width=layout.total_width,
            empty=layout.empty,
            message="No scheduled tasks in this range" if layout.empty else None,
        )


class TimezoneResponse(BaseModel):
    offset_hours: float
    source: str
    label: str


@router.post("/schedule/tasks/{task_id}", response_model=ScheduleResponse, summary="Auto-schedule one task")
def schedule_task(task_id: str, service: SchedulingService = Depends(get_service)):
    """
    Assign the first free machine + operator pair within the search horizon.

    **Returns:**
    - `status=SCHEDULED` with the committed slot and resources
    - `status=UNSCHEDULED` when the horizon is exhausted (the task stays PENDING)

    **Error Handling:**
    - 404: Unknown task
    - 409: Task is in progress or completed
    """
    logger.info(f"Schedule request for task {task_id}")
    try:
        outcome = service.schedule_task(task_id)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except TaskNotSchedulableError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return ScheduleResponse.from_domain(outcome)


@router.post("/schedule/batch", response_model=BatchScheduleResponse, summary="Auto-schedule many tasks")
def schedule_batch(req: BatchScheduleRequest, service: SchedulingService = Depends(get_service)):
    """Schedule tasks sequentially (default: all PENDING tasks); unschedulable tasks are reported, not fatal."""
    logger.info(f"Batch schedule request: {'all pending' if req.task_ids is None else len(req.task_ids)} task(s)")
    try:
        outcomes = service.schedule_batch(req.task_ids)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    results = [ScheduleResponse.from_domain(o) for o in outcomes]
    done = sum(1 for o in outcomes if o.scheduled)
    return {"results": results, "scheduled": done, "unscheduled": len(outcomes) - done}


@router.delete("/schedule/tasks/{task_id}", response_model=TaskDTO, summary="Unschedule a task")
def unschedule_task(task_id: str, service: SchedulingService = Depends(get_service)):
    try:
        task = service.unschedule_task(task_id)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return TaskDTO.from_domain(task)


@router.get("/schedule", response_model=List[TaskDTO], summary="Tasks scheduled in a date range")
def list_scheduled(
    start_date: date = Query(..., description="First display-timezone day, inclusive"),
    end_date: date = Query(..., description="Last display-timezone day, inclusive"),
    db: Session = Depends(get_db),
):
    """Tasks with a slot starting between the two display days, with their machines and operators."""
    if end_date < start_date:
        raise HTTPException(status_code=422, detail="end_date must not be before start_date")
    converter = get_converter()
    tasks = TaskRepository(db).list_scheduled_between(converter.day_start(start_date), converter.day_end(end_date))
    return [TaskDTO.from_domain(t) for t in tasks]


@router.post("/schedule/conflicts", response_model=ConflictCheckResponse, summary="Check a manual assignment")
def check_conflicts(req: ConflictCheckRequest, service: SchedulingService = Depends(get_service)):
    """Report the first machine (then operator) booking that overlaps the requested interval."""
    start = get_converter().parse_split(req.date, req.time)
    end = start + timedelta(minutes=req.duration_minutes)
    report = service.check_conflicts(start, end, req.machine_ids, req.operator_ids, req.exclude_task_id)
    if not report.has_conflict:
        return {"has_conflict": False}
    label = "Machine" if report.resource_kind.value == "machine" else "Operator"
    return {
        "has_conflict": True,
        "conflict_type": report.resource_kind.value,
        "resource_id": report.resource_id,
        "conflicting_task_id": report.blocking.task_id,
        "error": f"{label} scheduling conflict detected",
    }


@router.post("/time-slots", response_model=TimeSlotDTO, status_code=201, summary="Create a time slot")
def create_time_slot(req: CreateTimeSlotRequest, db: Session = Depends(get_db)):
    """
    Create a slot from display-local date/time strings.

    Without `end_time` the slot ends after the task's duration; `end_date`
    defaults to `date` and is only accepted together with `end_time`.

    **Error Handling:**
    - 404: Unknown task
    - 409: One of the task's machines or operators is booked by another task
    - 400: Overlaps another slot of the same task
    - 422: End is not after start
    """
    converter = get_converter()
    start = converter.parse_split(req.date, req.time)
    end = None
    if req.end_time is not None:
        end = converter.parse_split(req.end_date or req.date, req.end_time)
    try:
        slot = TimeSlotRepository(db).create(req.task_id, start, end, req.is_primary)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except MalformedIntervalError as exc:
        logger.warning(f"Rejected malformed slot: {exc}")
        raise HTTPException(status_code=422, detail=str(exc))
    except TimeSlotOverlapError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ResourceConflictError as exc:
        logger.warning(f"Rejected slot for task {req.task_id}: {exc}")
        raise HTTPException(status_code=409, detail={
            "conflict_type": exc.resource_kind.value,
            "resource_id": exc.resource_id,
            "conflicting_task_id": exc.blocking.task_id,
            "error": str(exc),
        })
    return TimeSlotDTO.from_domain(slot)


@router.delete("/time-slots/{slot_id}", status_code=204, summary="Delete a time slot")
def delete_time_slot(slot_id: str, db: Session = Depends(get_db)):
    try:
        TimeSlotRepository(db).delete(slot_id)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.get("/gantt", response_model=LayoutResponse, summary="Timeline layout")
def gantt(
    mode: ViewMode = Query(ViewMode.MONTH, description="day, week or month"),
    anchor: Optional[date] = Query(None, description="Display-timezone date; defaults to today"),
    expanded_projects: List[str] = Query([]),
    expanded_items: List[str] = Query([]),
    expand_all: bool = Query(False),
    service: SchedulingService = Depends(get_service),
):
    """
    Day buckets and rows for the project/item/task timeline.

    Expansion state lives with the client and is passed back on each request;
    items under a collapsed project are ignored.
    """
    if anchor is None:
        anchor = get_converter().display_date(datetime.now().astimezone())
    expansion = ExpansionState(frozenset(expanded_projects), frozenset(expanded_items))
    layout = service.build_layout(ViewWindow(mode, anchor), expansion, expand_all=expand_all)
    return LayoutResponse.from_domain(layout)


@router.get("/timezone", response_model=TimezoneResponse, summary="Display timezone")
def display_timezone():
    return get_converter().describe()
