"""
Example: Seeding a shop floor and auto-scheduling its tasks

Creates two machines, two operators and one project with a handful of
tasks, runs a batch scheduling pass and prints the resulting week view.
Uses the database configured by DATABASE_URL (default: ./shopfloor.db).
"""

from datetime import timedelta

from shopfloor.engine.service import SchedulingService
from shopfloor.models.entities import ExpansionState, Task, ViewMode, ViewWindow
from shopfloor.storage.database import SessionLocal, init_db
from shopfloor.storage.repositories import (
    MachineRepository,
    OperatorRepository,
    ProjectRepository,
    TaskRepository,
)
from shopfloor.utils.logging_config import setup_logging


def seed(db):
    MachineRepository(db).save("lathe-1", "Lathe 1", type="lathe")
    MachineRepository(db).save("mill-1", "Mill 1", type="mill")
    OperatorRepository(db).save("ana", "Ana", color="#3b82f6")
    OperatorRepository(db).save("ben", "Ben", color="#f97316")

    projects = ProjectRepository(db)
    projects.save("gearbox", "Gearbox rebuild")
    projects.save_item("housing", "gearbox", "Housing")
    projects.save_item("shaft", "gearbox", "Output shaft")

    tasks = TaskRepository(db)
    for task_id, title, minutes, item in [
        ("rough-cut", "Rough cut housing", 90, "housing"),
        ("bore", "Bore bearing seats", 120, "housing"),
        ("turn", "Turn shaft", 60, "shaft"),
        ("keyway", "Mill keyway", 45, "shaft"),
    ]:
        tasks.save(Task(id=task_id, title=title, duration_minutes=minutes, item_id=item))


if __name__ == "__main__":
    setup_logging()
    init_db()
    db = SessionLocal()
    try:
        seed(db)
        service = SchedulingService(db)

        # 1. Schedule every PENDING task, first fit, starting tomorrow
        for outcome in service.schedule_batch():
            if outcome.scheduled:
                when = service.converter.format_split(outcome.slot.start)
                print(f"{outcome.task.id:<10} {when.date} {when.time}  {outcome.machine_id}/{outcome.operator_id}")
            else:
                print(f"{outcome.task.id:<10} UNSCHEDULED")

        # 2. Lay out tomorrow's week with everything expanded
        tomorrow = service.scheduler.today() + timedelta(days=1)
        layout = service.build_layout(ViewWindow(ViewMode.WEEK, tomorrow), ExpansionState(), expand_all=True)
        for row in layout.rows:
            bar = f"left={row.position.left} width={row.position.width}" if row.position else ""
            print(f"{'  ' * row.level}{row.label:<24} {bar}")
    finally:
        db.close()
