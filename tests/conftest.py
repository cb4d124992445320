import os

# Pin the display timezone and keep the app's default engine in memory
os.environ["DISPLAY_OFFSET_HOURS"] = "-5"
os.environ["DATABASE_URL"] = "sqlite://"

from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shopfloor.config.settings import get_settings
from shopfloor.engine.calendar import ResourceCalendar
from shopfloor.main import app
from shopfloor.models.entities import Item, Project, Reservation, ResourceKind, Task, TaskStatus, TimeSlot
from shopfloor.storage.database import Base, get_db, init_db
from shopfloor.storage.repositories import MachineRepository, OperatorRepository, ProjectRepository
from shopfloor.utils.timezone import TimezoneConverter, get_converter


@pytest.fixture
def converter():
    """Display timezone fixed at GMT-5."""
    return TimezoneConverter(-5.0)


@pytest.fixture
def local(converter):
    """Build a UTC instant from display-local 'YYYY-MM-DD', 'HH:MM'."""
    def _local(day: str, hhmm: str) -> datetime:
        return converter.parse_split(day, hhmm)
    return _local


@pytest.fixture
def today():
    """Scheduling 'today'; the scheduler starts on 2025-03-03 (a Monday)."""
    return date(2025, 3, 2)


@pytest.fixture
def booked_calendar(local):
    """M1 and O1 both busy 09:00-10:30 on 2025-03-03."""
    start, end = local("2025-03-03", "09:00"), local("2025-03-03", "10:30")
    return ResourceCalendar([
        Reservation(ResourceKind.MACHINE, "M1", start, end, "existing"),
        Reservation(ResourceKind.OPERATOR, "O1", start, end, "existing"),
    ])


def make_task(task_id: str, start: datetime, end=None, duration: int = 60, primary: bool = True,
              machines=("M1",), operators=("O1",), item_id=None) -> Task:
    slot = TimeSlot(id=f"{task_id}-slot", task_id=task_id, start=start, end=end, is_primary=primary)
    return Task(
        id=task_id,
        title=f"Task {task_id}",
        duration_minutes=duration,
        status=TaskStatus.SCHEDULED,
        assigned_machine_ids=frozenset(machines),
        assigned_operator_ids=frozenset(operators),
        time_slots=(slot,),
        item_id=item_id,
    )


@pytest.fixture
def task_factory():
    """Scheduled task with one slot on M1/O1 unless told otherwise."""
    return make_task


@pytest.fixture
def project_tree(local):
    """
    Two projects:
    P1 (Alpha) -> I1 -> T1 (Mar 3 10:00-12:00), T2 (Mar 10 08:00-09:00)
               -> I2 -> T3 (Mar 4 13:00-14:00)
    P2 (Beta)  -> I3 -> T4 (Feb 28 10:00 - Mar 1 02:00)
    """
    t1 = make_task("T1", local("2025-03-03", "10:00"), local("2025-03-03", "12:00"), item_id="I1")
    t2 = make_task("T2", local("2025-03-10", "08:00"), item_id="I1")
    t3 = make_task("T3", local("2025-03-04", "13:00"), item_id="I2")
    t4 = make_task("T4", local("2025-02-28", "10:00"), local("2025-03-01", "02:00"), item_id="I3")
    return [
        Project(id="P1", name="Alpha", items=(
            Item(id="I1", name="Frame", tasks=(t1, t2)),
            Item(id="I2", name="Panel", tasks=(t3,)),
        )),
        Project(id="P2", name="Beta", items=(
            Item(id="I3", name="Housing", tasks=(t4,)),
        )),
    ]


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Fresh in-memory database per test."""
    session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)()
    yield session
    session.close()


@pytest.fixture
def seeded_db(db_session):
    """Two machines, two operators, one active project with one item."""
    machines = MachineRepository(db_session)
    machines.save("M1", "Lathe", type="lathe")
    machines.save("M2", "Mill", type="mill")
    operators = OperatorRepository(db_session)
    operators.save("O1", "Ana", color="#3b82f6")
    operators.save("O2", "Ben", color="#f97316")
    projects = ProjectRepository(db_session)
    projects.save("P1", "Alpha")
    projects.save_item("I1", "P1", "Frame")
    return db_session


@pytest.fixture
def client(db_engine, seeded_db):
    """TestClient bound to the seeded in-memory database."""
    factory = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)

    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    get_settings.cache_clear()
    get_converter.cache_clear()
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def display_tomorrow():
    """Tomorrow's date in the GMT-5 display timezone."""
    now = datetime.now(timezone.utc)
    return TimezoneConverter(-5.0).display_date(now) + timedelta(days=1)
