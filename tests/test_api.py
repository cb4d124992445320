import pytest

from shopfloor.models.entities import Task, TaskStatus
from shopfloor.storage.repositories import TaskRepository


@pytest.fixture
def add_task(seeded_db):
    def _add(task_id, duration=60, status=TaskStatus.PENDING, machines=(), operators=()):
        TaskRepository(seeded_db).save(Task(
            id=task_id,
            title=f"Task {task_id}",
            duration_minutes=duration,
            status=status,
            assigned_machine_ids=frozenset(machines),
            assigned_operator_ids=frozenset(operators),
            item_id="I1",
        ))
        return task_id
    return _add


def stored_task(db, task_id):
    db.expire_all()
    return TaskRepository(db).require(task_id)


class TestMetaEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_timezone(self, client):
        response = client.get("/api/v1/timezone")
        assert response.status_code == 200
        assert response.json() == {"offset_hours": -5.0, "source": "configured", "label": "GMT-5"}


class TestTimeSlotEndpoints:
    def test_create_slot_from_display_strings(self, client, add_task, seeded_db):
        add_task("T1", duration=90)
        response = client.post(
            "/api/v1/time-slots",
            json={"task_id": "T1", "date": "2025-03-03", "time": "23:30", "is_primary": True},
        )
        assert response.status_code == 201
        data = response.json()
        assert (data["date"], data["time"]) == ("2025-03-03", "23:30")
        assert data["end"] is None
        assert data["is_primary"] is True
        assert stored_task(seeded_db, "T1").status == TaskStatus.SCHEDULED

    def test_create_with_explicit_end(self, client, add_task):
        add_task("T1")
        response = client.post(
            "/api/v1/time-slots",
            json={"task_id": "T1", "date": "2025-03-03", "time": "22:00", "end_date": "2025-03-04", "end_time": "01:00"},
        )
        assert response.status_code == 201

    def test_end_before_start_rejected(self, client, add_task, seeded_db):
        add_task("T1")
        response = client.post(
            "/api/v1/time-slots",
            json={"task_id": "T1", "date": "2025-03-03", "time": "10:00", "end_time": "09:00"},
        )
        assert response.status_code == 422
        assert stored_task(seeded_db, "T1").time_slots == ()

    @pytest.mark.parametrize("field,value", [("date", "03/03/2025"), ("time", "25:00"), ("time", "8am")])
    def test_bad_format_rejected(self, client, add_task, field, value):
        add_task("T1")
        payload = {"task_id": "T1", "date": "2025-03-03", "time": "08:00"}
        payload[field] = value
        assert client.post("/api/v1/time-slots", json=payload).status_code == 422

    def test_end_date_without_end_time_rejected(self, client, add_task, seeded_db):
        add_task("T1")
        response = client.post(
            "/api/v1/time-slots",
            json={"task_id": "T1", "date": "2025-03-03", "time": "22:00", "end_date": "2025-03-04"},
        )
        assert response.status_code == 422
        assert stored_task(seeded_db, "T1").time_slots == ()

    def test_double_booked_machine_conflicts(self, client, add_task, seeded_db):
        add_task("A", machines=["M1"], operators=["O1"])
        add_task("B", machines=["M1"], operators=["O2"])
        assert client.post(
            "/api/v1/time-slots", json={"task_id": "A", "date": "2025-03-03", "time": "09:00"}
        ).status_code == 201

        response = client.post("/api/v1/time-slots", json={"task_id": "B", "date": "2025-03-03", "time": "09:30"})

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert (detail["conflict_type"], detail["resource_id"], detail["conflicting_task_id"]) == ("machine", "M1", "A")
        assert stored_task(seeded_db, "B").time_slots == ()

    def test_overlapping_own_slot_rejected(self, client, add_task, seeded_db):
        add_task("T1", machines=["M1"], operators=["O1"])
        client.post("/api/v1/time-slots", json={"task_id": "T1", "date": "2025-03-03", "time": "09:00"})
        response = client.post("/api/v1/time-slots", json={"task_id": "T1", "date": "2025-03-03", "time": "09:45"})
        assert response.status_code == 400
        assert len(stored_task(seeded_db, "T1").time_slots) == 1

    def test_unknown_task(self, client):
        response = client.post("/api/v1/time-slots", json={"task_id": "ghost", "date": "2025-03-03", "time": "08:00"})
        assert response.status_code == 404

    def test_delete_slot(self, client, add_task, seeded_db):
        add_task("T1")
        slot_id = client.post(
            "/api/v1/time-slots", json={"task_id": "T1", "date": "2025-03-03", "time": "08:00"}
        ).json()["id"]

        assert client.delete(f"/api/v1/time-slots/{slot_id}").status_code == 204
        assert stored_task(seeded_db, "T1").status == TaskStatus.PENDING
        assert client.delete(f"/api/v1/time-slots/{slot_id}").status_code == 404


class TestScheduleEndpoints:
    def test_schedule_task(self, client, add_task, display_tomorrow):
        add_task("T1")
        response = client.post("/api/v1/schedule/tasks/T1")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "SCHEDULED"
        assert data["slot"]["date"] == display_tomorrow.isoformat()
        assert data["slot"]["time"] == "08:00"
        assert (data["machine_id"], data["operator_id"]) == ("M1", "O1")

    def test_unschedulable_creates_no_slot(self, client, add_task, seeded_db):
        add_task("T1", duration=600)
        response = client.post("/api/v1/schedule/tasks/T1")
        assert response.status_code == 200
        assert response.json()["status"] == "UNSCHEDULED"
        assert response.json()["slot"] is None
        assert stored_task(seeded_db, "T1").time_slots == ()

    def test_unknown_task(self, client):
        assert client.post("/api/v1/schedule/tasks/ghost").status_code == 404

    def test_completed_task_conflicts(self, client, add_task):
        add_task("T1", status=TaskStatus.COMPLETED)
        assert client.post("/api/v1/schedule/tasks/T1").status_code == 409

    def test_batch(self, client, add_task):
        add_task("T1")
        add_task("T2")
        add_task("T3", duration=600)
        response = client.post("/api/v1/schedule/batch", json={})
        assert response.status_code == 200
        data = response.json()
        assert (data["scheduled"], data["unscheduled"]) == (2, 1)
        assert [r["task_id"] for r in data["results"]] == ["T1", "T2", "T3"]

    def test_unschedule(self, client, add_task):
        add_task("T1")
        client.post("/api/v1/schedule/tasks/T1")
        response = client.delete("/api/v1/schedule/tasks/T1")
        assert response.status_code == 200
        assert response.json()["status"] == "PENDING"
        assert response.json()["time_slots"] == []


class TestScheduledListEndpoint:
    @pytest.fixture
    def booked(self, client, add_task):
        add_task("T1", machines=["M1"], operators=["O1"])
        add_task("T2")
        # 23:30 display time on Mar 3 is already Mar 4 in UTC
        client.post("/api/v1/time-slots", json={"task_id": "T1", "date": "2025-03-03", "time": "23:30"})
        client.post("/api/v1/time-slots", json={"task_id": "T2", "date": "2025-03-05", "time": "08:00"})

    def test_range_uses_display_days(self, client, booked):
        response = client.get("/api/v1/schedule", params={"start_date": "2025-03-03", "end_date": "2025-03-03"})
        assert response.status_code == 200
        data = response.json()
        assert [t["id"] for t in data] == ["T1"]
        assert data[0]["machines"] == [{"id": "M1", "name": "Lathe", "type": "lathe"}]
        assert data[0]["operators"] == [{"id": "O1", "name": "Ana", "color": "#3b82f6"}]
        assert data[0]["time_slots"][0]["time"] == "23:30"

    def test_end_date_is_inclusive(self, client, booked):
        data = client.get("/api/v1/schedule", params={"start_date": "2025-03-04", "end_date": "2025-03-05"}).json()
        assert [t["id"] for t in data] == ["T2"]

    def test_reversed_range_rejected(self, client):
        response = client.get("/api/v1/schedule", params={"start_date": "2025-03-05", "end_date": "2025-03-03"})
        assert response.status_code == 422


class TestConflictEndpoint:
    @pytest.fixture
    def booked(self, client, add_task):
        add_task("T1", machines=["M1"], operators=["O1"])
        client.post("/api/v1/time-slots", json={"task_id": "T1", "date": "2025-03-03", "time": "09:00"})

    def test_machine_conflict(self, client, booked):
        response = client.post("/api/v1/schedule/conflicts", json={
            "date": "2025-03-03", "time": "09:30", "duration_minutes": 60,
            "machine_ids": ["M1"], "operator_ids": ["O1"],
        })
        data = response.json()
        assert data["has_conflict"] is True
        assert data["conflict_type"] == "machine"
        assert data["conflicting_task_id"] == "T1"

    def test_touching_is_free(self, client, booked):
        response = client.post("/api/v1/schedule/conflicts", json={
            "date": "2025-03-03", "time": "10:00", "duration_minutes": 30, "machine_ids": ["M1"],
        })
        assert response.json()["has_conflict"] is False

    def test_excluding_own_task(self, client, booked):
        response = client.post("/api/v1/schedule/conflicts", json={
            "date": "2025-03-03", "time": "09:00", "duration_minutes": 60,
            "operator_ids": ["O1"], "exclude_task_id": "T1",
        })
        assert response.json()["has_conflict"] is False

    def test_duration_must_be_positive(self, client):
        response = client.post("/api/v1/schedule/conflicts", json={
            "date": "2025-03-03", "time": "09:00", "duration_minutes": 0,
        })
        assert response.status_code == 422


class TestGanttEndpoint:
    @pytest.fixture
    def scheduled(self, client, add_task):
        add_task("T1")
        client.post("/api/v1/time-slots", json={"task_id": "T1", "date": "2025-03-03", "time": "08:00"})

    def test_expanded_week(self, client, scheduled):
        response = client.get(
            "/api/v1/gantt",
            params={"mode": "week", "anchor": "2025-03-05", "expanded_projects": ["P1"], "expanded_items": ["I1"]},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["days"][0] == "2025-03-02"
        assert data["total_width"] == 840
        assert [r["kind"] for r in data["rows"]] == ["project", "item", "task"]
        task_row = data["rows"][2]
        assert task_row["position"] == {"left": 120, "width": 118, "duration_days": 1}
        assert task_row["start"] == "2025-03-03 08:00"

    def test_collapsed_by_default(self, client, scheduled):
        data = client.get("/api/v1/gantt", params={"mode": "month", "anchor": "2025-03-01"}).json()
        assert [r["id"] for r in data["rows"]] == ["P1"]

    def test_expand_all(self, client, scheduled):
        data = client.get("/api/v1/gantt", params={"mode": "day", "anchor": "2025-03-03", "expand_all": True}).json()
        assert [r["id"] for r in data["rows"]] == ["P1", "I1", "T1"]
        assert data["rows"][2]["position"]["width"] == 958

    def test_task_rows_carry_resources(self, client, add_task, scheduled):
        add_task("T2", machines=["M2"], operators=["O2"])
        client.post("/api/v1/time-slots", json={"task_id": "T2", "date": "2025-03-03", "time": "10:00"})
        data = client.get("/api/v1/gantt", params={"mode": "day", "anchor": "2025-03-03", "expand_all": True}).json()
        rows = {r["id"]: r for r in data["rows"]}
        assert rows["T2"]["machines"] == [{"id": "M2", "name": "Mill", "type": "mill"}]
        assert rows["T2"]["operators"] == [{"id": "O2", "name": "Ben", "color": "#f97316"}]
        assert rows["T1"]["machines"] == []
        assert rows["P1"]["operators"] == []

    def test_empty_range(self, client, scheduled):
        data = client.get("/api/v1/gantt", params={"mode": "day", "anchor": "2025-06-01"}).json()
        assert data["empty"] is True
        assert data["rows"] == []
        assert data["message"]

    def test_invalid_mode(self, client):
        assert client.get("/api/v1/gantt", params={"mode": "year"}).status_code == 422
