"""
Tests for the timetable service endpoints.
"""
import pytest
from fastapi.testclient import TestClient

from main import app, store

client = TestClient(app)

CONFIG = {
    "subjects": [
        {"name": "Mathematics", "abbreviation": "MATH"},
        {"name": "Physics Lab", "abbreviation": "PHY", "isLab": True},
    ],
    "teachers": [
        {"name": "Mrs.Roy", "subjects": ["MATH"]},
        {"name": "Mr.Iyer", "subjects": ["PHY"]},
        {"name": "Ms.Das", "subjects": ["PHY"]},
    ],
    "classes": [
        {
            "name": "10A",
            "periodsPerDay": {"Mon": 2, "Tue": 2, "Wed": 4},
            "subjectsAssigned": [
                {"subject": "MATH", "periods": 4, "teacher": "Mrs.Roy"},
                {"subject": "PHY", "periods": 4, "teacher": ["Mr.Iyer", "Ms.Das"]},
            ],
        },
        {
            "name": "10B",
            "periodsPerDay": {"Thu": 3},
            "subjectsAssigned": [{"subject": "MATH", "periods": 3, "teacher": "Mrs.Roy"}],
        },
    ],
}


@pytest.fixture(autouse=True)
def clean_store():
    store.clear()
    yield
    store.clear()


def configure(group_id="g1", config=CONFIG):
    response = client.post(f"/groups/{group_id}/configure-timetable", json=config)
    assert response.status_code == 200
    return response.json()


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_configure_normalizes_teacher_field():
    group = configure()["group"]
    assignments = group["classes"][0]["subjectsAssigned"]
    assert assignments[0]["teachers"] == ["Mrs.Roy"]
    assert assignments[1]["teachers"] == ["Mr.Iyer", "Ms.Das"]
    assert group["settings"] == {}


def test_generate_returns_all_classes_and_stores_them():
    configure()
    response = client.post("/groups/g1/generate-timetable", json={"seed": 3})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert set(body["timetables"]) == {"10A", "10B"}

    week = {d["day"]: d["slots"] for d in body["timetables"]["10A"]}
    assert [len(week[d]) for d in ["Mon", "Tue", "Wed", "Thu", "Fri"]] == [2, 2, 4, 0, 0]
    physics = [s for slots in week.values() for s in slots if s["subject"] == "Physics Lab"]
    assert sorted(s["teacher"] for s in physics) == ["Mr.Iyer", "Mr.Iyer", "Ms.Das", "Ms.Das"]
    assert all(s["room"] == "LAB-306" and s["isLab"] for s in physics)

    stored = client.get("/groups/g1/timetable").json()["timetables"]
    assert stored == body["timetables"]


def test_generate_without_body():
    configure()
    response = client.post("/groups/g1/generate-timetable")
    assert response.status_code == 200
    assert response.json()["attemptsUsed"] >= 1


def test_generate_unknown_group():
    response = client.post("/groups/missing/generate-timetable")
    assert response.status_code == 404


def test_generate_rejects_period_mismatch():
    config = {
        "subjects": CONFIG["subjects"],
        "teachers": CONFIG["teachers"],
        "classes": [{
            "name": "9C",
            "periodsPerDay": {"Mon": 2, "Tue": 2, "Wed": 2, "Thu": 2, "Fri": 2},
            "subjectsAssigned": [{"subject": "MATH", "periods": 9, "teacher": "Mrs.Roy"}],
        }],
    }
    configure(config=config)
    response = client.post("/groups/g1/generate-timetable")
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["status"] == "error"
    assert "'9C'" in detail["message"] and "(10)" in detail["message"] and "(9)" in detail["message"]


def test_generate_rejects_missing_teacher():
    config = {
        "subjects": CONFIG["subjects"],
        "classes": [{
            "name": "10A",
            "periodsPerDay": {"Mon": 1},
            "subjectsAssigned": [{"subject": "MATH", "periods": 1, "teacher": None}],
        }],
    }
    configure(config=config)
    response = client.post("/groups/g1/generate-timetable")
    assert response.status_code == 400
    assert "no teacher" in response.json()["detail"]["message"]


def test_generate_reports_infeasible_config():
    config = {
        "subjects": CONFIG["subjects"],
        "teachers": CONFIG["teachers"],
        "classes": [
            {"name": name, "periodsPerDay": {"Mon": 6},
             "subjectsAssigned": [{"subject": "PHY", "periods": 6, "teacher": "Mr.Iyer"}]}
            for name in ("10A", "10B")
        ],
        "settings": {"attempts": 5},
    }
    configure(config=config)
    response = client.post("/groups/g1/generate-timetable", json={"seed": 0})
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["status"] == "infeasible"
    assert detail["attemptsTried"] == 5
    assert detail["diagnostics"]["teacherOverload"][0]["teacher"] == "Mr.Iyer"
    assert client.get("/groups/g1/timetable").json()["timetables"] == {}


def test_update_overwrites_class_timetable_without_validation():
    configure()
    client.post("/groups/g1/generate-timetable", json={"seed": 1})
    edited = [{"day": "Mon", "slots": [{"period": 1, "subject": "Art", "teacher": "Nobody", "room": None}]}]

    response = client.put("/groups/g1/timetable", json={"timetable": edited, "className": "10A"})
    assert response.status_code == 200

    stored = client.get("/groups/g1/timetable").json()["timetables"]
    assert stored["10A"] == edited
    assert "10B" in stored


def test_update_replaces_whole_map():
    configure()
    response = client.put("/groups/g1/timetable", json={"timetable": {"10A": []}})
    assert response.status_code == 200
    assert client.get("/groups/g1/timetable").json()["timetables"] == {"10A": []}


def test_update_requires_timetable():
    configure()
    response = client.put("/groups/g1/timetable", json={})
    assert response.status_code == 400
    response = client.put("/groups/g1/timetable", json={"timetable": []})
    assert response.status_code == 400


@pytest.mark.parametrize("settings", [{"attempts": -1}, {"attempts": 0}, {"maxPeriods": 0}, {"days": ["Mon", "Mon"]}])
def test_generate_rejects_bad_settings_as_config_error(settings):
    config = {
        "subjects": CONFIG["subjects"],
        "teachers": CONFIG["teachers"],
        "classes": [{
            "name": "10A",
            "periodsPerDay": {"Mon": 1},
            "subjectsAssigned": [{"subject": "MATH", "periods": 1, "teacher": "Mrs.Roy"}],
        }],
        "settings": settings,
    }
    configure(config=config)
    response = client.post("/groups/g1/generate-timetable")
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["status"] == "error"
    assert "Invalid scheduling setting" in detail["message"]


def test_store_reads_are_isolated_from_later_writes():
    configure()
    store.set_class_timetable("g1", "10A", [{"day": "Mon", "slots": []}])
    snapshot = store.get("g1")

    store.set_class_timetable("g1", "10B", [])
    snapshot["timetables"]["10A"].append({"day": "Tue", "slots": []})

    assert "10B" not in snapshot["timetables"]
    assert store.get("g1")["timetables"]["10A"] == [{"day": "Mon", "slots": []}]
