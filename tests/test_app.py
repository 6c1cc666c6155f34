import importlib
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fastapi.testclient import TestClient

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def build_client(tmp_path: str) -> TestClient:
    os.environ["DATABASE_URL"] = f"sqlite:///{tmp_path}/test.db"
    os.environ["UPLOAD_DIR"] = f"{tmp_path}/uploads"
    os.environ["SCHEDULER_ENABLED"] = "0"
    repo_root = Path(__file__).resolve().parents[1]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))
    from tarantulabox import config, database

    importlib.reload(config)
    importlib.reload(database)
    from tarantulabox import main

    importlib.reload(main)
    return TestClient(main.app)


def auth_headers(client: TestClient) -> dict[str, str]:
    token = client.cookies.get("csrf")
    return {"X-CSRF-Token": token} if token else {}


def signup(client: TestClient, email: str = "keeper@example.com", password: str = "spiderlegs8"):
    response = client.post("/signup", json={"email": email, "password": password})
    assert response.status_code == 200
    return response


def future_iso(days: int = 2) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def create_tarantula(client: TestClient, **overrides):
    data = {
        "species": "Grammostola rosea",
        "name": "Rosie",
        "next_feed_date": future_iso(),
        "feed_interval_days": "7",
        "timezone": "Europe/Berlin",
        "notify": "true",
    }
    data.update(overrides)
    return client.post(
        "/tarantulas",
        data=data,
        files={"tarantula_image": ("rosie.png", PNG_BYTES, "image/png")},
        headers=auth_headers(client),
    )


def test_health(tmp_path):
    client = build_client(tmp_path)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_signup_login_and_me(tmp_path):
    client = build_client(tmp_path)
    signup(client)

    client.cookies.clear()
    assert client.get("/me").status_code == 401

    bad = client.post("/login", json={"email": "keeper@example.com", "password": "wrong-pass"})
    assert bad.status_code == 401

    login = client.post("/login", json={"email": "KEEPER@example.com", "password": "spiderlegs8"})
    assert login.status_code == 200
    me = client.get("/me")
    assert me.json() == {"email": "keeper@example.com", "notify_email": False}

    settings = client.patch(
        "/me/notifications", json={"notify_email": True}, headers=auth_headers(client)
    )
    assert settings.json()["notify_email"] is True


def test_signup_validation(tmp_path):
    client = build_client(tmp_path)
    short = client.post("/signup", json={"email": "a@example.com", "password": "short"})
    assert short.status_code == 400
    invalid = client.post("/signup", json={"email": "not-an-email", "password": "longenough"})
    assert invalid.status_code == 400

    signup(client)
    duplicate = client.post(
        "/signup", json={"email": "keeper@example.com", "password": "another-pass"}
    )
    assert duplicate.status_code == 400
    assert "already in use" in duplicate.json()["detail"]


def test_csrf_required_for_writes(tmp_path):
    client = build_client(tmp_path)
    signup(client)
    response = client.patch("/me/notifications", json={"notify_email": True})
    assert response.status_code == 403


def test_create_and_list_tarantulas(tmp_path):
    client = build_client(tmp_path)
    signup(client)

    created = create_tarantula(client)
    assert created.status_code == 200
    body = created.json()
    assert body["name"] == "Rosie"
    assert body["timezone"] == "Europe/Berlin"
    assert body["notify"] is True
    assert body["img_url"].startswith("/uploads/")
    assert body["img_url"].endswith(".png")
    stored = Path(tmp_path) / "uploads" / body["img_url"].removeprefix("/uploads/")
    assert stored.read_bytes() == PNG_BYTES

    listing = client.get("/tarantulas")
    assert [item["id"] for item in listing.json()] == [body["id"]]
    assert client.get(f"/tarantulas/{body['id']}").json()["species"] == "Grammostola rosea"


def test_create_tarantula_validation(tmp_path):
    client = build_client(tmp_path)
    signup(client)

    not_image = client.post(
        "/tarantulas",
        data={
            "species": "Brachypelma hamorii",
            "name": "Ruby",
            "next_feed_date": future_iso(),
            "feed_interval_days": "10",
        },
        files={"tarantula_image": ("ruby.png", b"plain text", "image/png")},
        headers=auth_headers(client),
    )
    assert not_image.status_code == 400

    assert create_tarantula(client, next_feed_date="2020-01-01T08:00:00").status_code == 422
    assert create_tarantula(client, feed_interval_days="0").status_code == 422
    assert create_tarantula(client, timezone="Mars/Olympus").status_code == 422
    assert create_tarantula(client, name="  ").status_code == 422
    assert client.get("/tarantulas").json() == []


def test_tarantulas_are_scoped_to_owner(tmp_path):
    client = build_client(tmp_path)
    signup(client)
    pet_id = create_tarantula(client).json()["id"]

    from tarantulabox import main

    stranger = TestClient(main.app)
    signup(stranger, email="other@example.com")
    assert stranger.get(f"/tarantulas/{pet_id}").status_code == 404
    assert stranger.get("/tarantulas").json() == []
    deleted = stranger.delete(f"/tarantulas/{pet_id}", headers=auth_headers(stranger))
    assert deleted.status_code == 404


def test_update_and_delete_tarantula(tmp_path):
    client = build_client(tmp_path)
    signup(client)
    pet_id = create_tarantula(client).json()["id"]

    new_date = future_iso(days=5)
    updated = client.patch(
        f"/tarantulas/{pet_id}",
        json={"feed_interval_days": 14, "next_feed_date": new_date, "notify": False},
        headers=auth_headers(client),
    )
    assert updated.status_code == 200
    assert updated.json()["feed_interval_days"] == 14
    assert updated.json()["notify"] is False

    rejected = client.patch(
        f"/tarantulas/{pet_id}", json={"feed_interval_days": 0}, headers=auth_headers(client)
    )
    assert rejected.status_code == 422

    deleted = client.delete(f"/tarantulas/{pet_id}", headers=auth_headers(client))
    assert deleted.status_code == 200
    assert client.get(f"/tarantulas/{pet_id}").status_code == 404
    actions = [entry["action"] for entry in client.get("/activity").json()]
    assert "tarantula_deleted" in actions
    assert "tarantula_updated" in actions


def test_scheduler_run_sends_reminder_and_advances(tmp_path):
    client = build_client(tmp_path)
    signup(client)
    pet_id = create_tarantula(client, timezone="UTC").json()["id"]

    from tarantulabox import main, models

    overdue = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(hours=1)
    with main.SessionLocal() as db:
        pet = db.get(models.Tarantula, pet_id)
        pet.next_feed_date = overdue
        db.commit()

    upcoming = client.get("/tarantulas/upcoming").json()
    assert upcoming[0]["id"] == pet_id
    assert upcoming[0]["due"] is True

    run = client.post("/scheduler/run", headers=auth_headers(client))
    assert run.status_code == 200
    report = run.json()
    assert report["delivered"] == [pet_id]
    assert report["advanced"] == [pet_id]
    assert report["failures"] == []

    pet = client.get(f"/tarantulas/{pet_id}").json()
    assert datetime.fromisoformat(pet["next_feed_date"].replace("Z", "+00:00")) == overdue + timedelta(
        days=7
    )
    activity = client.get("/activity").json()
    reminders = [entry for entry in activity if entry["action"] == "feeding_reminder"]
    assert len(reminders) == 1
    assert reminders[0]["tarantula_id"] == pet_id
    assert "Rosie" in reminders[0]["details"]

    again = client.post("/scheduler/run", headers=auth_headers(client)).json()
    assert again["delivered"] == []

    status = client.get("/scheduler/status").json()
    assert status["state"] == "idle"
    assert status["running"] is False
    assert status["ticks"] == 2


def test_schedule_report_pdf(tmp_path):
    client = build_client(tmp_path)
    signup(client)
    create_tarantula(client)
    response = client.get("/tarantulas/report")
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.content.startswith(b"%PDF")


def test_push_endpoints(tmp_path):
    client = build_client(tmp_path)
    signup(client)
    assert client.get("/push/vapid-public-key").status_code == 404
    subscription = {
        "endpoint": "https://push.example.com/abc",
        "keys": {"p256dh": "key", "auth": "secret"},
    }
    assert client.post("/push/subscribe", json=subscription, headers=auth_headers(client)).json() == {
        "ok": True
    }
    removed = client.post(
        "/push/unsubscribe",
        json={"endpoint": subscription["endpoint"]},
        headers=auth_headers(client),
    )
    assert removed.json() == {"ok": True}


def test_logout_clears_session(tmp_path):
    client = build_client(tmp_path)
    signup(client)
    response = client.post("/logout", headers=auth_headers(client))
    assert response.json() == {"ok": True}
    assert client.get("/me").status_code == 401


def test_upcoming_reports_store_outage(tmp_path, monkeypatch):
    client = build_client(tmp_path)
    signup(client)

    from tarantulabox import main
    from tarantulabox.services.schedule_store import InMemoryScheduleStore

    broken = InMemoryScheduleStore()
    broken.available = False
    monkeypatch.setattr(main, "schedule_store", broken)
    response = client.get("/tarantulas/upcoming")
    assert response.status_code == 503
