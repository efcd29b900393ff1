"""Shared fixtures: an in-memory Mongo, a patched mailer and a test client."""

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import emailer
import main
from fakes import FakeConnection


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def db(monkeypatch):
    mongo = mongomock.MongoClient()["connectly_test"]
    monkeypatch.setattr(database, "db", mongo)
    return mongo


@pytest.fixture
def sent_emails(monkeypatch):
    sent = []

    def fake_send_email(*, to_email, subject, body_text):
        sent.append({"to": to_email, "subject": subject, "body": body_text})
        return True, "sent"

    monkeypatch.setattr(emailer, "send_email", fake_send_email)
    return sent


@pytest.fixture
def client(db, sent_emails):
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def fanout(client):
    return main.app.state.fanout


@pytest.fixture
def signup(client):
    """Register and log in a user, returning its id, email and auth headers."""

    def _signup(first_name: str, email: str = None, password: str = "secret123"):
        email = email or f"{first_name.lower()}@mail.com"
        r = client.post("/api/auth/register", json={
            "first_name": first_name,
            "last_name": "Tester",
            "email": email,
            "password": password,
            "repassword": password,
        })
        assert r.status_code == 201, r.text
        r = client.post("/api/auth/login", json={"email": email, "password": password})
        assert r.status_code == 200, r.text
        body = r.json()
        return {
            "id": body["user"]["id"],
            "email": email,
            "headers": {"Authorization": f"Bearer {body['token']}"},
        }

    return _signup


@pytest.fixture
def make_room(client):
    def _make_room(owner, name="General", is_private=False, **extra):
        r = client.post(
            "/api/rooms/create",
            json={"name": name, "is_private": is_private, **extra},
            headers=owner["headers"],
        )
        assert r.status_code == 201, r.text
        return r.json()

    return _make_room


@pytest.fixture
def attach(fanout):
    """Register a fake connection for a user and optionally join room topics."""

    def _attach(user_id: str, *room_ids: str) -> FakeConnection:
        conn = FakeConnection()
        conn_id = fanout.connect(conn)
        fanout.register(user_id, conn_id)
        for room_id in room_ids:
            fanout.join_room_topic(conn_id, room_id)
        return conn

    return _attach
