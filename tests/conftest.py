from dataclasses import dataclass, field
from typing import Dict, List

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import ensure_indexes, get_db
from live import Broker, get_broker
from main import app


@dataclass
class Account:
    uid: str
    email: str
    token: str
    headers: Dict[str, str] = field(default_factory=dict)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["skillswap_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def broker():
    return Broker()


@pytest.fixture
def client(db, broker):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_broker] = lambda: broker
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(client, db):
    """Register, configure and log in a user. Returns an Account."""
    counter = {"n": 0}

    def _make(name: str = None, offered: List[str] = (), wanted: List[str] = (),
              public: bool = True, admin: bool = False) -> Account:
        counter["n"] += 1
        name = name or f"User{counter['n']}"
        email = f"{name.lower()}{counter['n']}@example.com"
        res = client.post("/auth/register", json={"name": name, "email": email, "password": "secret123"})
        assert res.status_code == 201, res.text
        uid = res.json()["id"]
        db["user"].update_one({"email": email}, {"$set": {
            "skills_offered": list(offered),
            "skills_wanted": list(wanted),
            "is_public": public,
        }})
        if admin:
            db["admin"].insert_one({"_id": uid, "email": email})
        res = client.post("/auth/login", json={"email": email, "password": "secret123"})
        assert res.status_code == 200, res.text
        token = res.json()["access_token"]
        return Account(uid=uid, email=email, token=token, headers={"Authorization": f"Bearer {token}"})

    return _make


@pytest.fixture
def pair(make_user):
    """Two users with complementary skills: alice teaches Python, bruno teaches Spanish."""
    alice = make_user("Alice", offered=["Python", "Guitar"], wanted=["Spanish"])
    bruno = make_user("Bruno", offered=["Spanish"], wanted=["Python", "Guitar"])
    return alice, bruno


@pytest.fixture
def swap(client):
    """Create a request from ``a`` to ``b`` and optionally decide it. Returns the request id."""

    def _swap(a: Account, b: Account, from_skill: str = "Python", to_skill: str = "Spanish",
              decision: str = None) -> str:
        res = client.post("/requests", json={"to_uid": b.uid, "from_skill": from_skill, "to_skill": to_skill},
                          headers=a.headers)
        assert res.status_code == 201, res.text
        request_id = res.json()["id"]
        if decision:
            res = client.post(f"/requests/{request_id}/respond", json={"decision": decision}, headers=b.headers)
            assert res.status_code == 200, res.text
        return request_id

    return _swap
