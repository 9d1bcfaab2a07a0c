"""Pytest fixtures: in-memory Mongo, ledger engine, FastAPI test client"""

import pytest
from datetime import datetime
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from server import app
from database import get_db
from audit_service import AuditService
from ledger import LedgerEngine


OWNER_ID = "650000000000000000000001"
OTHER_USER_ID = "650000000000000000000002"


@pytest.fixture
def db():
    """Fresh in-memory database per test"""
    return AsyncMongoMockClient()["ledger_test"]


@pytest.fixture
def engine(db):
    return LedgerEngine(db, audit_service=AuditService(db))


async def insert_project(db, owner_id=OWNER_ID, code="PRJ-1", **fields):
    now = datetime.utcnow()
    project = {
        "title": "Test Project",
        "code": code,
        "initial_budget": 10000.0,
        "total_income_cents": 0,
        "total_expense_cents": 0,
        "balance_cents": 0,
        "status": "ACTIVE",
        "created_by": owner_id,
        "ledger_out_of_sync": False,
        "created_at": now,
        "updated_at": now
    }
    project.update(fields)
    result = await db["projects"].insert_one(project)
    project["_id"] = result.inserted_id
    return project


async def insert_party(db, project, name, party_type):
    now = datetime.utcnow()
    party = {
        "project_id": str(project["_id"]),
        "name": name,
        "party_type": party_type,
        "contact": {},
        "created_at": now,
        "updated_at": now
    }
    result = await db["parties"].insert_one(party)
    party["_id"] = result.inserted_id
    return party


@pytest.fixture
async def project(db):
    return await insert_project(db)


@pytest.fixture
async def client_party(db, project):
    return await insert_party(db, project, "Acme Client", "CLIENT")


@pytest.fixture
async def vendor_party(db, project):
    return await insert_party(db, project, "Steel Vendor", "VENDOR")


async def load_project(db, project):
    return await db["projects"].find_one({"_id": project["_id"]})


# ============================================
# HTTP
# ============================================

@pytest.fixture
def client(db):
    """FastAPI test client bound to the in-memory database"""
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def register_and_login(client, email, name="Test User", password="secret123"):
    response = client.post("/api/auth/register", json={
        "name": name,
        "email": email,
        "password": password
    })
    assert response.status_code == 201, response.text
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def auth_headers(client):
    tokens = register_and_login(client, "owner@example.com", name="Project Owner")
    return {"Authorization": f"Bearer {tokens['access_token']}"}


@pytest.fixture
def other_headers(client, auth_headers):
    tokens = register_and_login(client, "other@example.com", name="Other Agent")
    return {"Authorization": f"Bearer {tokens['access_token']}"}
