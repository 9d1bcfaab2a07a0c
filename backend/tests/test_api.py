"""
API tests for the project ledger backend.
Testing: auth, users, projects, parties, transactions and error envelopes
"""
import asyncio
import pytest
from bson import ObjectId

from auth import create_access_token
from tests.conftest import register_and_login


def create_project(client, headers, **overrides):
    payload = {"title": "Riverside Tower", "code": "rt-01", "initial_budget": 50000}
    payload.update(overrides)
    response = client.post("/api/projects", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def create_party(client, headers, project_id, name, party_type, **extra):
    response = client.post(
        f"/api/projects/{project_id}/parties",
        json={"name": name, "party_type": party_type, **extra},
        headers=headers
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def create_transaction(client, headers, project_id, party_id, tx_type, amount):
    return client.post("/api/transactions", json={
        "project_id": project_id,
        "party_id": party_id,
        "type": tx_type,
        "amount": amount
    }, headers=headers)


def project_financial(client, headers, project_id):
    response = client.get(f"/api/projects/{project_id}", headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["data"]["financial"]


@pytest.fixture
def ledger_setup(client, auth_headers):
    project = create_project(client, auth_headers)
    client_party = create_party(client, auth_headers, project["_id"], "Harbor Estates", "CLIENT")
    vendor_party = create_party(client, auth_headers, project["_id"], "Concrete Co", "VENDOR")
    return project, client_party, vendor_party


class TestHealthEndpoints:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestAuth:
    """Authentication endpoint tests"""

    def test_first_user_is_admin_then_agents(self, client):
        first = register_and_login(client, "first@example.com")
        second = register_and_login(client, "Second@Example.com")

        assert first["user"]["role"] == "admin"
        assert second["user"]["role"] == "agent"
        assert second["user"]["email"] == "second@example.com"
        assert second["token_type"] == "bearer"
        assert second["expires_in"] == 1800

    def test_duplicate_email_rejected(self, client):
        register_and_login(client, "dup@example.com")
        response = client.post("/api/auth/register", json={
            "name": "Again", "email": "DUP@example.com", "password": "secret123"
        })
        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "message": "Email already registered",
            "status_code": 400
        }

    def test_login_invalid_credentials(self, client):
        register_and_login(client, "someone@example.com")
        response = client.post("/api/auth/login", json={
            "email": "someone@example.com", "password": "wrongpassword"
        })
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid email or password"

    def test_register_validation_is_400(self, client):
        response = client.post("/api/auth/register", json={
            "name": "Al", "email": "not-an-email", "password": "123"
        })
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert {e["field"] for e in body["errors"]} == {"name", "email", "password"}

    def test_refresh_rotates_tokens(self, client):
        tokens = register_and_login(client, "rotate@example.com")

        response = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert response.status_code == 200
        assert response.json()["refresh_token"] != tokens["refresh_token"]

        reused = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert reused.status_code == 401

    def test_missing_and_bad_tokens(self, client):
        assert client.get("/api/projects").status_code == 401
        response = client.get("/api/projects", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401
        assert response.json()["message"] == "Could not validate credentials"

    def test_token_for_unknown_user(self, client):
        token = create_access_token({"user_id": str(ObjectId()), "email": "ghost@example.com"})
        response = client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["message"] == "User not found"


class TestUsers:

    def test_me_and_update(self, client, auth_headers):
        response = client.get("/api/users/me", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["name"] == "Project Owner"

        response = client.put("/api/users/me", json={"name": "Renamed Owner", "phone": "+923001234567"}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["name"] == "Renamed Owner"
        assert response.json()["phone"] == "+923001234567"

    def test_role_cannot_be_self_assigned(self, client, auth_headers):
        response = client.put("/api/users/me", json={"role": "admin"}, headers=auth_headers)
        assert response.status_code == 400

    def test_admin_lists_and_toggles_users(self, client, auth_headers, other_headers):
        assert client.get("/api/users", headers=other_headers).status_code == 403

        response = client.get("/api/users", headers=auth_headers)
        assert response.status_code == 200
        users = response.json()["data"]
        agent = next(u for u in users if u["email"] == "other@example.com")

        response = client.patch(f"/api/users/{agent['user_id']}/toggle-status", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["active_status"] is False

        # deactivated accounts lose access immediately
        assert client.get("/api/users/me", headers=other_headers).status_code == 403

    def test_admin_cannot_toggle_self(self, client, auth_headers):
        me = client.get("/api/users/me", headers=auth_headers).json()
        response = client.patch(f"/api/users/{me['user_id']}/toggle-status", headers=auth_headers)
        assert response.status_code == 400

    def test_admin_creates_and_reads_users(self, client, auth_headers, other_headers):
        payload = {"name": "Site Manager", "email": "Manager@Example.com", "password": "secret123", "role": "admin"}
        assert client.post("/api/users", json=payload, headers=other_headers).status_code == 403

        response = client.post("/api/users", json=payload, headers=auth_headers)
        assert response.status_code == 201, response.text
        created = response.json()["data"]
        assert created["email"] == "manager@example.com"
        assert created["role"] == "admin"
        assert created["active_status"] is True

        duplicate = client.post("/api/users", json=payload, headers=auth_headers)
        assert duplicate.status_code == 409
        assert duplicate.json()["message"] == "Email already registered"

        response = client.get(f"/api/users/{created['user_id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Site Manager"

        # the new account can log in with the password the admin set
        login = client.post("/api/auth/login", json={"email": "manager@example.com", "password": "secret123"})
        assert login.status_code == 200

    def test_get_user_errors(self, client, auth_headers):
        assert client.get("/api/users/not-an-id", headers=auth_headers).status_code == 400
        assert client.get("/api/users/650000000000000000000099", headers=auth_headers).status_code == 404

    def test_user_statistics(self, client, auth_headers, other_headers):
        assert client.get("/api/users/stats", headers=other_headers).status_code == 403

        agent = next(
            u for u in client.get("/api/users", headers=auth_headers).json()["data"]
            if u["email"] == "other@example.com"
        )
        client.patch(f"/api/users/{agent['user_id']}/toggle-status", headers=auth_headers)

        response = client.get("/api/users/stats", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"] == {
            "total_users": 2,
            "active_users": 1,
            "inactive_users": 1,
            "total_admins": 1,
            "total_agents": 1,
            "users_with_phone": 0
        }

    def test_admin_updates_user(self, client, auth_headers, other_headers):
        agent = client.get("/api/users/me", headers=other_headers).json()

        response = client.put(
            f"/api/users/{agent['user_id']}",
            json={"name": "Promoted Agent", "role": "admin", "phone": "+923001234567"},
            headers=auth_headers
        )
        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert (data["name"], data["role"], data["phone"]) == ("Promoted Agent", "admin", "+923001234567")

        response = client.put(f"/api/users/{agent['user_id']}", json={"phone": ""}, headers=auth_headers)
        assert response.json()["data"]["phone"] is None

        taken = client.put(
            f"/api/users/{agent['user_id']}", json={"email": "owner@example.com"}, headers=auth_headers
        )
        assert taken.status_code == 409

        assert client.put(
            f"/api/users/{agent['user_id']}", json={"password": "x"}, headers=auth_headers
        ).status_code == 400

    def test_admin_cannot_change_own_role(self, client, auth_headers):
        me = client.get("/api/users/me", headers=auth_headers).json()
        response = client.put(f"/api/users/{me['user_id']}", json={"role": "agent"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["message"] == "You cannot change your own role or status"

    def test_admin_deletes_user(self, client, auth_headers, other_headers):
        agent = client.get("/api/users/me", headers=other_headers).json()
        me = client.get("/api/users/me", headers=auth_headers).json()

        assert client.delete(f"/api/users/{me['user_id']}", headers=auth_headers).status_code == 400

        response = client.delete(f"/api/users/{agent['user_id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["email"] == "other@example.com"

        assert client.get(f"/api/users/{agent['user_id']}", headers=auth_headers).status_code == 404
        # tokens of a removed account stop working
        assert client.get("/api/users/me", headers=other_headers).status_code == 401


class TestProjects:

    def test_create_normalises_code_and_zeroes_totals(self, client, auth_headers):
        project = create_project(client, auth_headers)

        assert project["code"] == "RT-01"
        assert project["total_income"] == 0.0
        assert project["total_expense"] == 0.0
        assert project["balance"] == 0.0
        assert "total_income_cents" not in project
        assert project["status"] == "ACTIVE"

    def test_code_is_unique_per_owner(self, client, auth_headers, other_headers):
        create_project(client, auth_headers)
        response = client.post("/api/projects", json={"title": "Another", "code": "RT-01"}, headers=auth_headers)
        assert response.status_code == 409

        # another owner may reuse it
        create_project(client, other_headers)

    def test_end_date_before_start_date(self, client, auth_headers):
        response = client.post("/api/projects", json={
            "title": "Backwards", "code": "BK",
            "start_date": "2024-05-01T00:00:00", "end_date": "2024-04-01T00:00:00"
        }, headers=auth_headers)
        assert response.status_code == 400

    def test_accumulators_cannot_be_patched(self, client, auth_headers):
        project = create_project(client, auth_headers)
        response = client.put(
            f"/api/projects/{project['_id']}", json={"total_income": 1e6}, headers=auth_headers
        )
        assert response.status_code == 400
        assert project_financial(client, auth_headers, project["_id"])["total_income"] == 0.0

    def test_update_status_and_lookup_by_code(self, client, auth_headers):
        project = create_project(client, auth_headers)

        response = client.put(f"/api/projects/{project['_id']}", json={"title": "Riverside Tower II"}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["title"] == "Riverside Tower II"

        response = client.patch(f"/api/projects/{project['_id']}/status", json={"status": "ON_HOLD"}, headers=auth_headers)
        assert response.json()["data"]["status"] == "ON_HOLD"

        response = client.get("/api/projects/code/rt-01", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["title"] == "Riverside Tower II"

    def test_list_and_stats(self, client, auth_headers, ledger_setup):
        create_project(client, auth_headers, code="SECOND", initial_budget=10000)

        response = client.get("/api/projects", headers=auth_headers)
        body = response.json()
        assert body["pagination"]["total"] == 2
        by_code = {p["code"]: p for p in body["data"]}
        assert by_code["RT-01"]["parties_summary"] == {"total": 2, "clients": 1, "vendors": 1}

        stats = client.get("/api/projects/stats", headers=auth_headers).json()["data"]
        assert stats["projects"]["total_projects"] == 2
        assert stats["projects"]["total_budget"] == 60000.0
        assert stats["parties"] == {"total_parties": 2, "total_clients": 1, "total_vendors": 1}

    def test_other_users_project_is_not_found(self, client, auth_headers, other_headers):
        project = create_project(client, auth_headers)
        response = client.get(f"/api/projects/{project['_id']}", headers=other_headers)
        assert response.status_code == 404
        assert response.json()["message"] == "Project not found"

    def test_malformed_project_id(self, client, auth_headers):
        response = client.get("/api/projects/not-an-id", headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid project ID format"

    def test_delete_requires_no_parties_unless_forced(self, client, auth_headers, ledger_setup):
        project, _, _ = ledger_setup

        response = client.delete(f"/api/projects/{project['_id']}", headers=auth_headers)
        assert response.status_code == 400

        response = client.delete(f"/api/projects/{project['_id']}/force", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["parties_deleted"] == 2
        assert client.get(f"/api/projects/{project['_id']}", headers=auth_headers).status_code == 404

    def test_delete_empty_project(self, client, auth_headers):
        project = create_project(client, auth_headers)
        response = client.delete(f"/api/projects/{project['_id']}", headers=auth_headers)
        assert response.status_code == 200


class TestParties:

    def test_name_unique_within_project(self, client, auth_headers, ledger_setup):
        project, _, _ = ledger_setup
        response = client.post(
            f"/api/projects/{project['_id']}/parties",
            json={"name": "Harbor Estates", "party_type": "VENDOR"},
            headers=auth_headers
        )
        assert response.status_code == 409

    def test_contact_fields_merge(self, client, auth_headers):
        project = create_project(client, auth_headers)
        party = create_party(
            client, auth_headers, project["_id"], "Glass Works", "VENDOR",
            contact={"email": "Sales@GlassWorks.com", "phone": "0300 1234567"}
        )
        assert party["contact"]["email"] == "sales@glassworks.com"

        response = client.put(
            f"/api/projects/{project['_id']}/parties/{party['_id']}",
            json={"contact": {"address": "Plot 4, Industrial Area"}},
            headers=auth_headers
        )
        contact = response.json()["data"]["contact"]
        assert contact == {
            "email": "sales@glassworks.com",
            "phone": "0300 1234567",
            "address": "Plot 4, Industrial Area"
        }

    def test_party_type_frozen_by_active_transactions(self, client, auth_headers, ledger_setup):
        project, client_party, _ = ledger_setup
        url = f"/api/projects/{project['_id']}/parties/{client_party['_id']}"

        tx = create_transaction(client, auth_headers, project["_id"], client_party["_id"], "income", 100).json()["data"]
        response = client.put(url, json={"party_type": "VENDOR"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["details"]["active_transactions"] == 1

        client.delete(f"/api/transactions/{tx['_id']}", headers=auth_headers)
        response = client.put(url, json={"party_type": "VENDOR"}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["party_type"] == "VENDOR"

    def test_list_filter_and_stats(self, client, auth_headers, ledger_setup):
        project, _, _ = ledger_setup

        response = client.get(f"/api/projects/{project['_id']}/parties?party_type=CLIENT", headers=auth_headers)
        assert [p["name"] for p in response.json()["data"]] == ["Harbor Estates"]

        stats = client.get(f"/api/projects/{project['_id']}/parties-stats", headers=auth_headers).json()["data"]
        assert stats == {"total_parties": 2, "total_clients": 1, "total_vendors": 1}

    def test_delete_party(self, client, auth_headers, ledger_setup):
        project, _, vendor_party = ledger_setup
        url = f"/api/projects/{project['_id']}/parties/{vendor_party['_id']}"

        assert client.delete(url, headers=auth_headers).status_code == 200
        assert client.get(url, headers=auth_headers).status_code == 404


class TestTransactions:

    def test_fractional_amounts_reverse_exactly_over_http(self, client, auth_headers, ledger_setup):
        project, client_party, _ = ledger_setup
        created = [
            create_transaction(client, auth_headers, project["_id"], client_party["_id"], "income", amount).json()["data"]
            for amount in (0.1, 0.2)
        ]
        financial = project_financial(client, auth_headers, project["_id"])
        assert (financial["total_income"], financial["balance"]) == (0.3, 0.3)

        for tx in created:
            assert client.delete(f"/api/transactions/{tx['_id']}", headers=auth_headers).status_code == 200

        financial = project_financial(client, auth_headers, project["_id"])
        assert (financial["total_income"], financial["total_expense"], financial["balance"]) == (0.0, 0.0, 0.0)

    def test_ledger_scenario_over_http(self, client, auth_headers, ledger_setup):
        project, client_party, vendor_party = ledger_setup
        pid = project["_id"]

        t1 = create_transaction(client, auth_headers, pid, client_party["_id"], "INCOME", 500)
        assert t1.status_code == 201
        t1 = t1.json()["data"]
        assert t1["type"] == "income"
        assert t1["party"]["name"] == "Harbor Estates"

        t2 = create_transaction(client, auth_headers, pid, vendor_party["_id"], "expense", 200).json()["data"]
        financial = project_financial(client, auth_headers, pid)
        assert (financial["total_income"], financial["total_expense"], financial["balance"]) == (500.0, 200.0, 300.0)

        response = client.put(f"/api/transactions/{t1['_id']}", json={"amount": 700}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["amount"] == 700.0

        response = client.delete(f"/api/transactions/{t2['_id']}", headers=auth_headers)
        assert response.status_code == 200

        financial = project_financial(client, auth_headers, pid)
        assert (financial["total_income"], financial["total_expense"], financial["balance"]) == (700.0, 0.0, 700.0)
        assert financial["net_profit"] == 700.0
        assert financial["remaining_budget"] == 50000.0

        check = client.get(f"/api/projects/{pid}/ledger-check", headers=auth_headers).json()["data"]
        assert check["consistent"] is True

    def test_policy_violation(self, client, auth_headers, ledger_setup):
        project, client_party, _ = ledger_setup

        response = create_transaction(client, auth_headers, project["_id"], client_party["_id"], "expense", 100)

        assert response.status_code == 400
        assert response.json()["message"] == "CLIENT party can only have INCOME transactions"
        assert project_financial(client, auth_headers, project["_id"])["total_expense"] == 0.0

    def test_invalid_type_and_amount(self, client, auth_headers, ledger_setup):
        project, client_party, _ = ledger_setup

        response = create_transaction(client, auth_headers, project["_id"], client_party["_id"], "refund", 100)
        assert response.status_code == 400

        response = create_transaction(client, auth_headers, project["_id"], client_party["_id"], "income", 0)
        assert response.status_code == 400
        assert response.json()["message"] == "Amount must be greater than 0"

    def test_list_with_summary(self, client, auth_headers, ledger_setup):
        project, client_party, vendor_party = ledger_setup
        create_transaction(client, auth_headers, project["_id"], client_party["_id"], "income", 1000)
        create_transaction(client, auth_headers, project["_id"], vendor_party["_id"], "expense", 400)

        body = client.get("/api/transactions?type=expense", headers=auth_headers).json()
        assert body["pagination"]["total"] == 1
        assert body["summary"]["total_expense"] == 400.0

        body = client.get(f"/api/transactions/project/{project['_id']}", headers=auth_headers).json()
        assert body["summary"] == {
            "total_income": 1000.0,
            "total_expense": 400.0,
            "net_amount": 600.0,
            "total_transactions": 2
        }
        assert body["project"]["balance"] == 600.0

    def test_project_and_party_are_immutable(self, client, auth_headers, ledger_setup):
        project, client_party, _ = ledger_setup
        tx = create_transaction(client, auth_headers, project["_id"], client_party["_id"], "income", 10).json()["data"]

        response = client.put(f"/api/transactions/{tx['_id']}", json={"party_id": client_party["_id"]}, headers=auth_headers)
        assert response.status_code == 400

    def test_other_user_cannot_reach_transaction(self, client, auth_headers, other_headers, ledger_setup):
        project, client_party, _ = ledger_setup
        tx = create_transaction(client, auth_headers, project["_id"], client_party["_id"], "income", 10).json()["data"]

        assert client.get(f"/api/transactions/{tx['_id']}", headers=other_headers).status_code == 404
        assert client.delete(f"/api/transactions/{tx['_id']}", headers=other_headers).status_code == 404
        assert client.get("/api/transactions", headers=other_headers).json()["pagination"]["total"] == 0


class TestReconcile:

    def test_reconcile_rebuilds_totals(self, client, auth_headers, ledger_setup, db):
        project, client_party, _ = ledger_setup
        create_transaction(client, auth_headers, project["_id"], client_party["_id"], "income", 250)

        # drift written outside the engine
        asyncio.run(db["projects"].update_one(
            {"_id": ObjectId(project["_id"])}, {"$set": {"total_income_cents": 99900, "balance_cents": 99900}}
        ))

        check = client.get(f"/api/projects/{project['_id']}/ledger-check", headers=auth_headers).json()["data"]
        assert check["issues"] == ["TOTAL_INCOME_MISMATCH"]

        response = client.post(f"/api/projects/{project['_id']}/reconcile", headers=auth_headers)
        data = response.json()["data"]
        assert data["was_consistent"] is False
        assert data["project"]["total_income"] == 250.0
        assert data["project"]["balance"] == 250.0

        activity = client.get(f"/api/projects/{project['_id']}/activity", headers=auth_headers).json()["data"]
        assert {entry["action_type"] for entry in activity} >= {"CREATE", "RECONCILE"}
