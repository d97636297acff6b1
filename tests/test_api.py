import importlib
import sqlite3
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from config import settings
from loan import utcnow
from stock_ledger import StockLedger

HEADERS = {"X-API-Key": settings.api_key}


@pytest.fixture
def client(db_file):
    # db_file points LIBRARY_DB_FILE at a per-test database; reload api so its
    # global Library() instance picks it up
    import api as api_module

    importlib.reload(api_module)
    with TestClient(api_module.app) as test_client:
        yield test_client


@pytest.fixture
def seeded(client):
    resource = client.post("/resources", headers=HEADERS, json={"title": "Platero y yo", "total_quantity": 5}).json()
    person = client.post("/people", headers=HEADERS, json={"full_name": "Lucía Ferrer"}).json()
    return resource["id"], person["id"]


def borrow(client, person_id, resource_id, quantity=1):
    return client.post(
        "/loans", headers=HEADERS, json={"person_id": person_id, "resource_id": resource_id, "quantity": quantity}
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["db"] is True


def test_mutating_routes_require_valid_api_key(client):
    response = client.post("/people", headers={"X-API-Key": "invalid-key"}, json={"full_name": "X"})
    assert response.status_code == 403


def test_create_loan(client, seeded):
    resource_id, person_id = seeded
    response = borrow(client, person_id, resource_id, 2)

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "active"
    assert body["display_status"] == "active"
    assert body["is_overdue"] is False
    assert body["returned_date"] is None

    resource = client.get(f"/resources/{resource_id}").json()
    assert resource["available_quantity"] == 3
    assert resource["total_loans"] == 1

    loan = client.get(f"/loans/{body['id']}")
    assert loan.status_code == 200
    assert loan.json()["quantity"] == 2


def test_create_loan_insufficient_stock(client, seeded):
    resource_id, person_id = seeded
    response = borrow(client, person_id, resource_id, 5)
    assert response.status_code == 201

    other = client.post("/people", headers=HEADERS, json={"full_name": "Hugo Prat"}).json()
    response = borrow(client, other["id"], resource_id, 1)
    assert response.status_code == 409
    assert response.json()["code"] == "insufficient_stock"


def test_create_loan_invalid_quantity(client, seeded):
    resource_id, person_id = seeded
    response = borrow(client, person_id, resource_id, 50)
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"
    assert client.get(f"/resources/{resource_id}").json()["available_quantity"] == 5


def test_create_loan_missing_person(client, seeded):
    resource_id, _ = seeded
    response = borrow(client, "nobody", resource_id)
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_create_loan_inactive_person(client, seeded):
    resource_id, _ = seeded
    person = client.post("/people", headers=HEADERS, json={"full_name": "Eva Soler", "active": False}).json()

    response = borrow(client, person["id"], resource_id)
    assert response.status_code == 422
    assert response.json()["code"] == "person_not_eligible"
    assert response.json()["reason"] == "Person account is inactive"


def test_create_loan_resource_not_loanable(client, seeded):
    _, person_id = seeded
    resource = client.post(
        "/resources", headers=HEADERS, json={"title": "Mapa roto", "total_quantity": 1, "state": "damaged"}
    ).json()

    response = borrow(client, person_id, resource["id"])
    assert response.status_code == 409
    assert response.json()["code"] == "resource_not_loanable"


def test_return_loan(client, seeded):
    resource_id, person_id = seeded
    loan_id = borrow(client, person_id, resource_id, 2).json()["id"]

    response = client.post(f"/loans/{loan_id}/return", headers=HEADERS, json={"resource_condition": "damaged"})
    assert response.status_code == 200
    body = response.json()
    assert body["loan"]["status"] == "returned"
    assert body["condition_flagged"] is True
    assert body["was_overdue"] is False

    resource = client.get(f"/resources/{resource_id}").json()
    assert resource["available_quantity"] == 5
    assert resource["needs_review"] is True
    assert resource["last_reported_condition"] == "damaged"
    assert resource["state"] == "good"
    assert borrow(client, person_id, resource_id).status_code == 201

    again = client.post(f"/loans/{loan_id}/return", headers=HEADERS, json={})
    assert again.status_code == 409
    assert again.json()["code"] == "already_closed"


def test_return_in_the_future_is_rejected(client, seeded):
    resource_id, person_id = seeded
    loan_id = borrow(client, person_id, resource_id).json()["id"]

    future = (utcnow() + timedelta(days=2)).isoformat()
    response = client.post(f"/loans/{loan_id}/return", headers=HEADERS, json={"return_date": future})
    assert response.status_code == 400
    assert client.get(f"/loans/{loan_id}").json()["status"] == "active"


def test_mark_loan_lost(client, seeded):
    resource_id, person_id = seeded
    loan_id = borrow(client, person_id, resource_id, 2).json()["id"]

    response = client.post(f"/loans/{loan_id}/lost", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["loan"]["status"] == "lost"

    resource = client.get(f"/resources/{resource_id}").json()
    assert resource["total_quantity"] == 3
    assert resource["available_quantity"] == 3

    assert client.post(f"/loans/{loan_id}/lost", headers=HEADERS).status_code == 409


def test_renew_loan(client, seeded):
    resource_id, person_id = seeded
    loan = borrow(client, person_id, resource_id).json()

    response = client.post(f"/loans/{loan['id']}/renew", headers=HEADERS, json={})
    assert response.status_code == 200
    assert response.json()["due_date"] >= loan["due_date"]


def test_overdue_routes(client, lib, resource, person):
    # seeded in the past through the same database file
    loan = lib.create_loan(person.id, resource.id, 1, now=utcnow() - timedelta(days=20))

    overdue = client.get("/loans/overdue").json()
    assert [item["id"] for item in overdue] == [loan.id]
    assert overdue[0]["display_status"] == "overdue"
    assert overdue[0]["days_overdue"] == 5

    listed = client.get("/loans", params={"status": "overdue"}).json()
    assert listed["total"] == 1
    assert listed["items"][0]["is_overdue"] is True

    stats = client.get("/loans/overdue/stats").json()
    assert stats["total_overdue"] == 1
    assert stats["by_days_overdue"]["1-7"] == 1
    assert stats["by_person_type"] == {"student": 1}

    eligibility = client.get(f"/loans/can-borrow/{person.id}").json()
    assert eligibility["eligible"] is False
    assert eligibility["restrictions"]["has_overdue_loans"] is True

    renew = client.post(f"/loans/{loan.id}/renew", headers=HEADERS, json={})
    assert renew.status_code == 409
    assert renew.json()["code"] == "loan_overdue"


def test_list_loans_pagination(client, seeded):
    resource_id, person_id = seeded
    for _ in range(3):
        assert borrow(client, person_id, resource_id).status_code == 201

    page = client.get("/loans", params={"limit": 2}).json()
    assert page["total"] == 3
    assert page["total_pages"] == 2
    assert len(page["items"]) == 2

    assert client.get("/loans", params={"limit": settings.max_page_size + 1}).status_code == 422
    assert client.get("/loans", params={"status": "pending"}).status_code == 400


def test_loan_statistics(client, seeded):
    resource_id, person_id = seeded
    loan_id = borrow(client, person_id, resource_id).json()["id"]
    client.post(f"/loans/{loan_id}/return", headers=HEADERS, json={})

    stats = client.get("/loans/statistics").json()
    assert stats["total_loans"] == 1
    assert stats["returned_loans"] == 1
    assert stats["most_borrowed_resources"][0]["resource_id"] == resource_id


def test_can_borrow_unknown_person(client):
    assert client.get("/loans/can-borrow/nobody").status_code == 404


def test_unknown_loan(client):
    response = client.get("/loans/missing")
    assert response.status_code == 404
    assert response.json()["detail"] == "Loan missing not found."


def test_failed_stock_release_is_a_generic_error(client, seeded, monkeypatch):
    resource_id, person_id = seeded
    loan_id = borrow(client, person_id, resource_id).json()["id"]

    def broken(self, loan_id, conn=None):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(StockLedger, "release_for_loan", broken)
    monkeypatch.setattr("api.library.returns.backoff", 0)

    response = client.post(f"/loans/{loan_id}/return", headers=HEADERS, json={})
    assert response.status_code == 500
    assert response.json()["code"] == "internal_error"
    assert "database is locked" not in response.json()["detail"]
