from backoffice.extensions import db
from backoffice.models import ActivityLog, Client


def test_create_client_normalizes_fields(auth_client, app):
    resp = auth_client.post("/api/admin/clients", json={
        "email": "  Jane@Example.COM ", "name": "  Jane   Doe ", "phone": "1-555-123-4567", "company": "Acme",
    })
    assert resp.status_code == 201, resp.get_json()
    data = resp.get_json()["data"]
    assert data["email"] == "jane@example.com"
    assert data["name"] == "Jane Doe"
    assert data["phone"] == "(555) 123-4567"
    assert data["status"] == "ACTIVE"

    with app.app_context():
        entry = ActivityLog.query.one()
        assert (entry.action, entry.entity_type, entry.client_id) == ("create_client", "client", data["id"])


def test_duplicate_client_email(auth_client, make_client):
    make_client(email="dup@example.com")
    resp = auth_client.post("/api/admin/clients", json={"email": "DUP@example.com", "name": "Again"})
    assert resp.status_code == 400
    assert resp.get_json() == {"success": False, "error": "Client with this email already exists"}


def test_client_validation(auth_client):
    resp = auth_client.post("/api/admin/clients", json={"email": "nope", "name": "X"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Invalid email address"

    resp = auth_client.post("/api/admin/clients", json={"email": "ok@example.com", "name": "X", "status": "GONE"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Invalid client status"

    resp = auth_client.post("/api/admin/clients", json=["not", "an", "object"])
    assert resp.status_code == 400


def test_list_clients_search_and_status(auth_client, make_client):
    make_client(email="ann@acme.com", name="Ann", company="Acme")
    make_client(email="bob@other.com", name="Bob")
    make_client(email="cy@other.com", name="Cy 100%", status="INACTIVE")

    def names(qs):
        return sorted(c["name"] for c in auth_client.get(f"/api/admin/clients?{qs}").get_json()["data"]["clients"])

    assert names("search=acme") == ["Ann"]
    assert names("search=OTHER") == ["Bob", "Cy 100%"]
    assert names("search=100%25") == ["Cy 100%"]
    assert names("status=INACTIVE") == ["Cy 100%"]
    assert names("") == ["Ann", "Bob", "Cy 100%"]


def test_update_and_archive_client(auth_client, make_client, make_payment, app):
    cid = make_client()
    make_client(email="taken@example.com")

    resp = auth_client.patch(f"/api/admin/clients/{cid}", json={"company": "New Co", "phone": "+44 20 7946 0958"})
    assert resp.status_code == 200
    assert resp.get_json()["data"]["company"] == "New Co"
    assert resp.get_json()["data"]["phone"] == "+44 20 7946 0958"

    resp = auth_client.patch(f"/api/admin/clients/{cid}", json={"email": "taken@example.com"})
    assert resp.status_code == 400

    make_payment(cid)
    resp = auth_client.delete(f"/api/admin/clients/{cid}")
    assert resp.status_code == 200
    assert resp.get_json()["data"]["status"] == "ARCHIVED"

    with app.app_context():
        assert db.session.get(Client, cid) is not None
        actions = [a.action for a in ActivityLog.query.order_by(ActivityLog.id)]
        assert actions == ["update_client", "archive_client"]


def test_client_detail(auth_client, make_client, make_payment):
    cid = make_client()
    make_payment(cid, amount_cents=3000, intent="pi_a")
    make_payment(cid, amount_cents=999, intent="pi_b", status="FAILED")
    data = auth_client.get(f"/api/admin/clients/{cid}").get_json()["data"]
    assert data["total_paid_cents"] == 3000
    assert len(data["recent_payments"]) == 2
    assert data["projects"] == [] and data["subscriptions"] == []

    assert auth_client.get("/api/admin/clients/9999").status_code == 404


def test_project_lifecycle(auth_client, make_client, make_payment):
    cid = make_client()
    resp = auth_client.post("/api/admin/projects", json={
        "client_id": cid, "name": "Site rebuild", "start_date": "2026-01-05", "budget_cents": 500000,
    })
    assert resp.status_code == 201, resp.get_json()
    project = resp.get_json()["data"]
    assert project["status"] == "PLANNING"
    assert project["start_date"] == "2026-01-05"

    make_payment(cid, project_id=project["id"])

    resp = auth_client.patch(f"/api/admin/projects/{project['id']}", json={"status": "IN_PROGRESS"})
    assert resp.get_json()["data"]["status"] == "IN_PROGRESS"

    # end before the stored start
    resp = auth_client.patch(f"/api/admin/projects/{project['id']}", json={"end_date": "2025-12-31"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "start_date must be on or before end_date"

    detail = auth_client.get(f"/api/admin/projects/{project['id']}").get_json()["data"]
    assert detail["client"]["id"] == cid
    assert len(detail["payments"]) == 1

    listed = auth_client.get(f"/api/admin/projects?client_id={cid}&search=rebuild").get_json()["data"]
    assert [p["id"] for p in listed["projects"]] == [project["id"]]


def test_project_requires_existing_client(auth_client):
    resp = auth_client.post("/api/admin/projects", json={"client_id": 4242, "name": "Orphan"})
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Client not found"
