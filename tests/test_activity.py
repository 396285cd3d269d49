import logging

from sqlalchemy.exc import OperationalError

from backoffice.models import ActivityLog, Client
from backoffice.services import activity


def test_mutation_succeeds_when_activity_write_fails(auth_client, app, monkeypatch, caplog):
    def _broken(**kwargs):
        raise OperationalError("INSERT INTO activity_logs", {}, Exception("disk full"))

    monkeypatch.setattr(activity, "ActivityLog", _broken)
    with caplog.at_level(logging.ERROR, logger="backoffice.services.activity"):
        resp = auth_client.post("/api/admin/clients", json={"email": "new@x.com", "name": "New"})

    assert resp.status_code == 201
    with app.app_context():
        assert Client.query.filter_by(email="new@x.com").count() == 1
        assert ActivityLog.query.count() == 0

    failures = [r for r in caplog.records if r.getMessage() == "activity.write_failed"]
    assert len(failures) == 1
    assert failures[0].entry["action"] == "create_client"


def test_failed_requests_discard_queued_activity(auth_client, make_client, app):
    make_client(email="taken@x.com")
    resp = auth_client.post("/api/admin/clients", json={"email": "taken@x.com", "name": "Dup"})
    assert resp.status_code == 400
    with app.app_context():
        assert ActivityLog.query.count() == 0


def test_activity_records_caller_ip(auth_client, app):
    resp = auth_client.post("/api/admin/clients", json={"email": "ip@x.com", "name": "Ip"},
                            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
    assert resp.status_code == 201
    with app.app_context():
        assert ActivityLog.query.one().ip_address == "203.0.113.7"
