from datetime import datetime, timezone


def _ids(resp):
    return sorted(p["id"] for p in resp.get_json()["data"]["payments"])


def test_filters_and_totals(auth_client, make_client, make_payment):
    a = make_client(email="a@example.com")
    b = make_client(email="b@example.com")
    p1 = make_payment(a, amount_cents=1000, intent="pi_1", paid_at=datetime(2026, 3, 1, 12, tzinfo=timezone.utc))
    p2 = make_payment(a, amount_cents=2500, intent="pi_2", payment_type="DEPOSIT",
                      paid_at=datetime(2026, 3, 31, 23, 30, tzinfo=timezone.utc))
    p3 = make_payment(b, amount_cents=4000, intent="pi_3", status="FAILED")

    resp = auth_client.get("/api/admin/payments")
    body = resp.get_json()["data"]
    assert _ids(resp) == sorted([p1, p2, p3])
    assert body["totals"] == {"total_amount_cents": 7500}
    assert body["pagination"] == {"page": 1, "limit": 20, "total": 3, "pages": 1}
    assert body["payments"][0]["client"]["email"] in ("a@example.com", "b@example.com")

    assert _ids(auth_client.get(f"/api/admin/payments?client_id={a}")) == sorted([p1, p2])
    assert _ids(auth_client.get("/api/admin/payments?status=FAILED")) == [p3]
    assert _ids(auth_client.get("/api/admin/payments?payment_type=DEPOSIT")) == [p2]

    # end_date is inclusive of the whole day
    resp = auth_client.get("/api/admin/payments?start_date=2026-03-02&end_date=2026-03-31")
    assert _ids(resp) == [p2]
    assert resp.get_json()["data"]["totals"]["total_amount_cents"] == 2500


def test_pagination(auth_client, make_client, make_payment):
    cid = make_client()
    for i in range(5):
        make_payment(cid, intent=f"pi_{i}")
    body = auth_client.get("/api/admin/payments?page=2&limit=2").get_json()["data"]
    assert len(body["payments"]) == 2
    assert body["pagination"] == {"page": 2, "limit": 2, "total": 5, "pages": 3}


def test_invalid_filters(auth_client):
    for qs in ("status=LOST", "payment_type=GIFT", "limit=500", "page=0",
               "start_date=2026-04-01&end_date=2026-03-01", "start_date=yesterday"):
        resp = auth_client.get(f"/api/admin/payments?{qs}")
        assert resp.status_code == 400, qs
        assert resp.get_json()["success"] is False


def test_unknown_payment(auth_client):
    resp = auth_client.get("/api/admin/payments/12345")
    assert resp.status_code == 404
    assert resp.get_json() == {"success": False, "error": "Payment not found"}
