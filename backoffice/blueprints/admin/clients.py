from flask import jsonify
from sqlalchemy import func

from backoffice.errors import Conflict, NotFound
from backoffice.extensions import db
from backoffice.models import Client, Payment, CLIENT_ARCHIVED, PAY_SUCCEEDED
from backoffice.schemas import ClientCreate, ClientListQuery, ClientUpdate
from backoffice.services.activity import log_activity
from backoffice.services.auth import require_admin, require_auth
from backoffice.services.filters import Eq, FilterSpec, Search, paginate
from backoffice.utils.validators import clean_str, normalize_phone
from . import bp, json_body, query_args

CLIENT_FILTERS = FilterSpec(Client, eq=("status",), search=("name", "email", "company"))


def _get_client(client_id: int) -> Client:
    client = db.session.get(Client, client_id)
    if client is None:
        raise NotFound("Client not found")
    return client


def _email_taken(email: str, *, exclude_id: int | None = None) -> bool:
    q = Client.query.filter(func.lower(Client.email) == email)
    if exclude_id is not None:
        q = q.filter(Client.id != exclude_id)
    return db.session.query(q.exists()).scalar()


@bp.get("/clients")
@require_admin
def list_clients():
    q = ClientListQuery.model_validate(query_args())
    query = CLIENT_FILTERS.apply(Client.query, [Eq("status", q.status), Search(q.search or "")])
    items, pagination = paginate(query.order_by(Client.created_at.desc(), Client.id.desc()), q.page, q.limit)
    return jsonify({
        "success": True,
        "data": {"clients": [c.to_dict() for c in items], "pagination": pagination},
    }), 200


@bp.post("/clients")
@require_admin
def create_client():
    admin = require_auth()
    body = ClientCreate.model_validate(json_body())
    if _email_taken(body.email):
        raise Conflict("Client with this email already exists")

    client = Client(
        email=body.email,
        name=clean_str(body.name),
        company=clean_str(body.company),
        phone=normalize_phone(body.phone),
        notes=body.notes or None,
        status=body.status,
    )
    db.session.add(client)
    db.session.commit()

    log_activity(admin=admin, action="create_client", entity_type="client", entity_id=client.id,
                 client_id=client.id, details={"email": client.email, "name": client.name})
    return jsonify({"success": True, "data": client.to_dict()}), 201


@bp.get("/clients/<int:client_id>")
@require_admin
def get_client(client_id: int):
    client = _get_client(client_id)
    paid_total = (
        db.session.query(func.coalesce(func.sum(Payment.amount_cents), 0))
        .filter(Payment.client_id == client.id, Payment.status == PAY_SUCCEEDED)
        .scalar()
    )
    data = client.to_dict()
    data["projects"] = [p.to_dict() for p in client.projects]
    data["subscriptions"] = [s.to_dict() for s in client.subscriptions]
    data["recent_payments"] = [
        p.to_dict() for p in client.payments.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(10)
    ]
    data["total_paid_cents"] = int(paid_total or 0)
    return jsonify({"success": True, "data": data}), 200


@bp.patch("/clients/<int:client_id>")
@require_admin
def update_client(client_id: int):
    admin = require_auth()
    body = ClientUpdate.model_validate(json_body())
    client = _get_client(client_id)

    changes = body.model_dump(exclude_unset=True)
    if "email" in changes:
        if changes["email"] is None:
            changes.pop("email")
        elif _email_taken(changes["email"], exclude_id=client.id):
            raise Conflict("Client with this email already exists")
    if changes.get("name") is None:
        changes.pop("name", None)
    if changes.get("status") is None:
        changes.pop("status", None)
    if "phone" in changes:
        changes["phone"] = normalize_phone(changes["phone"])
    if "company" in changes:
        changes["company"] = clean_str(changes["company"])

    for key, value in changes.items():
        setattr(client, key, value)
    db.session.commit()

    log_activity(admin=admin, action="update_client", entity_type="client", entity_id=client.id,
                 client_id=client.id, details={"fields": sorted(changes)})
    return jsonify({"success": True, "data": client.to_dict()}), 200


@bp.delete("/clients/<int:client_id>")
@require_admin
def archive_client(client_id: int):
    """Soft delete: rows with payment history are never removed."""
    admin = require_auth()
    client = _get_client(client_id)
    previous = client.status
    if previous != CLIENT_ARCHIVED:
        client.status = CLIENT_ARCHIVED
        db.session.commit()
        log_activity(admin=admin, action="archive_client", entity_type="client", entity_id=client.id,
                     client_id=client.id, details={"previous_status": previous})
    return jsonify({"success": True, "data": client.to_dict()}), 200
