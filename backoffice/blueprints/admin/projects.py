from flask import jsonify

from backoffice.errors import NotFound, ValidationError
from backoffice.extensions import db
from backoffice.models import Client, Payment, Project
from backoffice.schemas import ProjectCreate, ProjectListQuery, ProjectUpdate
from backoffice.services.activity import log_activity
from backoffice.services.auth import require_admin, require_auth
from backoffice.services.filters import Eq, FilterSpec, Search, paginate
from . import bp, json_body, query_args

PROJECT_FILTERS = FilterSpec(Project, eq=("client_id", "status"), search=("name", "description"))


def _get_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFound("Project not found")
    return project


@bp.get("/projects")
@require_admin
def list_projects():
    q = ProjectListQuery.model_validate(query_args())
    query = PROJECT_FILTERS.apply(Project.query, [
        Eq("client_id", q.client_id),
        Eq("status", q.status),
        Search(q.search or ""),
    ])
    items, pagination = paginate(query.order_by(Project.created_at.desc(), Project.id.desc()), q.page, q.limit)
    return jsonify({
        "success": True,
        "data": {"projects": [p.to_dict(with_client=True) for p in items], "pagination": pagination},
    }), 200


@bp.post("/projects")
@require_admin
def create_project():
    admin = require_auth()
    body = ProjectCreate.model_validate(json_body())
    if db.session.get(Client, body.client_id) is None:
        raise NotFound("Client not found")

    project = Project(**body.model_dump())
    db.session.add(project)
    db.session.commit()

    log_activity(admin=admin, action="create_project", entity_type="project", entity_id=project.id,
                 client_id=project.client_id, details={"name": project.name, "status": project.status})
    return jsonify({"success": True, "data": project.to_dict()}), 201


@bp.get("/projects/<int:project_id>")
@require_admin
def get_project(project_id: int):
    project = _get_project(project_id)
    data = project.to_dict(with_client=True)
    data["payments"] = [
        p.to_dict() for p in Payment.query.filter_by(project_id=project.id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
    ]
    return jsonify({"success": True, "data": data}), 200


@bp.patch("/projects/<int:project_id>")
@require_admin
def update_project(project_id: int):
    admin = require_auth()
    body = ProjectUpdate.model_validate(json_body())
    project = _get_project(project_id)

    changes = body.model_dump(exclude_unset=True)
    for key in ("name", "status"):
        if key in changes and changes[key] is None:
            changes.pop(key)

    start = changes.get("start_date", project.start_date)
    end = changes.get("end_date", project.end_date)
    if start and end and start > end:
        raise ValidationError("start_date must be on or before end_date")

    for key, value in changes.items():
        setattr(project, key, value)
    db.session.commit()

    log_activity(admin=admin, action="update_project", entity_type="project", entity_id=project.id,
                 client_id=project.client_id, details={"fields": sorted(changes)})
    return jsonify({"success": True, "data": project.to_dict()}), 200
