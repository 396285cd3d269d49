from flask import Blueprint, request

from backoffice.errors import ValidationError

bp = Blueprint("admin", __name__)


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def query_args() -> dict:
    # blank query params mean "not set"
    return {k: v for k, v in request.args.items() if v != ""}


from . import payments, subscriptions, clients, projects, connect  # noqa: E402,F401
