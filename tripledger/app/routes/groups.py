"""
routes/groups.py — Group and membership route handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - No business logic. No DB queries. No bare SQL.

Endpoints (base url_prefix=/api/v1/groups):
  POST   /groups/                       → 201  create group
  GET    /groups/?user_id=:uid          → 200  list a user's groups
  GET    /groups/:id                    → 200  get group + members
  POST   /groups/:id/members            → 201  add member
  DELETE /groups/:id/members/:uid       → 200  remove member (never the owner)
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from tripledger.app.errors import AppError, ErrorCode
from tripledger.app.extensions import db
from tripledger.app.schemas.group_schema import AddMemberSchema, CreateGroupSchema
from tripledger.app.services import group_service

groups_bp = Blueprint("groups", __name__)


@groups_bp.route("/", methods=["POST"])
def create_group():
    """POST /groups — Create a new group. The owner becomes the first member."""
    data = CreateGroupSchema().load(request.get_json(force=True) or {})
    result = group_service.create_group(data=data, session=db.session)
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 201


@groups_bp.route("/", methods=["GET"])
def list_groups():
    """GET /groups?user_id= — List all groups the user belongs to."""
    user_id = request.args.get("user_id", type=int)
    if user_id is None:
        raise AppError(
            ErrorCode.MISSING_FIELD,
            "The user_id query parameter is required.",
            400,
            field="user_id",
        )
    result = group_service.list_groups(user_id=user_id, session=db.session)
    return jsonify({"data": result, "warnings": []}), 200


@groups_bp.route("/<int:group_id>", methods=["GET"])
def get_group(group_id: int):
    """GET /groups/:id — Group details with member list."""
    result = group_service.get_group(group_id=group_id, session=db.session)
    return jsonify({"data": result, "warnings": []}), 200


@groups_bp.route("/<int:group_id>/members", methods=["POST"])
def add_member(group_id: int):
    """POST /groups/:id/members — Add a user to the group."""
    data = AddMemberSchema().load(request.get_json(force=True) or {})
    result = group_service.add_member(
        group_id=group_id,
        target_user_id=data["user_id"],
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 201


@groups_bp.route("/<int:group_id>/members/<int:target_uid>", methods=["DELETE"])
def remove_member(group_id: int, target_uid: int):
    """DELETE /groups/:id/members/:uid — Remove a member other than the owner."""
    group_service.remove_member(
        group_id=group_id,
        target_user_id=target_uid,
        session=db.session,
    )
    db.session.commit()
    return jsonify({
        "data": {
            "removed": True,
            "group_id": group_id,
            "user_id": target_uid,
        },
        "warnings": [],
    }), 200
