"""
routes/users.py — User route handlers.

Endpoints (base url_prefix=/api/v1/users):
  POST /users                        → 201  register a user
  GET  /users/:id                    → 200  user detail
  GET  /users/by-username/:username  → 200  look a user up by username
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from tripledger.app.extensions import db
from tripledger.app.schemas.user_schema import RegisterUserSchema
from tripledger.app.services import user_service

users_bp = Blueprint("users", __name__)


@users_bp.route("/", methods=["POST"])
def register_user():
    """POST /users — Register a user and provision their addresses."""
    data = RegisterUserSchema().load(request.get_json(force=True) or {})
    user = user_service.register_user(data=data, session=db.session)
    db.session.commit()
    return jsonify({"data": user_service.build_user_dict(user), "warnings": []}), 201


@users_bp.route("/<int:user_id>", methods=["GET"])
def get_user(user_id: int):
    user = user_service.get_user(user_id=user_id, session=db.session)
    return jsonify({"data": user_service.build_user_dict(user), "warnings": []}), 200


@users_bp.route("/by-username/<string:username>", methods=["GET"])
def get_user_by_username(username: str):
    user = user_service.get_user_by_username(username=username, session=db.session)
    return jsonify({"data": user_service.build_user_dict(user), "warnings": []}), 200
