"""
Project Blueprint — project administration and the audit trail.

Routes:
  POST   /projects                       – create a project (caller becomes owner)
  GET    /projects/<pid>                 – project details
  GET    /projects/<pid>/members         – members and approvers
  POST   /projects/<pid>/members         – add member / change role
  POST   /projects/<pid>/approvers       – grant / revoke approver
  GET    /projects/<pid>/audit           – audit events (newest first)
"""

from flask import Blueprint, jsonify, request

from docledger.blueprints import current_actor, json_body, pagination_args
from docledger.services import audit_recorder, project_service
from docledger.services.role_gate import require_member
from docledger.utils.errors import register_ledger_error_handlers

project_bp = Blueprint("project_bp", __name__, url_prefix="/api/v1")
register_ledger_error_handlers(project_bp)


@project_bp.route("/projects", methods=["POST"])
def create_project():
    """Body: { code, name, description?, owner_display_name? }"""
    project = project_service.create_project(current_actor(), json_body())
    return jsonify(project.to_dict()), 201


@project_bp.route("/projects/<int:pid>", methods=["GET"])
def get_project(pid):
    actor = current_actor()
    project = project_service.get_project(pid)
    require_member(pid, actor.user_id)
    return jsonify(project.to_dict())


@project_bp.route("/projects/<int:pid>/members", methods=["GET"])
def list_members(pid):
    project_service.get_project(pid)
    return jsonify(project_service.list_members(pid, current_actor()))


@project_bp.route("/projects/<int:pid>/members", methods=["POST"])
def set_member(pid):
    """Body: { user_id, role: owner|editor|viewer, display_name? }"""
    data = json_body()
    member = project_service.set_member(
        pid, current_actor(), data.get("user_id"), data.get("role"), data.get("display_name"),
    )
    return jsonify(member.to_dict()), 201


@project_bp.route("/projects/<int:pid>/approvers", methods=["POST"])
def set_approver(pid):
    """Body: { user_id, is_active? }"""
    data = json_body()
    approver = project_service.set_approver(
        pid, current_actor(), data.get("user_id"), data.get("is_active", True),
    )
    return jsonify(approver.to_dict()), 201


@project_bp.route("/projects/<int:pid>/audit", methods=["GET"])
def list_audit(pid):
    """Query: artifact_id, change_id, limit, offset"""
    actor = current_actor()
    project_service.get_project(pid)
    require_member(pid, actor.user_id)
    limit, offset = pagination_args()
    events = audit_recorder.list_events(
        pid,
        artifact_id=request.args.get("artifact_id", type=int),
        change_id=request.args.get("change_id", type=int),
        limit=limit,
        offset=offset,
    )
    return jsonify({
        "items": [e.to_dict() for e in events],
        "limit": limit,
        "offset": offset,
    })
