"""
Approval Blueprint — the approver's inbox.

Routes:
  GET    /approvals/inbox                          – artifacts and change requests awaiting my decision
"""

from flask import Blueprint, jsonify, request

from docledger.blueprints import current_actor
from docledger.services import approval_lifecycle
from docledger.utils.errors import register_ledger_error_handlers

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/v1")
register_ledger_error_handlers(approval_bp)


@approval_bp.route("/approvals/inbox", methods=["GET"])
def inbox():
    """Query: project_id?, limit? (1-200, default 50)"""
    limit = request.args.get("limit", 50, type=int)
    limit = min(max(limit, 1), 200)
    return jsonify(approval_lifecycle.pending_for_approver(
        current_actor(),
        project_id=request.args.get("project_id", type=int),
        limit=limit,
    ))
