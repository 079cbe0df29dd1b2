"""
Change Request Blueprint — the delivery-lane kanban.

Routes:
  GET    /projects/<pid>/change-requests/board     – lanes, cards, WIP warnings
  POST   /projects/<pid>/change-requests           – create a card in intake
  GET    /change-requests/<cid>                    – one card
  PUT    /change-requests/<cid>                    – edit content fields
  PATCH  /change-requests/<cid>/delivery-status    – move between lanes
  POST   /change-requests/<cid>/submit             – analysis → review (locks)
  POST   /change-requests/<cid>/decision           – approver decision
  DELETE /change-requests/<cid>                    – delete a draft card
"""

from flask import Blueprint, jsonify

from docledger.blueprints import current_actor, json_body
from docledger.core.exceptions import ValidationError
from docledger.models.change_request import GOVERNANCE_FIELDS
from docledger.services import change_lane_engine as lanes
from docledger.services.role_gate import require_member
from docledger.utils.errors import register_ledger_error_handlers

change_request_bp = Blueprint("change_request_bp", __name__, url_prefix="/api/v1")
register_ledger_error_handlers(change_request_bp)


@change_request_bp.route("/projects/<int:pid>/change-requests/board", methods=["GET"])
def board(pid):
    return jsonify(lanes.compute_board(pid, current_actor()))


@change_request_bp.route("/projects/<int:pid>/change-requests", methods=["POST"])
def create_change_request(pid):
    """Body: { title, summary?, priority?, impact_analysis?, artifact_id?, requester_name? }"""
    cr = lanes.create_change_request(pid, current_actor(), json_body())
    return jsonify(cr.to_dict()), 201


@change_request_bp.route("/change-requests/<int:cid>", methods=["GET"])
def get_change_request(cid):
    actor = current_actor()
    cr = lanes.get_change_request(cid)
    require_member(cr.project_id, actor.user_id)
    return jsonify(cr.to_dict())


@change_request_bp.route("/change-requests/<int:cid>", methods=["PUT"])
def update_change_request(cid):
    cr = lanes.update_change_request(cid, current_actor(), json_body())
    return jsonify(cr.to_dict())


@change_request_bp.route("/change-requests/<int:cid>/delivery-status", methods=["PATCH"])
def patch_delivery_status(cid):
    """Body: { delivery_status }

    Decision fields cannot ride along with a lane move.
    """
    data = json_body()
    smuggled = sorted(set(data) & GOVERNANCE_FIELDS)
    if smuggled:
        raise ValidationError(
            f"Governance field(s) cannot be changed by a lane move: {', '.join(smuggled)}",
            details={k: "not allowed" for k in smuggled},
        )
    move = lanes.patch_delivery_status(cid, current_actor(), data.get("delivery_status"))
    return jsonify(move.to_dict())


@change_request_bp.route("/change-requests/<int:cid>/submit", methods=["POST"])
def submit_change_request(cid):
    cr = lanes.submit_for_approval(cid, current_actor())
    return jsonify(cr.to_dict())


@change_request_bp.route("/change-requests/<int:cid>/decision", methods=["POST"])
def decide_change_request(cid):
    """Body: { decision: approved|rejected|rework, rationale? }"""
    data = json_body()
    cr = lanes.record_decision(cid, current_actor(), data.get("decision"), data.get("rationale"))
    return jsonify(cr.to_dict())


@change_request_bp.route("/change-requests/<int:cid>", methods=["DELETE"])
def delete_change_request(cid):
    cr = lanes.delete_draft(cid, current_actor())
    return jsonify({"message": "Change request deleted", "id": cr.id}), 200
