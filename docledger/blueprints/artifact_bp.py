"""
Artifact Blueprint — versioned project documents and their approval flow.

Routes:
  GET    /projects/<pid>/artifacts                 – current version per type
  POST   /projects/<pid>/artifacts                 – create (v1 or next draft)
  GET    /projects/<pid>/approval-steps            – approval chain
  POST   /projects/<pid>/approval-steps            – replace approval chain
  GET    /artifacts/<aid>                          – one version
  PATCH  /artifacts/<aid>                          – edit content (If-Match: updated_at)
  PUT    /artifacts/<aid>/title                    – rename
  DELETE /artifacts/<aid>                          – delete a draft
  GET    /artifacts/<aid>/versions                 – whole chain
  GET    /artifacts/<aid>/diff                     – artifact / parent / baseline
  POST   /artifacts/<aid>/revisions                – revise approved/rejected
  POST   /artifacts/<aid>/restore                  – restore an older version
  POST   /artifacts/<aid>/set-current              – move the current pointer
  GET    /artifacts/<aid>/approval                 – chain progress + actions
  POST   /artifacts/<aid>/submit                   – draft → submitted
  POST   /artifacts/<aid>/approve                  – submitted → approved
  POST   /artifacts/<aid>/request-changes          – submitted → changes_requested
  POST   /artifacts/<aid>/reject                   – submitted → rejected
"""

from flask import Blueprint, jsonify, request

from docledger.blueprints import current_actor, json_body
from docledger.services import approval_lifecycle, version_ledger
from docledger.services.role_gate import require_member
from docledger.utils.errors import register_ledger_error_handlers

artifact_bp = Blueprint("artifact_bp", __name__, url_prefix="/api/v1")
register_ledger_error_handlers(artifact_bp)


# ═════════════════════════════════════════════════════════════════════════════
# PROJECT-SCOPED
# ═════════════════════════════════════════════════════════════════════════════

@artifact_bp.route("/projects/<int:pid>/artifacts", methods=["GET"])
def list_artifacts(pid):
    """Current version of every artifact type in the project."""
    include_content = request.args.get("content", "false").lower() == "true"
    items = version_ledger.list_current(pid, current_actor())
    return jsonify([a.to_dict(include_content=include_content) for a in items])


@artifact_bp.route("/projects/<int:pid>/artifacts", methods=["POST"])
def create_artifact(pid):
    """Create an artifact.

    Body: { type, title?, content?, content_structured? }
    """
    data = json_body()
    art = version_ledger.create(
        pid,
        data.get("type"),
        current_actor(),
        data.get("content"),
        title=data.get("title"),
        content_structured=data.get("content_structured"),
    )
    return jsonify(art.to_dict()), 201


@artifact_bp.route("/projects/<int:pid>/approval-steps", methods=["GET"])
def list_approval_steps(pid):
    steps = approval_lifecycle.list_approval_steps(pid, current_actor())
    return jsonify([s.to_dict() for s in steps])


@artifact_bp.route("/projects/<int:pid>/approval-steps", methods=["POST"])
def configure_approval_steps(pid):
    """Body: { artifact_type?, steps: [{name, min_approvals}] }"""
    data = json_body()
    steps = approval_lifecycle.configure_approval_steps(
        pid, current_actor(), data.get("steps") or [], artifact_type=data.get("artifact_type"),
    )
    return jsonify([s.to_dict() for s in steps]), 201


# ═════════════════════════════════════════════════════════════════════════════
# SINGLE ARTIFACT
# ═════════════════════════════════════════════════════════════════════════════

@artifact_bp.route("/artifacts/<int:aid>", methods=["GET"])
def get_artifact(aid):
    actor = current_actor()
    art = version_ledger.get_artifact(aid)
    require_member(art.project_id, actor.user_id)
    return jsonify(art.to_dict())


@artifact_bp.route("/artifacts/<int:aid>", methods=["PATCH"])
def update_artifact(aid):
    """Edit title / content / content_structured.

    The ``If-Match`` header (or ``expected_updated_at`` in the body) carries
    the ``updated_at`` the client last read; a mismatch answers 409.
    """
    data = json_body()
    body_expected = data.pop("expected_updated_at", None)
    expected = request.headers.get("If-Match") or body_expected
    if expected:
        expected = expected.strip('"')
    art = version_ledger.update_content(aid, current_actor(), data, expected_updated_at=expected)
    return jsonify(art.to_dict())


@artifact_bp.route("/artifacts/<int:aid>/title", methods=["PUT"])
def rename_artifact(aid):
    data = json_body()
    art = approval_lifecycle.rename_title(aid, current_actor(), data.get("title"))
    return jsonify(art.to_dict(include_content=False))


@artifact_bp.route("/artifacts/<int:aid>", methods=["DELETE"])
def delete_artifact(aid):
    art = version_ledger.delete_draft_artifact(aid, current_actor())
    return jsonify({"message": "Artifact deleted", "id": art.id}), 200


@artifact_bp.route("/artifacts/<int:aid>/versions", methods=["GET"])
def list_versions(aid):
    items = version_ledger.list_versions(aid, current_actor())
    return jsonify([a.to_dict(include_content=False) for a in items])


@artifact_bp.route("/artifacts/<int:aid>/diff", methods=["GET"])
def diff_artifact(aid):
    return jsonify(version_ledger.get_diff(aid, current_actor()))


# ── Version pointer ──────────────────────────────────────────────────────────

@artifact_bp.route("/artifacts/<int:aid>/revisions", methods=["POST"])
def create_revision(aid):
    """Body: { reason?, revision_type?: material|minor }"""
    data = json_body()
    art = version_ledger.create_revision(
        aid, current_actor(),
        reason=data.get("reason"),
        revision_type=data.get("revision_type") or "material",
    )
    return jsonify(art.to_dict()), 201


@artifact_bp.route("/artifacts/<int:aid>/restore", methods=["POST"])
def restore_version(aid):
    data = json_body()
    art = version_ledger.restore_version(aid, current_actor(), reason=data.get("reason"))
    return jsonify(art.to_dict()), 201


@artifact_bp.route("/artifacts/<int:aid>/set-current", methods=["POST"])
def set_current(aid):
    art = version_ledger.set_current(aid, current_actor())
    return jsonify(art.to_dict(include_content=False))


# ── Approval ─────────────────────────────────────────────────────────────────

@artifact_bp.route("/artifacts/<int:aid>/approval", methods=["GET"])
def approval_status(aid):
    actor = current_actor()
    progress = approval_lifecycle.approval_progress(aid, actor)
    progress["available_actions"] = approval_lifecycle.available_actions(aid, actor)
    return jsonify(progress)


@artifact_bp.route("/artifacts/<int:aid>/submit", methods=["POST"])
def submit_artifact(aid):
    art = approval_lifecycle.submit(aid, current_actor())
    return jsonify(art.to_dict(include_content=False))


@artifact_bp.route("/artifacts/<int:aid>/approve", methods=["POST"])
def approve_artifact(aid):
    art = approval_lifecycle.approve(aid, current_actor())
    return jsonify(art.to_dict(include_content=False))


@artifact_bp.route("/artifacts/<int:aid>/request-changes", methods=["POST"])
def request_changes(aid):
    """Body: { reason }"""
    data = json_body()
    art = approval_lifecycle.request_changes(aid, current_actor(), data.get("reason"))
    return jsonify(art.to_dict(include_content=False))


@artifact_bp.route("/artifacts/<int:aid>/reject", methods=["POST"])
def reject_artifact(aid):
    """Body: { reason, confirmation_token }"""
    data = json_body()
    art = approval_lifecycle.reject_final(
        aid, current_actor(), data.get("reason"), data.get("confirmation_token"),
    )
    return jsonify(art.to_dict(include_content=False))
