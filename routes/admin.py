import json

from flask import Blueprint, g, jsonify, request

from models.audit_log import AuditLog
from security.rbac import ADMIN_ACCESS, AUDIT_READ, permission_graph, require_permission
from services.state_machine import state_machine
from utils.audit import log_event
from utils.auth_context import login_required

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


@admin_bp.post("/cache/invalidate")
@login_required
@require_permission(ADMIN_ACCESS)
def invalidate_caches():
    """Drop the cached booking graph and role -> permission map after admin edits."""
    data = request.get_json(silent=True) or {}
    targets = data.get("targets") or ["state_machine", "permissions"]
    unknown = [t for t in targets if t not in ("state_machine", "permissions")]
    if unknown:
        return jsonify(error="Unknown cache target", targets=unknown), 400

    if "state_machine" in targets:
        state_machine.invalidate()
    if "permissions" in targets:
        permission_graph.invalidate()

    log_event("CACHE_INVALIDATE", actor_id=g.user.id, metadata={"targets": targets})
    return jsonify(invalidated=targets), 200


@admin_bp.get("/audit-logs")
@login_required
@require_permission(AUDIT_READ)
def list_audit_logs():
    limit = request.args.get("limit", type=int) or 200
    limit = max(1, min(limit, 500))

    q = AuditLog.query
    action = request.args.get("action")
    if action:
        q = q.filter(AuditLog.action == action)
    entity_id = request.args.get("entity_id")
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)

    rows = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit).all()
    return jsonify([
        {
            "id": r.id,
            "timestamp": r.timestamp.isoformat(),
            "actor_id": r.actor_id,
            "action": r.action,
            "entity": r.entity,
            "entity_id": r.entity_id,
            "ip": r.ip,
            "metadata": json.loads(r.metadata_json) if r.metadata_json else None,
        }
        for r in rows
    ]), 200
