"""Moderation Service HTTP handler - admin review queue.

Every endpoint requires `Authorization: Bearer <token>` accepted by the
runtime's admin verifier. Moderator actions are chained into the audit
trail.
"""
import logging
import os
from functools import wraps

from flask import Flask, g, request, jsonify

from keepwatch.shared.database import NotFoundError
from keepwatch.services.audit_service import AuditAction
from keepwatch.services.escalation_engine.runtime import get_runtime
from .store import ItemMutation, ItemStatus, ModerationFilter, PrayerCategory

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

runtime = get_runtime()


def require_admin(view):
    """Reject requests without an accepted bearer token."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return jsonify({"error": "Authorization required"}), 401
        
        moderator_id = runtime.admin_verifier(token.strip())
        if not moderator_id:
            logger.warning(
                "ADMIN_AUTH_REJECTED",
                extra={"path": request.path, "remote_addr": request.remote_addr}
            )
            return jsonify({"error": "Forbidden"}), 403
        
        g.moderator_id = moderator_id
        return view(*args, **kwargs)
    return wrapper


def _audit(action: AuditAction, item_id: str, details=None) -> None:
    try:
        runtime.audit_logger.log_moderation(action, item_id, g.moderator_id, details)
    except Exception as e:
        logger.error(
            "MODERATION_AUDIT_FAILED",
            extra={"item_id": item_id, "action": action.value, "error": str(e)}
        )


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "moderation-service",
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check."""
    manager = runtime.connection_manager
    if manager is not None and not manager.health_check()["healthy"]:
        return jsonify({"status": "not_ready"}), 503
    return jsonify({"status": "ready"}), 200


@app.route("/admin/moderation", methods=["GET"])
@require_admin
def list_queue():
    """List items for review.
    
    Query Parameters:
        filter: all | flagged | crisis | hidden (default all)
        limit: Max items (default 100)
    """
    try:
        view = ModerationFilter(request.args.get("filter", ModerationFilter.ALL.value))
        limit = min(int(request.args.get("limit", 100)), 500)
    except ValueError:
        return jsonify({"error": "Invalid filter or limit"}), 400
    
    try:
        items = runtime.moderation_store.list(view, limit=limit)
        stats = runtime.moderation_store.stats()
    except Exception as e:
        logger.error("MODERATION_LIST_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to list queue"}), 500
    
    return jsonify({
        "filter": view.value,
        "count": len(items),
        "items": [item.to_dict() for item in items],
        "stats": stats,
    }), 200


@app.route("/admin/moderation/<item_id>", methods=["PATCH"])
@require_admin
def edit_item(item_id: str):
    """Edit body and/or category.
    
    Request Body:
        {"body": "edited text", "category": "family"}
    
    Editing the body re-runs the classifier and clears needs_moderation.
    """
    data = request.get_json(silent=True) or {}
    body = data.get("body")
    if body is not None and (not isinstance(body, str) or not body.strip()):
        return jsonify({"error": "body must be non-empty text"}), 400
    
    try:
        category = PrayerCategory(data["category"]) if data.get("category") else None
    except ValueError:
        return jsonify({"error": "Unknown category"}), 400
    
    mutation = ItemMutation(body=body, category=category)
    if mutation.is_empty:
        return jsonify({"error": "Nothing to update"}), 400
    
    try:
        item = runtime.moderation_store.update(item_id, mutation)
    except NotFoundError:
        return jsonify({"error": "Item not found"}), 404
    except Exception as e:
        logger.error("MODERATION_EDIT_ERROR", extra={"item_id": item_id, "error": str(e)})
        return jsonify({"error": "Failed to update item"}), 500
    
    _audit(AuditAction.ITEM_EDITED, item_id, {
        "body_edited": body is not None,
        "category": category.value if category else None,
        "crisis_detected": item.crisis_detected,
    })
    return jsonify(item.to_dict()), 200


def _set_status(item_id: str, status: ItemStatus, action: AuditAction):
    try:
        item = runtime.moderation_store.set_status(item_id, status)
    except NotFoundError:
        return jsonify({"error": "Item not found"}), 404
    except Exception as e:
        logger.error("MODERATION_STATUS_ERROR", extra={"item_id": item_id, "error": str(e)})
        return jsonify({"error": "Failed to update item"}), 500
    
    _audit(action, item_id)
    return jsonify(item.to_dict()), 200


@app.route("/admin/moderation/<item_id>/hide", methods=["POST"])
@require_admin
def hide_item(item_id: str):
    return _set_status(item_id, ItemStatus.HIDDEN, AuditAction.ITEM_HIDDEN)


@app.route("/admin/moderation/<item_id>/unhide", methods=["POST"])
@require_admin
def unhide_item(item_id: str):
    return _set_status(item_id, ItemStatus.ACTIVE, AuditAction.ITEM_UNHIDDEN)


@app.route("/admin/moderation/<item_id>", methods=["DELETE"])
@require_admin
def delete_item(item_id: str):
    """Hard delete."""
    try:
        deleted = runtime.moderation_store.delete(item_id)
    except Exception as e:
        logger.error("MODERATION_DELETE_ERROR", extra={"item_id": item_id, "error": str(e)})
        return jsonify({"error": "Failed to delete item"}), 500
    
    if not deleted:
        return jsonify({"error": "Item not found"}), 404
    
    _audit(AuditAction.ITEM_DELETED, item_id)
    return jsonify({"id": item_id, "deleted": True}), 200


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    runtime.require_shared_storage()
    port = int(os.getenv("PORT", "8004"))
    app.run(host="0.0.0.0", port=port, debug=False)
