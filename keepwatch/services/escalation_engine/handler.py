"""Escalation Engine HTTP handler - inbound submission endpoints.

Responses only ever describe the stored content. Safety processing is a
side effect and its failures never reach the submitter.
"""
import logging
import os

from flask import Flask, request, jsonify

from keepwatch.shared.database import NotFoundError
from keepwatch.shared.models import SubjectContact
from keepwatch.shared.utils import hash_pii
from .runtime import get_runtime

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

runtime = get_runtime()


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "escalation-engine",
        "storage_backend": runtime.settings.storage_backend,
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check."""
    manager = runtime.connection_manager
    if manager is not None and not manager.health_check()["healthy"]:
        return jsonify({"status": "not_ready"}), 503
    return jsonify({"status": "ready"}), 200


@app.route("/submissions", methods=["POST"])
def create_submission():
    """Store a prayer request or journal entry.
    
    Request Body:
        {
            "subject_id": "user_123",
            "text": "Please pray for ...",
            "metadata": {"source": "prayer_request", "category": "health",
                         "is_anonymous": false, "name": "Sam"}
        }
    
    Response (201):
        {"id": "prayer_abc123"}
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Request body required"}), 400
    
    subject_id = data.get("subject_id")
    text = data.get("text")
    metadata = data.get("metadata") or {}
    
    if not subject_id or not isinstance(text, str) or not text.strip():
        return jsonify({"error": "Missing subject_id or text"}), 400
    if not isinstance(metadata, dict):
        return jsonify({"error": "metadata must be an object"}), 400
    
    try:
        receipt = runtime.pipeline.submit_content(str(subject_id), text, metadata)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.error(
            "SUBMISSION_WRITE_FAILED",
            extra={"subject_id_hash": hash_pii(str(subject_id)), "error": str(e)}
        )
        return jsonify({"error": "Failed to store submission"}), 500
    
    return jsonify({"id": receipt.record_id}), 201


@app.route("/submissions", methods=["GET"])
def list_submissions():
    """Public prayer wall: active items only."""
    try:
        limit = min(int(request.args.get("limit", 50)), 200)
    except ValueError:
        return jsonify({"error": "limit must be an integer"}), 400
    
    items = runtime.moderation_store.list_public(limit=limit)
    return jsonify({"items": [item.to_dict(public=True) for item in items]}), 200


@app.route("/submissions/<item_id>/flag", methods=["POST"])
def flag_submission(item_id: str):
    """Report a prayer request; enough flags hide it pending review."""
    try:
        count = runtime.pipeline.flag_item(item_id)
    except NotFoundError:
        return jsonify({"error": "Submission not found"}), 404
    except Exception as e:
        logger.error("FLAG_FAILED", extra={"item_id": item_id, "error": str(e)})
        return jsonify({"error": "Failed to flag submission"}), 500
    
    return jsonify({"id": item_id, "flag_count": count}), 200


@app.route("/submissions/<item_id>/heart", methods=["POST"])
def heart_submission(item_id: str):
    try:
        count = runtime.pipeline.heart_item(item_id)
    except NotFoundError:
        return jsonify({"error": "Submission not found"}), 404
    except Exception as e:
        logger.error("HEART_FAILED", extra={"item_id": item_id, "error": str(e)})
        return jsonify({"error": "Failed to update submission"}), 500
    
    return jsonify({"id": item_id, "heart_count": count}), 200


@app.route("/guidance/messages", methods=["POST"])
def guidance_message():
    """Screen a pastoral-guidance message.
    
    Request Body:
        {"session_id": "sess_123", "text": "...", "age": 15}
    
    Response:
        {"session_id": "sess_123", "capture_required": true}
    
    capture_required tells the UI to pause the conversation and show the
    mandatory-report form.
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Request body required"}), 400
    
    session_id = data.get("session_id")
    text = data.get("text")
    if not session_id or not isinstance(text, str):
        return jsonify({"error": "Missing session_id or text"}), 400
    
    age = data.get("age")
    if age is not None and age != "":
        try:
            age = int(age)
        except (TypeError, ValueError):
            return jsonify({"error": "age must be a number"}), 400
    else:
        age = None
    
    contact = SubjectContact(name=data.get("name"), email=data.get("email"))
    outcome = runtime.pipeline.process_guidance_message(str(session_id), text, age=age, contact=contact)
    
    capture_required = runtime.report_flow.capture_required(
        str(session_id),
        triggered=bool(outcome and outcome.capture_required),
    )
    
    return jsonify({
        "session_id": session_id,
        "capture_required": capture_required,
    }), 200


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    runtime.require_shared_storage()
    port = int(os.getenv("PORT", "8003"))
    app.run(host="0.0.0.0", port=port, debug=False)
