"""Mandatory Report HTTP handler - capture form submission.

The form posts camelCase fields. `skip: true` records the report without
details. Both outcomes answer with the message shown to the subject.
"""
import logging
import os

from flask import Flask, request, jsonify

from keepwatch.services.escalation_engine.runtime import get_runtime
from .capture import ReportFields

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

runtime = get_runtime()

# Form field -> ReportFields attribute
FORM_FIELDS = {
    "fullName": "full_name",
    "age": "age",
    "phone": "phone",
    "address": "address",
    "contactEmail": "contact_email",
}


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "mandatory-report",
    }), 200


@app.route("/mandatory-report", methods=["POST"])
def submit_report():
    """Submit or skip the mandatory-report form.
    
    Request Body:
        {
            "sessionId": "sess_123",
            "fullName": "...", "age": "15", "phone": "...",
            "address": "...", "contactEmail": "...",
            "skip": false
        }
    
    Response:
        {"success": true, "message": "Mandatory report submitted. ..."}
    """
    data = request.get_json(silent=True) or {}
    session_id = data.get("sessionId")
    if not session_id:
        return jsonify({"success": False, "error": "Missing sessionId"}), 400
    
    session_id = str(session_id)
    if data.get("skip"):
        result = runtime.report_flow.skip(session_id)
    else:
        fields = ReportFields.from_mapping({
            attr: data.get(key) for key, attr in FORM_FIELDS.items()
        })
        result = runtime.report_flow.submit(session_id, fields)
    
    if not result.success:
        return jsonify(result.to_dict()), 500
    return jsonify(result.to_dict()), 200


@app.route("/mandatory-report/<session_id>", methods=["GET"])
def capture_status(session_id: str):
    """Whether the conversation is paused waiting for the form."""
    guard = runtime.report_flow.active_guard(session_id)
    return jsonify({
        "session_id": session_id,
        "capture_required": guard is not None,
        "expires_at": guard.expires_at.isoformat() if guard else None,
    }), 200


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    runtime.require_shared_storage()
    port = int(os.getenv("PORT", "8005"))
    app.run(host="0.0.0.0", port=port, debug=False)
