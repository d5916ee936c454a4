# --- ppaper_lib/routes/parse.py ---
import json
import logging
import time
import uuid

from flask import Blueprint, Response, current_app, jsonify, request

from ppaper_lib.ids import is_safe_id
from ppaper_lib.orchestrator import is_terminal

bp = Blueprint("parse", __name__)
log = logging.getLogger("ppaper.api")


@bp.route("/", methods=["POST"])
def start_parse():
    """Queues a parse of the posted Markdown. Body: {id?, markdown}."""
    data = request.get_json(silent=True) or {}
    markdown = data.get("markdown")
    if not isinstance(markdown, str) or not markdown.strip():
        return jsonify({"error": "Missing 'markdown' in request"}), 400

    doc_id = data.get("id") or uuid.uuid4().hex
    if not is_safe_id(doc_id):
        return jsonify({"error": "Invalid 'id': use 1-64 letters, digits, '_' or '-'"}), 400
    current_app.job_manager.start(doc_id, markdown)
    log.info("Accepted parse of '%s' (%d chars).", doc_id, len(markdown))
    return jsonify({"id": doc_id}), 202


@bp.route("/<doc_id>/progress", methods=["GET"])
def get_progress(doc_id):
    progress = current_app.job_manager.get_progress(doc_id)
    if progress is None:
        return jsonify({"error": "Document not found"}), 404
    return jsonify(progress.to_dict())


@bp.route("/<doc_id>/stream", methods=["GET"])
def stream_progress(doc_id):
    """Streams progress snapshots as server-sent events until the job ends."""
    manager = current_app.job_manager
    interval = current_app.config["STREAM_INTERVAL"]
    if manager.get_progress(doc_id) is None:
        return jsonify({"error": "Document not found"}), 404

    def generate():
        last = None
        while True:
            progress = manager.get_progress(doc_id)
            payload = json.dumps(progress.to_dict(), ensure_ascii=False)
            if payload != last:
                last = payload
                yield f"data: {payload}\n\n"
            if is_terminal(progress):
                break
            time.sleep(interval)

    return Response(generate(), mimetype="text/event-stream")


@bp.route("/<doc_id>/retry", methods=["POST"])
def retry_parse(doc_id):
    future = current_app.job_manager.retry(doc_id)
    if future is None:
        return jsonify({"error": "No original source stored for this document"}), 404
    return jsonify({"id": doc_id}), 202


@bp.route("/<doc_id>/cancel", methods=["POST"])
def cancel_parse(doc_id):
    if not current_app.job_manager.cancel(doc_id):
        return jsonify({"error": "No active parse for this document", "cancelled": False}), 404
    return jsonify({"id": doc_id, "cancelled": True})


@bp.route("/<doc_id>", methods=["GET"])
def get_document(doc_id):
    """Returns the structured document once parsing has completed."""
    document = current_app.storage.read_document(doc_id)
    if document is None:
        return jsonify({"error": "Document not found"}), 404
    return jsonify(document)
