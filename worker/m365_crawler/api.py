import uuid
from http import HTTPStatus
from threading import Thread
from flask import Flask, g, jsonify, request

from m365_crawler import db, runner
from m365_crawler.auth import require_internal_token
from m365_crawler.runtime_logger import emit


def _status_phrase(code: int) -> str:
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return "Unknown Status"


def _response_error_summary(response) -> str:
    payload = response.get_json(silent=True)
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload.get("error"))
    body = response.get_data(as_text=True) or ""
    body = body.replace("\n", " ").replace("\r", " ").strip()
    if not body:
        return "unspecified_error"
    if len(body) > 220:
        return body[:217] + "..."
    return body


def _crawl_request_from_body(body) -> dict:
    params = body.get("params") or {}
    if not isinstance(params, dict):
        raise ValueError("params_must_be_object")
    crawl_request = {
        "drive_id": (body.get("drive_id") or "").strip() or None,
        "site_id": (body.get("site_id") or "").strip() or None,
        "user_drives": bool(body.get("user_drives")),
        "params": {str(k): v for k, v in params.items()},
    }
    if not crawl_request["drive_id"] and not crawl_request["site_id"] and not crawl_request["user_drives"]:
        raise ValueError("target_required")
    return crawl_request


def create_app():
    app = Flask(__name__)

    @app.before_request
    def log_request_start():
        g._log_method = request.method
        g._log_path = request.path
        emit("INFO", "FLASK_API", f"Request received: {request.method} {request.path}")

    @app.after_request
    def log_request_end(response):
        method = getattr(g, "_log_method", request.method)
        path = getattr(g, "_log_path", request.path)
        status = response.status_code
        phrase = _status_phrase(status)
        if 200 <= status < 300:
            emit("INFO", "FLASK_API", f"Response sent: {status} {phrase} for {method} {path}")
        else:
            level = "WARN" if status < 500 else "ERROR"
            emit(
                level,
                "FLASK_API",
                f"Response sent: {status} {phrase} for {method} {path}; error={_response_error_summary(response)}",
            )
        return response

    @app.teardown_request
    def log_request_exception(exc):
        if exc is None:
            return
        method = getattr(g, "_log_method", "UNKNOWN")
        path = getattr(g, "_log_path", "UNKNOWN")
        emit("ERROR", "FLASK_API", f"Unhandled exception during {method} {path}: error={exc}")

    @app.get("/health")
    @require_internal_token
    def health():
        db_configured = bool(db.database_url())
        db_ok = db.ping() if db_configured else None
        return jsonify(
            {
                "ok": db_ok is not False,
                "db": db_ok,
                "active_crawls": runner.get_active_targets(),
            }
        )

    @app.get("/crawls/status")
    @require_internal_token
    def crawls_status():
        return jsonify({"active": runner.get_active_targets(), "runs": runner.get_recent_runs()})

    @app.post("/crawls/run-now")
    @require_internal_token
    def run_now():
        body = request.get_json(silent=True) or {}
        try:
            crawl_request = _crawl_request_from_body(body)
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400

        target = runner.target_key(crawl_request)
        if target in runner.get_active_targets():
            return jsonify({"error": "already_running", "target": target}), 409

        session_id = str(uuid.uuid4())
        thread = Thread(target=runner.run_crawl_once, args=(crawl_request, session_id))
        thread.daemon = True
        thread.start()

        return jsonify({"status": "queued", "session_id": session_id, "target": target}), 202

    return app
