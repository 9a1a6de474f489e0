import os
import json
import queue
import threading
import time

from flask import Flask, jsonify, request, Response

from utils.config import (
    logger,
    APP_START_TIME,
    DEFAULT_CWD,
    _load_client_config,
)
from utils.validation import _validate_name, _require_json_body
from core.errors import WingmanError
from core.coordinator import SessionCoordinator

APP = Flask(__name__)

# API Error Codes - Centralized definitions for consistent error handling
# Validation Errors
ERR_INVALID_INPUT = "INVALID_INPUT"
ERR_MISSING_SESSION_NAME = "MISSING_SESSION_NAME"
ERR_MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"

# Resource Not Found Errors
ERR_NOT_FOUND = "NOT_FOUND"
ERR_SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
ERR_RECIPE_NOT_FOUND = "RECIPE_NOT_FOUND"
ERR_NO_ACTIVE_SESSION = "NO_ACTIVE_SESSION"

# Provider/CLI Errors
ERR_CLI_NOT_FOUND = "CLI_NOT_FOUND"
ERR_START_FAILED = "START_FAILED"

# Operation Errors
ERR_CONFLICT = "CONFLICT"
ERR_SESSION_NOT_READY = "SESSION_NOT_READY"
ERR_OPERATION_FAILED = "OPERATION_FAILED"

_ERROR_STATUS = {
    ERR_INVALID_INPUT: 400,
    ERR_MISSING_SESSION_NAME: 400,
    ERR_MISSING_REQUIRED_FIELD: 400,
    ERR_NOT_FOUND: 404,
    ERR_SESSION_NOT_FOUND: 404,
    ERR_RECIPE_NOT_FOUND: 404,
    ERR_NO_ACTIVE_SESSION: 409,
    ERR_CONFLICT: 409,
    ERR_SESSION_NOT_READY: 409,
    ERR_CLI_NOT_FOUND: 502,
    ERR_START_FAILED: 502,
    ERR_OPERATION_FAILED: 500,
}

_COORDINATOR = None
_COORDINATOR_LOCK = threading.Lock()


def _get_coordinator():
    global _COORDINATOR
    with _COORDINATOR_LOCK:
        if _COORDINATOR is None:
            _COORDINATOR = SessionCoordinator()
        return _COORDINATOR


def _set_coordinator(coordinator):
    global _COORDINATOR
    with _COORDINATOR_LOCK:
        _COORDINATOR = coordinator


def _format_duration(seconds):
    seconds = int(max(0, seconds))
    mins, sec = divmod(seconds, 60)
    hrs, mins = divmod(mins, 60)
    days, hrs = divmod(hrs, 24)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hrs:
        parts.append(f"{hrs}h")
    if mins:
        parts.append(f"{mins}m")
    parts.append(f"{sec}s")
    return " ".join(parts)


def _safe_cwd(candidate):
    if candidate:
        return os.path.abspath(candidate)
    config = _load_client_config()
    default_cwd = (config.get("default_workdir") or "").strip() if isinstance(config, dict) else ""
    return os.path.abspath(default_cwd or DEFAULT_CWD)


def _error_response(message, code=None, details=None, status=400):
    """
    Standard error response format for all API endpoints.

    Args:
        message: Human-readable error message
        code: Optional error code (e.g., "INVALID_INPUT", "NOT_FOUND")
        details: Optional additional error details (dict)
        status: HTTP status code (default 400)

    Returns:
        Tuple of (jsonify response, status code)
    """
    payload = {"error": message}
    if code:
        payload["code"] = code
    if details:
        payload["details"] = details
    return jsonify(payload), status


@APP.errorhandler(WingmanError)
def _handle_wingman_error(exc):
    details = None
    diagnosis = getattr(exc, "diagnosis", None)
    if diagnosis is not None:
        details = {"diagnosis": diagnosis, "returncode": getattr(exc, "returncode", None)}
    status = _ERROR_STATUS.get(exc.code, 400)
    if status >= 500:
        logger.error(f"[API] {exc.code}: {exc}")
    return _error_response(str(exc), code=exc.code, details=details, status=status)


@APP.get("/health")
def health():
    coordinator = _get_coordinator()
    active = coordinator.get_active_session()
    return jsonify(
        {
            "ok": True,
            "uptime": _format_duration(time.time() - APP_START_TIME),
            "running_sessions": len(coordinator.get_running_sessions()),
            "active_session": active,
        }
    )


@APP.get("/sessions")
def list_sessions():
    coordinator = _get_coordinator()
    running = coordinator.get_running_sessions()
    available = coordinator.get_available_sessions()
    return jsonify(
        {
            "running": running,
            "available": available,
            "active": coordinator.get_active_session(),
            "count": len(running),
        }
    )


@APP.post("/sessions")
def create_session():
    body, err = _require_json_body(allow_empty=True)
    if err:
        return err
    options = dict(body)
    options["working_directory"] = _safe_cwd(body.get("working_directory"))
    coordinator = _get_coordinator()
    created = coordinator.create_session(options, activate=body.get("activate", True) is not False)
    if body.get("start", True) is False:
        return jsonify({**created, "started": False}), 201
    result = coordinator.start_session(created["session_id"])
    return jsonify({**created, "started": True, "ready": result.get("ready", False)}), 201


@APP.post("/sessions/<session_id>/start")
def start_session(session_id):
    result = _get_coordinator().start_session(session_id)
    return jsonify({"session_id": session_id, "started": True, "ready": result.get("ready", False)})


@APP.post("/sessions/resume")
def resume_session():
    body, err = _require_json_body()
    if err:
        return err
    session_name = body.get("session_name") or body.get("name")
    if session_name is None:
        return _error_response("session_name is required", code=ERR_MISSING_SESSION_NAME, status=400)
    name_err = _validate_name(session_name, "session_name")
    if name_err:
        return _error_response(name_err, code=ERR_INVALID_INPUT, status=400)
    return jsonify(_get_coordinator().resume_session(session_name))


@APP.post("/sessions/<session_id>/switch")
def switch_session(session_id):
    return jsonify(_get_coordinator().switch_session(session_id))


@APP.delete("/sessions/<session_id>")
def stop_session(session_id):
    return jsonify(_get_coordinator().stop_session(session_id))


@APP.get("/sessions/<session_id>")
def session_info(session_id):
    return jsonify(_get_coordinator().get_session_info(session_id))


@APP.get("/sessions/<session_id>/conversation")
def session_conversation(session_id):
    messages = _get_coordinator().get_conversation(session_id)
    return jsonify({"session_id": session_id, "count": len(messages), "messages": messages})


@APP.post("/active/message")
def send_active_message():
    body, err = _require_json_body()
    if err:
        return err
    if "content" not in body:
        return _error_response("content is required", code=ERR_MISSING_REQUIRED_FIELD, status=400)
    settings = body.get("settings")
    if settings is not None and not isinstance(settings, dict):
        return _error_response("settings must be an object", code=ERR_INVALID_INPUT, status=400)
    return jsonify(_get_coordinator().send_message_to_active_session(body.get("content"), settings=settings))


@APP.post("/active/interrupt")
def interrupt_active():
    return jsonify(_get_coordinator().interrupt_active_session())


@APP.post("/active/force-stop")
def force_stop_active():
    return jsonify(_get_coordinator().force_stop_active_session())


@APP.get("/events/stream")
def stream_events():
    coordinator = _get_coordinator()

    def generate():
        q = coordinator.subscribe(maxsize=500)
        try:
            active = coordinator.get_active_session()
            snapshot = {"type": "snapshot", "active": active, "running": coordinator.get_running_sessions()}
            if active:
                try:
                    snapshot["conversation"] = coordinator.get_conversation(active["session_id"])
                except WingmanError:
                    snapshot["conversation"] = []
            yield f"data: {json.dumps(snapshot)}\n\n"
            while True:
                try:
                    payload = q.get(timeout=15)
                    yield f"data: {json.dumps(payload)}\n\n"
                except queue.Empty:
                    # Send heartbeat to detect disconnected clients
                    yield ": heartbeat\n\n"
        finally:
            coordinator.unsubscribe(q)

    return Response(generate(), mimetype="text/event-stream")


if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5025"))
    logger.info(f"[API] Starting on port {port}")
    try:
        APP.run(host="0.0.0.0", port=port, debug=False, threaded=True)
    finally:
        _get_coordinator().shutdown()
