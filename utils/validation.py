"""Request validation helpers."""
from flask import request, jsonify


def _validate_name(value, label="name", max_len=120):
    if not isinstance(value, str):
        return f"{label} must be a string"
    name = value.strip()
    if not name:
        return f"{label} is required"
    if len(name) > max_len:
        return f"{label} must be {max_len} chars or fewer"
    if any(ch in name for ch in ["/", "\\", "\0"]):
        return f"{label} contains invalid characters"
    if name in {".", ".."}:
        return f"{label} is invalid"
    return None


def _validate_name_list(value, label="extensions"):
    if value is None:
        return None
    if not isinstance(value, list):
        return f"{label} must be a list"
    for item in value:
        if isinstance(item, str):
            if not item.strip():
                return f"{label} entries must be non-empty"
        elif isinstance(item, dict):
            if not (item.get("name") or "").strip():
                return f"{label} entries must have a name"
        else:
            return f"{label} entries must be strings or objects"
    return None


def _validate_message(value, max_len=100_000):
    if not isinstance(value, str):
        return "content must be a string"
    if not value.strip():
        return "content is required"
    if len(value) > max_len:
        return f"content must be {max_len} chars or fewer"
    return None


def _validate_provider_override(value):
    if value is None:
        return None
    if not isinstance(value, dict):
        return "provider_override must be an object"
    for key in ("provider", "model"):
        item = value.get(key)
        if item is not None and not isinstance(item, str):
            return f"provider_override.{key} must be a string"
    return None


def _require_json_body(allow_empty=False):
    body = request.get_json(silent=True)
    if body is None:
        if allow_empty:
            return {}, None
        return None, (jsonify({"error": "invalid or missing JSON body"}), 400)
    if not isinstance(body, dict):
        return None, (jsonify({"error": "JSON body must be an object"}), 400)
    return body, None
