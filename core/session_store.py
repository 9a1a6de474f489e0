"""Session storage and status management."""
import json
import pathlib
import threading
import time

from utils.config import SESSION_STORE_DIR, logger, _now_iso
from core.history_loader import load_history

_CONTEXT_FIELDS = (
    "working_directory",
    "extensions",
    "builtins",
    "recipe_id",
    "recipe_name",
    "provider",
    "model",
    "debug",
)


def _normalize_session_record(name, value):
    if not isinstance(value, dict):
        value = {}
    context = value.get("context")
    if not isinstance(context, dict):
        context = {}
    extensions = context.get("extensions")
    builtins = context.get("builtins")
    normalized_context = {
        "working_directory": context.get("working_directory"),
        "extensions": extensions if isinstance(extensions, list) else [],
        "builtins": builtins if isinstance(builtins, list) else [],
        "recipe_id": context.get("recipe_id"),
        "recipe_name": context.get("recipe_name"),
        "provider": context.get("provider"),
        "model": context.get("model"),
        "debug": bool(context.get("debug", False)),
    }
    return {
        "name": name,
        "status": value.get("status") or "created",
        "created_at": value.get("created_at"),
        "last_used": value.get("last_used"),
        "message_count": int(value.get("message_count") or 0),
        "context": normalized_context,
    }


def _normalize_sessions(data):
    if not isinstance(data, dict):
        return {}
    normalized = {}
    for name, value in data.items():
        if not isinstance(name, str):
            continue
        normalized[name] = _normalize_session_record(name, value)
    return normalized


class SessionStore:
    """File-backed session index plus one append-only JSONL log per session."""

    def __init__(self, base_dir=None):
        self.base_dir = pathlib.Path(base_dir or SESSION_STORE_DIR)
        self.index_path = self.base_dir / "sessions.json"
        self.lock = threading.RLock()

    def _log_path(self, name):
        return self.base_dir / f"{name}.jsonl"

    def _load_sessions(self):
        if not self.index_path.exists():
            return {}
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
            return _normalize_sessions(data)
        except (OSError, json.JSONDecodeError):
            logger.warning(f"[Store] Unreadable session index {self.index_path}, starting empty")
            return {}

    def _save_sessions(self, data):
        self.base_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self.index_path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp_path.replace(self.index_path)

    def _write_metadata_line(self, name, record):
        path = self._log_path(name)
        if path.exists():
            return
        header = {
            "name": name,
            "working_dir": record["context"].get("working_directory"),
            "description": f"Session {name}",
            "created": time.time(),
        }
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(header) + "\n")

    def create_or_get_session(self, name):
        with self.lock:
            data = self._load_sessions()
            record = data.get(name)
            if record is None:
                record = _normalize_session_record(name, {"created_at": _now_iso(), "last_used": _now_iso()})
                data[name] = record
                self._save_sessions(data)
                self._write_metadata_line(name, record)
                logger.info(f"[Store] Created session record {name}")
            return record

    def get_session(self, name):
        with self.lock:
            return self._load_sessions().get(name)

    def list_sessions(self):
        with self.lock:
            items = list(self._load_sessions().values())
        items.sort(key=lambda item: item.get("last_used") or item.get("created_at") or "", reverse=True)
        return items

    def store_session_context(self, name, context):
        with self.lock:
            data = self._load_sessions()
            record = data.get(name) or _normalize_session_record(name, {"created_at": _now_iso()})
            merged = dict(record["context"])
            for key in _CONTEXT_FIELDS:
                if key in (context or {}):
                    merged[key] = context[key]
            record = _normalize_session_record(name, {**record, "context": merged, "last_used": _now_iso()})
            data[name] = record
            self._save_sessions(data)
            self._write_metadata_line(name, record)
            return record

    def get_session_context(self, name):
        record = self.get_session(name)
        if record is None:
            return None
        return dict(record["context"])

    def update_session_status(self, name, status):
        with self.lock:
            data = self._load_sessions()
            record = data.get(name)
            if record is None:
                return
            record["status"] = status
            record["last_used"] = _now_iso()
            data[name] = record
            self._save_sessions(data)

    def append_message(self, name, message):
        entry = {
            "role": message.get("role"),
            "content": message.get("content"),
            "created": time.time(),
            "timestamp": message.get("timestamp") or _now_iso(),
            "source": message.get("source"),
        }
        with self.lock:
            self.create_or_get_session(name)
            with self._log_path(name).open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry) + "\n")
            data = self._load_sessions()
            record = data.get(name)
            if record is not None:
                record["message_count"] = record.get("message_count", 0) + 1
                record["last_used"] = _now_iso()
                self._save_sessions(data)

    def get_messages(self, name):
        with self.lock:
            return load_history(self._log_path(name), session_name=name)
