"""Rebuild a session's conversation from its persisted JSONL log."""
import datetime
import json
import os
import pathlib

from utils.config import logger, _now_iso

KNOWN_ROLES = {"user", "assistant", "system"}


def _flatten_content(content):
    if isinstance(content, str):
        return content.strip()
    if not isinstance(content, list):
        return ""
    parts = []
    for fragment in content:
        if not isinstance(fragment, dict):
            continue
        if fragment.get("type") == "text" and isinstance(fragment.get("text"), str):
            parts.append(fragment["text"])
    return "\n".join(parts).strip()


def _entry_timestamp(entry):
    created = entry.get("created")
    if isinstance(created, (int, float)) and not isinstance(created, bool):
        try:
            return datetime.datetime.fromtimestamp(created).isoformat(timespec="seconds")
        except (OverflowError, OSError, ValueError):
            pass
    stamp = entry.get("timestamp")
    if isinstance(stamp, str) and stamp.strip():
        return stamp.strip()
    return _now_iso()


def _is_metadata_entry(entry):
    return not (entry.get("role") and entry.get("content"))


def parse_history_lines(lines, session_name=None):
    """Parse JSONL lines into ordered message dicts, skipping bad entries."""
    messages = []
    first = True
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"[History] {session_name}: skipped invalid JSON on line {lineno}: {line[:100]}")
            first = False
            continue
        if not isinstance(entry, dict):
            logger.warning(f"[History] {session_name}: skipped non-object entry on line {lineno}")
            first = False
            continue
        if first and _is_metadata_entry(entry):
            first = False
            continue
        first = False
        role = entry.get("role")
        if role not in KNOWN_ROLES or not entry.get("content"):
            logger.warning(f"[History] {session_name}: skipped entry without role/content on line {lineno}")
            continue
        text = _flatten_content(entry.get("content"))
        if not text:
            logger.debug(f"[History] {session_name}: no text fragments on line {lineno}")
            continue
        messages.append(
            {
                "role": role,
                "content": text,
                "timestamp": _entry_timestamp(entry),
                "source": entry.get("source") or "history",
                "session_name": session_name,
            }
        )
    return messages


def load_history(path, session_name=None):
    path = pathlib.Path(path)
    if not path.exists():
        logger.info(f"[History] No session log at {path}")
        return []
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            messages = parse_history_lines(handle, session_name=session_name)
    except OSError as exc:
        logger.error(f"[History] Failed to read {path}: {exc}")
        return []
    logger.info(f"[History] Loaded {len(messages)} message(s) for {session_name} from {path}")
    return messages


def _goose_session_path(session_name):
    """Where the agent executable keeps its own log for a named session."""
    base = os.environ.get("GOOSE_SESSION_DIR") or os.path.join(
        pathlib.Path.home(), ".local", "share", "goose", "sessions"
    )
    return os.path.join(base, f"{session_name}.jsonl")
