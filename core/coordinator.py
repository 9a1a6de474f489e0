"""Multi-session coordination: many live wrappers, one active session."""
import datetime
import os
import queue
import threading
import uuid

from utils.config import logger, DEFAULT_CWD, _get_wrapper_settings, _now_iso
from utils.validation import _validate_name, _validate_name_list, _validate_message, _validate_provider_override
from core.errors import (
    InvalidRequestError,
    NoActiveSessionError,
    RecipeNotFoundError,
    SessionConflictError,
    SessionNotFoundError,
    SessionNotReadyError,
    SessionStartError,
    SpawnError,
)
from core.history_loader import load_history, _goose_session_path
from core.recipes import RecipeResolver
from core.secrets import SecretInjector
from core.session_store import SessionStore
from core.session_wrapper import SessionWrapper

# wrapper event type -> coordinator event type
_LIFECYCLE_EVENTS = {
    "ready": "session_ready",
    "status": "session_status",
    "error": "session_error",
    "failure": "session_failed",
    "interrupted": "session_interrupted",
    "force_stopped": "session_force_stopped",
}


def _extension_command(ext):
    if isinstance(ext, str):
        return ext.strip()
    cmd = (ext.get("cmd") or "").strip()
    if not cmd:
        return ext.get("name", "").strip()
    return " ".join([cmd] + [str(a) for a in (ext.get("args") or [])])


class SessionCoordinator:
    """Owns live session wrappers keyed by session id plus the active pointer.

    Wrapper events are persisted and cached for every session; ``message``
    events are forwarded to subscribers only for the active session.
    Lifecycle events are forwarded for all sessions.

    The coordinator never calls into a wrapper while holding ``self.lock``:
    wrapper events arrive with the wrapper's lock held and take this one.
    """

    def __init__(self, store=None, recipe_resolver=None, secret_injector=None, settings=None, wrapper_factory=None, command=None):
        self.store = store or SessionStore()
        self.recipes = recipe_resolver or RecipeResolver()
        self.secret_injector = secret_injector or SecretInjector()
        self.settings = settings or _get_wrapper_settings()
        self.wrapper_factory = wrapper_factory or SessionWrapper
        self.command = command
        self.lock = threading.RLock()
        self.wrappers = {}
        self.metadata = {}
        self.conversations = {}
        self.active_session_id = None
        self.subscribers = set()
        self._resuming = set()
        self._history_from_store = set()
        # session id -> session that was active before create_session activated it
        self._activated_over = {}

    # -- subscribers ---------------------------------------------------

    def subscribe(self, maxsize=500):
        q = queue.Queue(maxsize=maxsize)
        with self.lock:
            self.subscribers.add(q)
        return q

    def unsubscribe(self, q):
        with self.lock:
            self.subscribers.discard(q)

    def _broadcast(self, payload):
        with self.lock:
            dead = []
            for q in list(self.subscribers):
                try:
                    # Give slow clients 50ms to drain their queue
                    q.put(payload, timeout=0.05)
                except queue.Full:
                    logger.warning("[Backpressure] Disconnecting slow event subscriber (queue full)")
                    dead.append(q)
            for q in dead:
                self.subscribers.discard(q)

    # -- collaborators -------------------------------------------------

    def _store_call(self, method, *args):
        """Store failures degrade the session, they never abort it."""
        try:
            return getattr(self.store, method)(*args)
        except Exception as exc:
            logger.warning(f"[Coordinator] Store {method} failed: {exc}")
            return None

    def _resolve_recipe(self, recipe_id):
        try:
            return self.recipes.get_recipe_by_id(recipe_id)
        except Exception as exc:
            logger.warning(f"[Coordinator] Recipe lookup for {recipe_id} failed: {exc}")
            return None

    # -- bookkeeping ---------------------------------------------------

    def _find_live_by_name(self, session_name):
        for session_id, meta in self.metadata.items():
            if meta["session_name"] == session_name and session_id in self.wrappers:
                return session_id
        return None

    def _get_wrapper(self, session_id):
        with self.lock:
            wrapper = self.wrappers.get(session_id)
        if wrapper is None:
            raise SessionNotFoundError(session_id)
        return wrapper

    def _active_wrapper(self):
        with self.lock:
            session_id = self.active_session_id
            if session_id is None:
                raise NoActiveSessionError()
            wrapper = self.wrappers.get(session_id)
        if wrapper is None:
            raise SessionNotFoundError(session_id)
        return session_id, wrapper

    def _register(self, session_id, wrapper, meta, history=None, activate=False):
        wrapper.add_listener(lambda event: self._on_wrapper_event(session_id, event))
        with self.lock:
            self.wrappers[session_id] = wrapper
            self.metadata[session_id] = meta
            self.conversations[session_id] = list(history or [])
            if history:
                self._history_from_store.add(session_id)
            if activate:
                self.active_session_id = session_id

    def _discard_session(self, session_id):
        with self.lock:
            existed = self.wrappers.pop(session_id, None) is not None
            meta = self.metadata.pop(session_id, None)
            self.conversations.pop(session_id, None)
            self._history_from_store.discard(session_id)
            if self.active_session_id == session_id:
                self.active_session_id = None
        return existed, meta

    def _build_wrapper(self, session_id, meta, recipe=None, resume=False):
        options = {
            "session_name": meta["session_name"],
            "working_directory": meta["working_directory"],
            "extensions": meta["extensions"],
            "builtins": meta["builtins"],
            "recipe": recipe,
            "provider": meta["provider"],
            "model": meta["model"],
            "debug": meta["debug"],
            "max_turns": meta.get("max_turns"),
            "resume": resume,
            "command": self.command,
        }
        return self.wrapper_factory(
            session_id,
            options,
            settings=self.settings,
            recipe_resolver=self.recipes,
            secret_injector=self.secret_injector,
        )

    # -- wrapper events ------------------------------------------------

    def _record_message(self, session_id, session_name, message):
        self._store_call("append_message", session_name, message)
        with self.lock:
            cache = self.conversations.get(session_id)
            if cache is not None:
                cache.append(message)
            if self.active_session_id == session_id:
                self._broadcast({"type": "message", **message, "session_id": session_id})

    def _on_wrapper_event(self, session_id, event):
        etype = event.get("type")
        session_name = event.get("session_name")
        if etype == "message":
            self._record_message(session_id, session_name, event["message"])
            return
        if etype == "history":
            # Replay from the agent's own log; the store already holds these when it has history.
            with self.lock:
                if session_id in self._history_from_store:
                    return
                cache = self.conversations.get(session_id)
                if cache is not None:
                    cache.append(event["message"])
                if self.active_session_id == session_id:
                    self._broadcast({"type": "message", **event["message"], "session_id": session_id})
            return
        if etype == "status":
            with self.lock:
                meta = self.metadata.get(session_id)
                if meta is not None:
                    meta["status"] = event["status"]
            self._store_call("update_session_status", session_name, event["status"])
        if etype == "closed":
            existed, _ = self._discard_session(session_id)
            if existed:
                logger.info(f"[Coordinator] Session {session_name} ({session_id}) closed")
            self._broadcast(
                {"type": "session_closed", "session_id": session_id, "session_name": session_name, "returncode": event.get("returncode")}
            )
            return
        mapped = _LIFECYCLE_EVENTS.get(etype)
        if mapped is None:
            return
        payload = {k: v for k, v in event.items() if k != "type"}
        payload["type"] = mapped
        self._broadcast(payload)

    # -- command surface -----------------------------------------------

    def create_session(self, options=None, activate=True):
        """Record a new session and its wrapper; ``start_session`` spawns it."""
        options = dict(options or {})
        session_name = options.get("session_name") or options.get("name")
        if session_name is None:
            session_name = f"session-{datetime.datetime.now().strftime('%Y%m%d-%H%M%S')}"
        err = (
            _validate_name(session_name, "session_name")
            or _validate_name_list(options.get("extensions"), "extensions")
            or _validate_name_list(options.get("builtins"), "builtins")
            or _validate_provider_override(options.get("provider_override"))
        )
        if err:
            raise InvalidRequestError(err)
        session_name = session_name.strip()
        working_directory = options.get("working_directory") or DEFAULT_CWD
        if not os.path.isdir(working_directory):
            raise InvalidRequestError(f"working_directory does not exist: {working_directory}")

        recipe = options.get("recipe")
        recipe_id = options.get("recipe_id")
        if recipe is None and recipe_id:
            recipe = self._resolve_recipe(recipe_id)
            if recipe is None:
                raise RecipeNotFoundError(recipe_id)
        if recipe is not None and not isinstance(recipe, dict):
            raise InvalidRequestError("recipe must be an object")

        override = options.get("provider_override") or {}
        meta = {
            "session_name": session_name,
            "working_directory": working_directory,
            "extensions": [_extension_command(e) for e in options.get("extensions") or []],
            "builtins": [_extension_command(b) for b in options.get("builtins") or []],
            "recipe_id": (recipe or {}).get("id") or recipe_id,
            "recipe_name": (recipe or {}).get("name") or (recipe or {}).get("title"),
            "provider": override.get("provider") or options.get("provider"),
            "model": override.get("model") or options.get("model"),
            "debug": bool(options.get("debug", False)),
            "max_turns": options.get("max_turns"),
            "status": "created",
            "created_at": _now_iso(),
            "resumed": False,
        }

        with self.lock:
            if self._find_live_by_name(session_name) is not None or session_name in self._resuming:
                raise SessionConflictError(f"Session {session_name} is already running")
            session_id = uuid.uuid4().hex
            meta["session_id"] = session_id
            wrapper = self._build_wrapper(session_id, meta, recipe=recipe)
            if activate and self.active_session_id is not None:
                self._activated_over[session_id] = self.active_session_id
            self._register(session_id, wrapper, meta, activate=activate)

        self._store_call("create_or_get_session", session_name)
        self._store_call("store_session_context", session_name, meta)
        self._store_call("update_session_status", session_name, "created")
        logger.info(f"[Coordinator] Created session {session_name} ({session_id})")
        self._broadcast({"type": "session_created", "session_id": session_id, "session_name": session_name})
        if activate:
            self._broadcast(
                {"type": "session_switched", "session_id": session_id, "session_name": session_name, "conversation": []}
            )
        return {"session_id": session_id, "session_name": session_name}

    def start_session(self, session_id):
        wrapper = self._get_wrapper(session_id)
        try:
            result = wrapper.start()
        except SpawnError as exc:
            self._discard_session(session_id)
            self._restore_previous_active(session_id)
            logger.error(f"[Coordinator] Session {wrapper.session_name} failed to spawn: {exc}")
            self._broadcast(
                {
                    "type": "session_failed",
                    "session_id": session_id,
                    "session_name": wrapper.session_name,
                    "kind": "spawn_failed",
                    "error": str(exc),
                }
            )
            raise
        except SessionStartError as exc:
            # The wrapper has already published its failure and close events.
            self._discard_session(session_id)
            self._restore_previous_active(session_id)
            logger.error(f"[Coordinator] Session {wrapper.session_name} failed to start: {exc}")
            raise
        with self.lock:
            self._activated_over.pop(session_id, None)
        return result

    def _restore_previous_active(self, session_id):
        with self.lock:
            previous = self._activated_over.pop(session_id, None)
            if self.active_session_id is not None or previous not in self.wrappers:
                return
            self.active_session_id = previous
            meta = self.metadata[previous]
            conversation = list(self.conversations.get(previous, []))
            logger.info(f"[Coordinator] Start of {session_id} failed, reactivating {meta['session_name']}")
            self._broadcast(
                {"type": "session_switched", "session_id": previous, "session_name": meta["session_name"], "conversation": conversation}
            )

    def switch_session(self, session_id):
        with self.lock:
            meta = self.metadata.get(session_id)
            if session_id not in self.wrappers or meta is None:
                raise SessionNotFoundError(session_id)
            previous = self.active_session_id
            self.active_session_id = session_id
            conversation = list(self.conversations.get(session_id, []))
            self._broadcast(
                {
                    "type": "session_switched",
                    "session_id": session_id,
                    "session_name": meta["session_name"],
                    "previous_session_id": previous,
                    "conversation": conversation,
                }
            )
        logger.info(f"[Coordinator] Switched to {meta['session_name']} ({session_id})")
        return {"session_id": session_id, "session_name": meta["session_name"], "conversation": conversation}

    def resume_session(self, session_name):
        err = _validate_name(session_name, "session_name")
        if err:
            raise InvalidRequestError(err)
        session_name = session_name.strip()
        with self.lock:
            existing = self._find_live_by_name(session_name)
            if existing is None:
                if session_name in self._resuming:
                    raise SessionConflictError(f"Session {session_name} is already being resumed")
                self._resuming.add(session_name)
        if existing is not None:
            logger.info(f"[Coordinator] {session_name} already live, switching instead of resuming")
            snapshot = self.switch_session(existing)
            return {"session_id": existing, "session_name": session_name, "resumed": False, "conversation": snapshot["conversation"]}

        try:
            context = self._store_call("get_session_context", session_name) or {}
            recipe = None
            recipe_id = context.get("recipe_id")
            if recipe_id:
                recipe = self._resolve_recipe(recipe_id)
                if recipe is None:
                    logger.warning(f"[Coordinator] Recipe {recipe_id} for {session_name} no longer resolves, resuming without it")
            history = self._store_call("get_messages", session_name) or []
            if not history:
                history = load_history(_goose_session_path(session_name), session_name=session_name)

            session_id = uuid.uuid4().hex
            meta = {
                "session_id": session_id,
                "session_name": session_name,
                "working_directory": context.get("working_directory") or DEFAULT_CWD,
                "extensions": list(context.get("extensions") or []),
                "builtins": list(context.get("builtins") or []),
                "recipe_id": recipe_id if recipe is not None else None,
                "recipe_name": context.get("recipe_name") if recipe is not None else None,
                "provider": context.get("provider"),
                "model": context.get("model"),
                "debug": bool(context.get("debug", False)),
                "max_turns": None,
                "status": "created",
                "created_at": _now_iso(),
                "resumed": True,
            }
            if not os.path.isdir(meta["working_directory"]):
                logger.warning(f"[Coordinator] Working directory {meta['working_directory']} is gone, using {DEFAULT_CWD}")
                meta["working_directory"] = DEFAULT_CWD
            wrapper = self._build_wrapper(session_id, meta, recipe=recipe, resume=True)
            self._register(session_id, wrapper, meta, history=history)
            self._store_call("create_or_get_session", session_name)
            logger.info(f"[Coordinator] Resuming {session_name} ({session_id}) with {len(history)} stored message(s)")
            self._broadcast({"type": "session_created", "session_id": session_id, "session_name": session_name, "resumed": True})
        except Exception:
            with self.lock:
                self._resuming.discard(session_name)
            raise

        try:
            self.start_session(session_id)
        finally:
            with self.lock:
                self._resuming.discard(session_name)
        snapshot = self.switch_session(session_id)
        return {"session_id": session_id, "session_name": session_name, "resumed": True, "conversation": snapshot["conversation"]}

    def send_message_to_active_session(self, content, settings=None):
        err = _validate_message(content)
        if err:
            raise InvalidRequestError(err)
        settings = dict(settings or {})
        session_id, wrapper = self._active_wrapper()
        if not wrapper.accepts_input:
            raise SessionNotReadyError(f"Session {wrapper.session_name} is not running")

        # Anything the child already produced belongs before the user's turn.
        wrapper.flush()
        message = {
            "role": "user",
            "content": content,
            "timestamp": _now_iso(),
            "source": "user",
            "session_id": session_id,
            "session_name": wrapper.session_name,
        }
        self._record_message(session_id, wrapper.session_name, message)

        ready = wrapper.is_ready
        if not ready:
            wait_sec = float(settings.get("send_ready_wait_sec", self.settings["send_ready_wait_sec"]))
            ready = wrapper.wait_until_ready(wait_sec)
            if not ready:
                logger.warning(f"[Coordinator] {wrapper.session_name} not ready after {wait_sec}s, sending anyway")
        if settings.get("auto_interrupt") and wrapper.is_processing:
            wrapper.interrupt()
        result = wrapper.send_message(content, force=not ready)
        return {**result, "session_name": wrapper.session_name}

    def stop_session(self, session_id):
        wrapper = self._get_wrapper(session_id)
        returncode = wrapper.stop()
        existed, _ = self._discard_session(session_id)
        with self.lock:
            self._activated_over.pop(session_id, None)
        if existed:
            # Never-started wrappers produce no close event of their own.
            self._broadcast({"type": "session_closed", "session_id": session_id, "session_name": wrapper.session_name, "returncode": returncode})
        return {"session_id": session_id, "stopped": True, "returncode": returncode}

    def interrupt_active_session(self):
        session_id, wrapper = self._active_wrapper()
        interrupted = wrapper.interrupt()
        return {"session_id": session_id, "interrupted": interrupted}

    def force_stop_active_session(self):
        session_id, wrapper = self._active_wrapper()
        returncode = wrapper.force_stop()
        existed, _ = self._discard_session(session_id)
        if existed:
            self._broadcast({"type": "session_closed", "session_id": session_id, "session_name": wrapper.session_name, "returncode": returncode})
        return {"session_id": session_id, "stopped": True, "returncode": returncode}

    # -- queries -------------------------------------------------------

    def get_active_session(self):
        with self.lock:
            session_id = self.active_session_id
            meta = self.metadata.get(session_id) if session_id else None
        if meta is None:
            return None
        return {"session_id": session_id, "session_name": meta["session_name"]}

    def get_conversation(self, session_id):
        with self.lock:
            if session_id not in self.conversations:
                raise SessionNotFoundError(session_id)
            return list(self.conversations[session_id])

    def get_running_sessions(self):
        with self.lock:
            items = [(dict(self.metadata[sid]), self.wrappers[sid]) for sid in self.wrappers if sid in self.metadata]
            active = self.active_session_id
        sessions = []
        for meta, wrapper in items:
            meta["status"] = wrapper.status
            meta["is_ready"] = wrapper.is_ready
            meta["is_processing"] = wrapper.is_processing
            meta["active"] = meta["session_id"] == active
            sessions.append(meta)
        return sessions

    def get_available_sessions(self):
        records = self._store_call("list_sessions") or []
        with self.lock:
            live = {meta["session_name"]: sid for sid, meta in self.metadata.items() if sid in self.wrappers}
        sessions = []
        for record in records:
            item = dict(record)
            item["running"] = record.get("name") in live
            item["session_id"] = live.get(record.get("name"))
            sessions.append(item)
        return sessions

    def get_session_info(self, session_id):
        with self.lock:
            meta = self.metadata.get(session_id)
            wrapper = self.wrappers.get(session_id)
            count = len(self.conversations.get(session_id, []))
        if meta is None or wrapper is None:
            raise SessionNotFoundError(session_id)
        return {**meta, "stats": wrapper.get_session_stats(), "conversation_length": count}

    def shutdown(self):
        with self.lock:
            items = list(self.wrappers.items())
        for session_id, wrapper in items:
            try:
                self.stop_session(session_id)
            except SessionNotFoundError:
                pass
            except Exception as exc:
                logger.error(f"[Coordinator] Failed to stop {wrapper.session_name} during shutdown: {exc}")
        logger.info(f"[Coordinator] Shutdown complete ({len(items)} session(s))")
