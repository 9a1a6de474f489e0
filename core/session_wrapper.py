"""One goose child process and the interpretation of its terminal stream.

Reader threads push decoded stdout/stderr chunks onto a per-session inbox; a
single pump thread drains it, so line handling, the debounce flush and the
ready fallback for one session never run concurrently with each other.
Commands from callers (send, interrupt, stop) take the same lock.
"""
import queue
import signal
import subprocess
import threading
import time

from utils.config import logger, DEFAULT_CWD, _get_wrapper_settings, _secrets_enabled, _now_iso
from providers.base import _enqueue_output
from providers.goose import (
    _resolve_goose_path,
    _build_goose_args,
    _build_session_env,
    _create_ephemeral_config,
    _cleanup_ephemeral_config,
)
from core.classifier import (
    LINE_RULES,
    NOISE,
    READY,
    TOOL,
    STATUS,
    CONTEXT,
    HISTORY,
    classify_line,
    extract_tool_name,
    flatten_input,
    split_history_line,
    strip_ansi,
)
from core.diagnostics import diagnose_exit, describe_stream_error
from core.errors import InvalidRequestError, SessionConflictError, SessionNotReadyError, SessionStartError, SpawnError
from core.recipes import RecipeResolver, _remove_temp_recipe
from core.secrets import SecretInjector

_MAX_STDERR_CHARS = 64 * 1024
_START_SETTLE_SLACK_SEC = 10.0
_EXIT_COMMAND = "/exit\n"


class SessionWrapper:
    """Owns exactly one child process and turns its output into events.

    Listeners registered with ``add_listener`` receive dict events with a
    ``type`` of ``message``, ``history``, ``ready``, ``status``, ``error``,
    ``failure``, ``interrupted``, ``force_stopped`` or ``closed``.
    """

    def __init__(self, session_id, options, settings=None, recipe_resolver=None, secret_injector=None):
        self.session_id = session_id
        self.options = dict(options or {})
        self.session_name = self.options.get("session_name") or session_id
        self.working_directory = self.options.get("working_directory") or DEFAULT_CWD
        self.settings = settings or _get_wrapper_settings()
        self.recipe_resolver = recipe_resolver or RecipeResolver()
        self.secret_injector = secret_injector or SecretInjector()
        self.rules = LINE_RULES

        self.status = "created"
        self.resuming = bool(self.options.get("resume"))
        self.history_loaded = not self.resuming
        self.is_ready = False
        self.is_processing = False
        self.proc = None
        self.returncode = None
        self.failure = None

        self._lock = threading.RLock()
        self._listeners = []
        self._inbox = queue.Queue()
        self._buffer = []
        self._partial = ""
        self._flush_deadline = None
        self._ready_deadline = None
        self._ready_emitted = False
        self._stop_requested = False
        self._stderr_text = ""
        self._settled = threading.Event()
        self._exited = threading.Event()
        self._temp_recipe_path = None
        self._config_path = None

        self.stats = {
            "message_count": 0,
            "tool_usage": {},
            "error_count": 0,
            "start_time": None,
            "last_activity": None,
        }

    # -- listeners -----------------------------------------------------

    def add_listener(self, callback):
        self._listeners.append(callback)

    def remove_listener(self, callback):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _emit(self, event_type, **data):
        event = {"type": event_type, "session_id": self.session_id, "session_name": self.session_name}
        event.update(data)
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.exception(f"[Wrapper] {self.session_name}: listener failed on {event_type}")

    def _set_status(self, status):
        if self.status == status:
            return
        self.status = status
        self._emit("status", status=status)

    # -- lifecycle -----------------------------------------------------

    def _prepare_invocation(self):
        recipe = self.options.get("recipe")
        provider = self.options.get("provider")
        model = self.options.get("model")

        recipe_path = self.options.get("recipe_path")
        if recipe and not recipe_path:
            recipe_path = self.recipe_resolver.write_temp_recipe(recipe, self.session_name)
            self._temp_recipe_path = recipe_path

        try:
            self._config_path = _create_ephemeral_config(
                self.session_name,
                provider=provider,
                model=model,
                extensions=(recipe or {}).get("extensions"),
            )
        except OSError as exc:
            logger.warning(f"[Wrapper] {self.session_name}: ephemeral config unavailable: {exc}")
            self._config_path = None

        secret_env = {}
        if recipe and _secrets_enabled():
            try:
                result = self.secret_injector.build_session_env(recipe)
                secret_env = result.get("env") or {}
                if not result.get("success"):
                    logger.warning(
                        f"[Wrapper] {self.session_name}: {len(result.get('missing') or [])} required secret(s) "
                        f"missing, session may have limited functionality"
                    )
            except Exception as exc:
                logger.warning(f"[Wrapper] {self.session_name}: secret injection failed: {exc}")

        command = self.options.get("command")
        if not command:
            goose_path = _resolve_goose_path()
            if not goose_path:
                raise SpawnError("goose", "goose CLI not found (set GOOSE_PATH or add to PATH)")
            command = [goose_path]

        goose_options = {
            "session_name": self.session_name,
            "extensions": self.options.get("extensions"),
            "builtins": self.options.get("builtins"),
            "debug": self.options.get("debug"),
            "max_turns": self.options.get("max_turns") or self.settings.get("max_turns"),
        }
        args = list(command) + _build_goose_args(goose_options, recipe_path=recipe_path, resume=self.resuming)
        env = _build_session_env(
            self.session_id,
            self.session_name,
            self.working_directory,
            config_path=self._config_path,
            provider=provider,
            model=model,
            extra=secret_env,
        )
        return args, env

    def start(self):
        """Spawn the child and block until it is ready or has failed."""
        with self._lock:
            if self.status != "created":
                raise SessionConflictError(f"Session {self.session_name} was already started")
            self._set_status("starting")
            try:
                args, env = self._prepare_invocation()
            except SpawnError:
                self._cleanup_resources()
                self._set_status("stopped")
                raise

            logger.info(f"[Wrapper] Starting {self.session_name}: {' '.join(args)} (cwd={self.working_directory})")
            try:
                self.proc = subprocess.Popen(
                    args,
                    cwd=self.working_directory,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=env,
                )
            except OSError as exc:
                self._cleanup_resources()
                self._set_status("stopped")
                raise SpawnError(args[0], exc.strerror or str(exc))

            self.stats["start_time"] = time.time()
            self._ready_deadline = time.monotonic() + float(self.settings["ready_timeout_sec"])
            self._attach_threads()

        settle_timeout = float(self.settings["ready_timeout_sec"]) + _START_SETTLE_SLACK_SEC
        if not self._settled.wait(settle_timeout):
            logger.error(f"[Wrapper] {self.session_name}: did not settle within {settle_timeout}s, killing")
            self._terminate(float(self.settings["force_stop_grace_sec"]))
        if not self.is_ready:
            failure = self.failure or diagnose_exit(self.returncode, self._stderr_text)
            raise SessionStartError(failure.message, returncode=self.returncode, stderr=self._stderr_text)
        return {"session_id": self.session_id, "session_name": self.session_name, "ready": True}

    def _attach_threads(self):
        t_out = threading.Thread(target=_enqueue_output, args=(self.proc.stdout, self._inbox, "stdout"), daemon=True)
        t_err = threading.Thread(target=_enqueue_output, args=(self.proc.stderr, self._inbox, "stderr"), daemon=True)
        t_out.start()
        t_err.start()
        threading.Thread(target=self._wait_for_exit, args=([t_out, t_err],), daemon=True).start()
        threading.Thread(target=self._pump, daemon=True).start()

    def _wait_for_exit(self, readers):
        returncode = self.proc.wait()
        for reader in readers:
            reader.join(timeout=2)
        self._inbox.put(("exit", returncode))

    def _next_timeout(self):
        with self._lock:
            deadlines = [d for d in (self._flush_deadline, self._ready_deadline) if d is not None]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - time.monotonic())

    def _pump(self):
        while True:
            try:
                label, data = self._inbox.get(timeout=self._next_timeout())
            except queue.Empty:
                self._on_timer()
                continue
            if label == "stdout":
                self._handle_stdout(data)
            elif label == "stderr":
                self._handle_stderr(data)
            elif label == "exit":
                self._handle_exit(data)
                return
            self._on_timer()

    def wait_until_ready(self, timeout):
        self._settled.wait(timeout)
        return self.is_ready

    # -- stream handling -----------------------------------------------

    def _on_timer(self, now=None):
        with self._lock:
            now = time.monotonic() if now is None else now
            if self._flush_deadline is not None and now >= self._flush_deadline:
                self._flush_deadline = None
                self._drain_partial()
                self._flush_buffer()
            if self._ready_deadline is not None and now >= self._ready_deadline:
                self._ready_deadline = None
                alive = self.proc is not None and self.proc.poll() is None
                if not self.is_ready and alive and not self._stop_requested:
                    logger.info(f"[Wrapper] {self.session_name}: no readiness marker, assuming ready")
                    if self.resuming and not self.history_loaded:
                        self.history_loaded = True
                    self._mark_ready(fallback=True)

    def _handle_stdout(self, text, now=None):
        with self._lock:
            if self._stop_requested or self.status == "stopped":
                return
            now = time.monotonic() if now is None else now
            self.stats["last_activity"] = time.time()
            logger.debug(f"[Wrapper] {self.session_name} stdout: {text[:400]!r}")
            lines = (self._partial + text).split("\n")
            self._partial = lines.pop()
            for raw in lines:
                self._process_line(raw)
            if self._buffer or self._partial:
                self._flush_deadline = now + float(self.settings["flush_delay_ms"]) / 1000.0

    def _drain_partial(self):
        if self._partial:
            raw, self._partial = self._partial, ""
            self._process_line(raw)

    def _process_line(self, raw):
        # A bare carriage return redraws the line; keep what the terminal would show.
        line = strip_ansi(raw.rstrip("\r").rsplit("\r", 1)[-1])
        tag = classify_line(line, resuming=self.resuming and not self.history_loaded, rules=self.rules)
        text = line.strip()

        if tag == NOISE:
            logger.debug(f"[Wrapper] {self.session_name}: startup noise {text[:120]!r}")
        elif tag == READY:
            self._flush_buffer()
            if self.resuming and not self.history_loaded:
                self.history_loaded = True
                logger.info(f"[Wrapper] {self.session_name}: history replay complete")
            self._mark_ready()
        elif tag == TOOL:
            self._flush_buffer()
            tool = extract_tool_name(text)
            usage = self.stats["tool_usage"]
            usage[tool] = usage.get(tool, 0) + 1
            self._emit_message("system", text, "tool", tool=tool)
        elif tag == STATUS:
            self._flush_buffer()
            if text.startswith(("❌", "✖", "✗", "Error:")):
                self.stats["error_count"] += 1
            self._emit_message("system", text, "status")
        elif tag == CONTEXT:
            self._flush_buffer()
            # Turn boundary: the answer is complete.
            if self.is_processing:
                self.is_processing = False
                if self.is_ready:
                    self._set_status("ready")
        elif tag == HISTORY:
            self._flush_buffer()
            role, content = split_history_line(text)
            if content:
                self._emit("history", message=self._build_message(role, content, "history"))
        else:
            if not self._buffer and not text:
                return
            self._buffer.append(line.rstrip())

    def _build_message(self, role, content, source, **extra):
        message = {
            "role": role,
            "content": content,
            "timestamp": _now_iso(),
            "source": source,
            "session_id": self.session_id,
            "session_name": self.session_name,
        }
        message.update(extra)
        return message

    def _emit_message(self, role, content, source, **extra):
        self.stats["message_count"] += 1
        self._emit("message", message=self._build_message(role, content, source, **extra))

    def _flush_buffer(self):
        if not self._buffer:
            return
        content = "\n".join(self._buffer).strip()
        self._buffer = []
        if content:
            self._emit_message("assistant", content, "stream")

    def _mark_ready(self, fallback=False):
        self._ready_deadline = None
        self.is_ready = True
        self.is_processing = False
        if not self._ready_emitted:
            self._ready_emitted = True
            self._set_status("ready")
            logger.info(f"[Wrapper] {self.session_name} ready{' (fallback)' if fallback else ''}")
            self._emit("ready", fallback=fallback)
            self._settled.set()
        else:
            self._set_status("ready")

    def _handle_stderr(self, text):
        with self._lock:
            self._stderr_text = (self._stderr_text + text)[-_MAX_STDERR_CHARS:]
            clean = strip_ansi(text).strip()
            if not clean:
                return
            logger.warning(f"[Wrapper] {self.session_name} stderr: {clean[:500]}")
            if self._ready_emitted and not self._stop_requested and self.status != "stopped":
                self.stats["error_count"] += 1
                self._emit("error", error=describe_stream_error(clean), raw=clean)

    def _handle_exit(self, returncode):
        with self._lock:
            self.returncode = returncode
            logger.info(f"[Wrapper] {self.session_name} exited with code {returncode}")
            if not self._stop_requested:
                self._drain_partial()
                self._flush_buffer()
            self._flush_deadline = None
            self._ready_deadline = None
            self.is_ready = False
            self.is_processing = False
            if not self._ready_emitted:
                self.failure = diagnose_exit(returncode, self._stderr_text)
                logger.error(f"[Wrapper] {self.session_name} failed to start: {self.failure.message}")
                self._emit("failure", kind=self.failure.kind, error=self.failure.message, returncode=returncode, early=True)
            elif returncode not in (0, None) and not self._stop_requested:
                self.failure = diagnose_exit(returncode, self._stderr_text)
                logger.error(f"[Wrapper] {self.session_name} crashed: {self.failure.message}")
                self._emit("failure", kind=self.failure.kind, error=self.failure.message, returncode=returncode, early=False)
            self._cleanup_resources()
            self._set_status("stopped")
            self._emit("closed", returncode=returncode)
            self._exited.set()
            self._settled.set()

    # -- commands ------------------------------------------------------

    @property
    def accepts_input(self):
        """True while a live child exists that has not been asked to stop."""
        with self._lock:
            if self.proc is None or self._stop_requested or self.status == "stopped":
                return False
            return self.proc.poll() is None

    def _write_stdin(self, data):
        try:
            self.proc.stdin.write(data.encode("utf-8"))
            self.proc.stdin.flush()
        except (BrokenPipeError, ValueError, OSError) as exc:
            raise SessionNotReadyError(f"Session {self.session_name} is not accepting input: {exc}")

    def flush(self):
        """Emit any buffered content now."""
        with self._lock:
            if self._stop_requested:
                return
            self._drain_partial()
            self._flush_buffer()

    def send_message(self, text, force=False):
        flattened = flatten_input(text)
        if not flattened:
            raise InvalidRequestError("Message content is required")
        with self._lock:
            if self.proc is None or self._stop_requested or self.status == "stopped":
                raise SessionNotReadyError(f"Session {self.session_name} is not running")
            if not self.is_ready and not force:
                raise SessionNotReadyError(f"Session {self.session_name} is not ready")
            if self.is_processing and self.settings.get("auto_interrupt"):
                self._interrupt_locked()
            self._drain_partial()
            self._flush_buffer()
            self._write_stdin(flattened + "\n")
            self.is_processing = True
            self.stats["last_activity"] = time.time()
            self._set_status("processing")
        logger.info(f"[Wrapper] {self.session_name}: sent {len(flattened)} chars")
        return {"session_id": self.session_id, "sent": True}

    def _interrupt_locked(self):
        discarded = len(self._buffer) + (1 if self._partial else 0)
        self._buffer = []
        self._partial = ""
        self._flush_deadline = None
        try:
            self.proc.send_signal(signal.SIGINT)
        except (OSError, ValueError) as exc:
            logger.warning(f"[Wrapper] {self.session_name}: interrupt signal failed: {exc}")
        self.is_processing = False
        self._set_status("interrupted")
        logger.info(f"[Wrapper] {self.session_name}: interrupted, discarded {discarded} buffered line(s)")
        self._emit("interrupted", discarded=discarded)

    def interrupt(self):
        with self._lock:
            if self.proc is None or self._stop_requested or self.status == "stopped":
                return False
            self._interrupt_locked()
            return True

    def _send_exit_command(self):
        try:
            self.proc.stdin.write(_EXIT_COMMAND.encode("utf-8"))
            self.proc.stdin.flush()
            self.proc.stdin.close()
        except (BrokenPipeError, ValueError, OSError):
            pass

    def _terminate(self, grace):
        if self.proc is None:
            return
        try:
            self.proc.terminate()
        except OSError:
            pass
        if self._exited.wait(grace):
            return
        logger.warning(f"[Wrapper] {self.session_name}: terminate ignored, killing")
        try:
            self.proc.kill()
        except OSError:
            pass
        self._exited.wait(grace)

    def stop(self, timeout=None):
        """Ask the child to exit, escalating to terminate after ``timeout``."""
        timeout = float(self.settings["stop_timeout_sec"] if timeout is None else timeout)
        with self._lock:
            if self.proc is None:
                self._cleanup_resources()
                self._set_status("stopped")
                return None
            if not self._stop_requested and self.status != "stopped":
                self._drain_partial()
                self._flush_buffer()
                self._stop_requested = True
                self._set_status("stopping")
                self._send_exit_command()
        if not self._exited.wait(timeout):
            logger.warning(f"[Wrapper] {self.session_name}: no exit after {timeout}s, terminating")
            self._terminate(float(self.settings["force_stop_grace_sec"]))
        return self.returncode

    def force_stop(self):
        grace = float(self.settings["force_stop_grace_sec"])
        with self._lock:
            if self.proc is None or self.status == "stopped":
                self._cleanup_resources()
                return None
            discarded = len(self._buffer)
            self._buffer = []
            self._partial = ""
            self._flush_deadline = None
            self._stop_requested = True
            self._set_status("stopping")
            logger.info(f"[Wrapper] {self.session_name}: force stop, discarded {discarded} buffered line(s)")
            self._emit("force_stopped", discarded=discarded)
            self._send_exit_command()
        if not self._exited.wait(grace):
            self._terminate(grace)
        with self._lock:
            self._cleanup_resources()
        return self.returncode

    def _cleanup_resources(self):
        if self._temp_recipe_path:
            _remove_temp_recipe(self._temp_recipe_path)
            self._temp_recipe_path = None
        if self._config_path:
            _cleanup_ephemeral_config(self._config_path)
            self._config_path = None

    # -- introspection -------------------------------------------------

    def get_session_stats(self):
        with self._lock:
            start = self.stats["start_time"]
            return {
                "session_id": self.session_id,
                "session_name": self.session_name,
                "status": self.status,
                "is_ready": self.is_ready,
                "is_processing": self.is_processing,
                "message_count": self.stats["message_count"],
                "tool_usage": dict(self.stats["tool_usage"]),
                "error_count": self.stats["error_count"],
                "start_time": start,
                "last_activity": self.stats["last_activity"],
                "uptime_sec": round(time.time() - start, 1) if start else 0,
                "pid": self.proc.pid if self.proc is not None else None,
            }
