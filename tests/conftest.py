"""Shared test fixtures for pytest."""
import sys
import os
import pytest
import tempfile
import shutil

# Keep logs and state out of the user's home before any project module is imported
_TEST_HOME = tempfile.mkdtemp(prefix="wingman-test-")
os.environ.setdefault("WINGMAN_HOME", _TEST_HOME)
os.environ.setdefault("WINGMAN_LOG_FILE", os.path.join(_TEST_HOME, "wingman_test.log"))
os.environ.setdefault("GOOSE_SESSION_DIR", os.path.join(_TEST_HOME, "goose-sessions"))

# Add parent directory to path so we can import from project
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

FAKE_AGENT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fixtures", "fake_agent.py")

FAST_SETTINGS = {
    "flush_delay_ms": 200,
    "ready_timeout_sec": 2.0,
    "send_ready_wait_sec": 3.0,
    "stop_timeout_sec": 5.0,
    "force_stop_grace_sec": 1.0,
    "max_turns": 1000,
    "auto_interrupt": False,
}


class FakeWrapper:
    """Stands in for SessionWrapper: no process, events fired by the test."""

    def __init__(self, session_id, options, settings=None, recipe_resolver=None, secret_injector=None):
        self.session_id = session_id
        self.options = options
        self.session_name = options["session_name"]
        self.status = "created"
        self.is_ready = False
        self.is_processing = False
        self.listeners = []
        self.sent = []
        self.flushes = 0
        self.interrupts = 0
        self.started = False
        self.fail_with = None

    @property
    def accepts_input(self):
        return self.status not in ("created", "stopping", "stopped")

    def add_listener(self, callback):
        self.listeners.append(callback)

    def emit(self, event_type, **data):
        event = {"type": event_type, "session_id": self.session_id, "session_name": self.session_name}
        event.update(data)
        for callback in list(self.listeners):
            callback(event)

    def emit_message(self, content, role="assistant", source="stream"):
        self.emit(
            "message",
            message={
                "role": role,
                "content": content,
                "timestamp": "2026-01-01T00:00:00",
                "source": source,
                "session_id": self.session_id,
                "session_name": self.session_name,
            },
        )

    def start(self):
        if self.fail_with is not None:
            raise self.fail_with
        self.started = True
        self.is_ready = True
        self.status = "ready"
        self.emit("ready", fallback=False)
        return {"session_id": self.session_id, "session_name": self.session_name, "ready": True}

    def flush(self):
        self.flushes += 1

    def wait_until_ready(self, timeout):
        return self.is_ready

    def send_message(self, text, force=False):
        self.sent.append((text, force))
        self.is_processing = True
        return {"session_id": self.session_id, "sent": True}

    def interrupt(self):
        self.interrupts += 1
        self.is_processing = False
        self.emit("interrupted", discarded=0)
        return True

    def _close(self):
        self.status = "stopped"
        if self.started:
            self.emit("status", status="stopped")
            self.emit("closed", returncode=0)
        return 0

    def stop(self, timeout=None):
        return self._close()

    def force_stop(self):
        self.emit("force_stopped", discarded=0)
        return self._close()

    def get_session_stats(self):
        return {"session_id": self.session_id, "status": self.status, "message_count": 0}


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    tmpdir = tempfile.mkdtemp()
    yield tmpdir
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def fast_settings():
    """Wrapper tunables at their defaults, safe to mutate per test."""
    return dict(FAST_SETTINGS)


@pytest.fixture
def store(temp_dir):
    """File-backed session store in a temp directory."""
    from core.session_store import SessionStore
    return SessionStore(os.path.join(temp_dir, "sessions"))


@pytest.fixture
def recipes(temp_dir):
    """Recipe resolver rooted in a temp directory."""
    from core.recipes import RecipeResolver
    return RecipeResolver(os.path.join(temp_dir, "recipes"), os.path.join(temp_dir, "tmp"))


@pytest.fixture
def fake_wrappers():
    """Records every FakeWrapper the coordinator creates."""
    created = []

    def factory(*args, **kwargs):
        wrapper = FakeWrapper(*args, **kwargs)
        created.append(wrapper)
        return wrapper

    factory.created = created
    return factory


@pytest.fixture
def coordinator(store, recipes, fake_wrappers):
    """Coordinator wired to fake wrappers and temp storage."""
    from core.coordinator import SessionCoordinator
    return SessionCoordinator(
        store=store,
        recipe_resolver=recipes,
        settings=dict(FAST_SETTINGS),
        wrapper_factory=fake_wrappers,
    )


@pytest.fixture
def sample_recipe():
    """Sample recipe descriptor."""
    return {
        "id": "research",
        "name": "Research",
        "instructions": "Help with research",
        "extensions": [
            {"name": "search", "type": "stdio", "cmd": "search-server", "args": [], "env_keys": ["SEARCH_API_KEY"]}
        ],
    }


@pytest.fixture
def app(coordinator):
    """Create Flask app for testing."""
    import app as app_module
    app_module.APP.config['TESTING'] = True
    app_module._set_coordinator(coordinator)
    yield app_module.APP
    app_module._set_coordinator(None)


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
