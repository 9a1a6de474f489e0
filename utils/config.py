"""Shared configuration, paths, and logging."""
import os
import pathlib
import json
import logging
import time
import datetime

# Setup logging
logging.basicConfig(
    level=logging.DEBUG,
    format='%(asctime)s [%(levelname)s] %(message)s',
    handlers=[
        logging.FileHandler(os.environ.get("WINGMAN_LOG_FILE", "wingman_debug.log"), mode='a')
    ]
)
logger = logging.getLogger(__name__)

APP_START_TIME = time.time()

# Working directory and data paths
DEFAULT_CWD = os.environ.get("WINGMAN_CWD", os.getcwd())
WINGMAN_HOME = os.environ.get("WINGMAN_HOME", os.path.join(pathlib.Path.home(), ".wingman"))
SESSION_STORE_DIR = os.environ.get("WINGMAN_SESSION_STORE", os.path.join(WINGMAN_HOME, "sessions"))
RECIPE_DIR = os.environ.get("WINGMAN_RECIPE_DIR", os.path.join(WINGMAN_HOME, "recipes"))
TMP_DIR = os.environ.get("WINGMAN_TMP_DIR", os.path.join(WINGMAN_HOME, "tmp"))
SECRETS_PATH = os.environ.get("WINGMAN_SECRETS", os.path.join(WINGMAN_HOME, "secrets.json"))
CLIENT_CONFIG_PATH = os.environ.get("WINGMAN_CLIENT_CONFIG", os.path.join(WINGMAN_HOME, "client_config.json"))

DEFAULT_WRAPPER_SETTINGS = {
    "flush_delay_ms": 200,
    "ready_timeout_sec": 2.0,
    "send_ready_wait_sec": 3.0,
    "stop_timeout_sec": 5.0,
    "force_stop_grace_sec": 1.0,
    "max_turns": 1000,
    "auto_interrupt": False,
}

# env var -> (settings key, parser)
_WRAPPER_ENV_OVERRIDES = {
    "WINGMAN_FLUSH_DELAY_MS": ("flush_delay_ms", int),
    "WINGMAN_READY_TIMEOUT": ("ready_timeout_sec", float),
    "WINGMAN_SEND_READY_WAIT": ("send_ready_wait_sec", float),
    "WINGMAN_STOP_TIMEOUT": ("stop_timeout_sec", float),
    "WINGMAN_FORCE_STOP_GRACE": ("force_stop_grace_sec", float),
    "WINGMAN_MAX_TURNS": ("max_turns", int),
    "WINGMAN_AUTO_INTERRUPT": ("auto_interrupt", lambda v: v.strip().lower() in {"1", "true", "yes", "on"}),
}

def _load_client_config():
    path = pathlib.Path(CLIENT_CONFIG_PATH)
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            return {}
        return data
    except Exception:
        return {}

def _get_wrapper_settings(config=None):
    """Merge wrapper tunables: defaults, then client config, then environment."""
    if config is None:
        config = _load_client_config()
    settings = dict(DEFAULT_WRAPPER_SETTINGS)
    if isinstance(config, dict):
        for key, default in DEFAULT_WRAPPER_SETTINGS.items():
            if key not in config or config.get(key) is None:
                continue
            try:
                settings[key] = type(default)(config[key])
            except (TypeError, ValueError):
                logger.warning(f"[Config] Ignoring invalid value for {key}: {config[key]!r}")
    for env_key, (key, parse) in _WRAPPER_ENV_OVERRIDES.items():
        raw = os.environ.get(env_key)
        if raw is None or raw == "":
            continue
        try:
            settings[key] = parse(raw)
        except ValueError:
            logger.warning(f"[Config] Ignoring invalid {env_key}={raw!r}")
    return settings


def _secrets_enabled():
    return os.environ.get("WINGMAN_ENV_SECRETS", "1").strip().lower() not in {"0", "false"}


def _now_iso():
    return datetime.datetime.now().isoformat(timespec="seconds")

