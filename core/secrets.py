"""Per-session secret injection for recipe-declared extensions."""
import json
import os
import pathlib

from utils.config import SECRETS_PATH, logger


def _load_secret_file(path):
    path = pathlib.Path(path)
    if not path.exists():
        return {}
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("secrets file must contain a JSON object")
    return data


def _required_keys(recipe):
    """Map extension name -> env keys it declares."""
    requirements = {}
    for ext in (recipe or {}).get("extensions") or []:
        if not isinstance(ext, dict):
            continue
        keys = [k for k in (ext.get("env_keys") or []) if isinstance(k, str) and k]
        if keys:
            requirements[ext.get("name") or "unnamed"] = keys
    return requirements


class SecretInjector:
    """Builds the environment patch a session needs from declared env keys.

    Values come from ``secrets.json`` (either ``{"server": {"KEY": "v"}}`` or a
    flat ``{"KEY": "v"}``) and then the process environment. Only key names
    are ever logged.
    """

    def __init__(self, secrets_path=None, environ=None):
        self.secrets_path = secrets_path or SECRETS_PATH
        self.environ = environ if environ is not None else os.environ

    def _lookup(self, stored, server, key):
        scoped = stored.get(server)
        if isinstance(scoped, dict) and isinstance(scoped.get(key), str) and scoped.get(key):
            return scoped[key]
        flat = stored.get(key)
        if isinstance(flat, str) and flat:
            return flat
        return self.environ.get(key) or None

    def build_session_env(self, recipe):
        env, injected, missing = {}, [], []
        try:
            stored = _load_secret_file(self.secrets_path)
        except (OSError, ValueError) as exc:
            logger.warning(f"[Secrets] Could not read {self.secrets_path}: {exc}")
            stored = {}
        for server, keys in _required_keys(recipe).items():
            for key in keys:
                value = self._lookup(stored, server, key)
                if value:
                    env[key] = value
                    injected.append({"server": server, "key": key})
                else:
                    missing.append({"server": server, "key": key})
        if injected:
            logger.info(f"[Secrets] Injected {', '.join(i['key'] for i in injected)}")
        if missing:
            logger.warning(
                f"[Secrets] Missing {len(missing)} required secret(s): "
                f"{', '.join(m['key'] + ' (' + m['server'] + ')' for m in missing)}"
            )
        return {"env": env, "injected": injected, "missing": missing, "success": not missing}
