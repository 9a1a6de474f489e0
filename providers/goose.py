"""Goose CLI provider: invocation, per-session config, and session listing."""
import os
import subprocess
import json
import shutil
import hashlib
import pathlib
import time

from utils.config import logger, TMP_DIR, _load_client_config


def _resolve_goose_path(config=None):
    if config is None:
        config = _load_client_config()
    configured = config.get("goose_path") if isinstance(config, dict) else None
    return os.environ.get("GOOSE_PATH") or configured or shutil.which("goose")


def _build_goose_args(options, recipe_path=None, resume=False):
    """Build goose args that keep the session interactive across turns.

    With a recipe file the ``run --interactive`` form is used; otherwise the
    legacy ``session`` form with extensions passed directly.
    """
    name = options.get("session_name")
    builtins = [b for b in (options.get("builtins") or []) if b]
    extensions = [e for e in (options.get("extensions") or []) if e]
    max_turns = options.get("max_turns")

    if recipe_path:
        args = ["run", "--recipe", str(recipe_path), "--interactive"]
        if resume:
            args.append("--resume")
        args.extend(["--name", name])
        if builtins:
            args.extend(["--with-builtin", ",".join(builtins)])
    else:
        args = ["session"]
        if resume:
            args.append("--resume")
        args.extend(["--name", name])
        for ext in extensions:
            args.extend(["--with-extension", ext])
        for builtin in builtins:
            args.extend(["--with-builtin", builtin])
    if options.get("debug"):
        args.append("--debug")
    if max_turns:
        args.extend(["--max-turns", str(max_turns)])
    return args


def _create_ephemeral_config(session_name, provider=None, model=None, extensions=None):
    """Write a per-session config with no default extensions.

    Returns the config file path. Only extensions declared for this session
    are enabled, so globally configured servers never leak in.
    """
    base = pathlib.Path(TMP_DIR) / "configs"
    base.mkdir(parents=True, exist_ok=True)
    digest = hashlib.md5(session_name.encode("utf-8")).hexdigest()[:8]
    session_dir = base / f"session-{digest}-{int(time.time() * 1000)}"
    session_dir.mkdir(parents=True, exist_ok=True)

    config = {"providers": {}, "extensions": {}, "models": {}, "builtins": []}
    if provider:
        default = {"name": provider}
        if model:
            default["model"] = model
        config["providers"] = {"default": default}
    for ext in extensions or []:
        if not isinstance(ext, dict) or not ext.get("name"):
            continue
        config["extensions"][ext["name"]] = {
            "type": ext.get("type") or "stdio",
            "cmd": ext.get("cmd"),
            "args": ext.get("args") or [],
            "timeout": ext.get("timeout") or 300,
            "env_keys": ext.get("env_keys") or [],
            "enabled": True,
        }

    config_path = session_dir / "goose-config.json"
    config_path.write_text(json.dumps(config, indent=2), encoding="utf-8")
    logger.info(
        f"[Goose] Ephemeral config for {session_name}: {config_path} "
        f"({len(config['extensions'])} extension(s))"
    )
    return str(config_path)


def _cleanup_ephemeral_config(config_path):
    if not config_path:
        return
    session_dir = pathlib.Path(config_path).parent
    try:
        shutil.rmtree(session_dir)
        logger.info(f"[Goose] Removed ephemeral config {session_dir}")
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning(f"[Goose] Failed to remove ephemeral config {session_dir}: {exc}")


def _build_session_env(session_id, session_name, working_dir, config_path=None, provider=None, model=None, extra=None):
    env = os.environ.copy()
    env["WINGMAN_SESSION_ID"] = session_id
    env["WINGMAN_SESSION_NAME"] = session_name or session_id
    env["WINGMAN_WORKING_DIR"] = working_dir
    if config_path:
        env["GOOSE_CONFIG_PATH"] = config_path
    if provider:
        env["GOOSE_PROVIDER"] = provider
    if model:
        env["GOOSE_MODEL"] = model
    if extra:
        env.update(extra)
    return env


def _list_goose_sessions(config=None, timeout_sec=10):
    """Sessions the agent itself knows about; empty on any failure."""
    goose_path = _resolve_goose_path(config)
    if not goose_path:
        return []
    try:
        result = subprocess.run(
            [goose_path, "session", "list", "--format", "json"],
            capture_output=True,
            text=True,
            encoding="utf-8",
            timeout=timeout_sec,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning(f"[Goose] session list failed: {exc}")
        return []
    if result.returncode != 0:
        logger.warning(f"[Goose] session list exited {result.returncode}: {(result.stderr or '').strip()[:200]}")
        return []
    try:
        data = json.loads(result.stdout or "[]")
    except json.JSONDecodeError:
        return []
    if isinstance(data, dict):
        data = data.get("sessions") or []
    return [item for item in data if isinstance(item, dict)]
