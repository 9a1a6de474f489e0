"""Interactive terminal front end for running goose sessions side by side."""
import argparse
import os
import queue
import sys
import threading

from utils.config import logger
from core.coordinator import SessionCoordinator
from core.errors import WingmanError
from core.recipes import RecipeResolver
from providers.goose import _list_goose_sessions

_HELP = """Commands:
  /sessions          list running sessions
  /new NAME          create and start a new session
  /switch ID         make another running session active
  /resume NAME       resume a stored session
  /interrupt         interrupt the active session's current turn
  /stop              force-stop the active session
  /exit              stop all sessions and quit
Anything else is sent to the active session."""


def _format_event(event):
    etype = event.get("type")
    if etype == "message":
        role = event.get("role")
        if role == "user":
            return None
        prefix = "" if role == "assistant" else "· "
        return f"{prefix}{event.get('content', '')}"
    if etype == "session_ready":
        return f"[{event.get('session_name')}] ready"
    if etype == "session_switched":
        lines = [f"--- {event.get('session_name')} ---"]
        for message in event.get("conversation") or []:
            speaker = "you" if message.get("role") == "user" else message.get("role")
            lines.append(f"{speaker}: {message.get('content', '')}")
        return "\n".join(lines)
    if etype in ("session_error", "session_failed"):
        return f"[{event.get('session_name')}] error: {event.get('error')}"
    if etype == "session_interrupted":
        return f"[{event.get('session_name')}] interrupted"
    if etype == "session_closed":
        return f"[{event.get('session_name')}] closed"
    return None


def _print_events(q, stop_event, out):
    while not stop_event.is_set():
        try:
            event = q.get(timeout=0.2)
        except queue.Empty:
            continue
        text = _format_event(event)
        if text:
            out.write(text + "\n")
            out.flush()


def _print_sessions(coordinator, out):
    running = coordinator.get_running_sessions()
    if not running:
        out.write("No running sessions.\n")
        return
    for meta in running:
        marker = "*" if meta.get("active") else " "
        out.write(f"{marker} {meta['session_id']}  {meta['session_name']}  {meta['status']}\n")


def _handle_command(coordinator, line, args, out):
    """Run one slash command. Returns False when the loop should end."""
    command, _, rest = line.partition(" ")
    rest = rest.strip()
    if command == "/exit":
        return False
    if command == "/sessions":
        _print_sessions(coordinator, out)
    elif command == "/new":
        created = coordinator.create_session(_session_options(args, rest or None))
        coordinator.start_session(created["session_id"])
    elif command == "/switch":
        coordinator.switch_session(rest)
    elif command == "/resume":
        coordinator.resume_session(rest)
    elif command == "/interrupt":
        coordinator.interrupt_active_session()
    elif command == "/stop":
        coordinator.force_stop_active_session()
    else:
        out.write(_HELP + "\n")
    return True


def _session_options(args, name):
    return {
        "session_name": name,
        "working_directory": os.path.abspath(args.workdir),
        "extensions": args.extension or [],
        "builtins": args.builtin or [],
        "recipe_id": args.recipe,
        "debug": args.debug,
    }


def _run_chat(args, inp=None, out=None):
    inp = inp or sys.stdin
    out = out or sys.stdout
    coordinator = SessionCoordinator()
    q = coordinator.subscribe(maxsize=1000)
    stop_event = threading.Event()
    printer = threading.Thread(target=_print_events, args=(q, stop_event, out), daemon=True)
    printer.start()
    try:
        if args.resume:
            coordinator.resume_session(args.resume)
        else:
            created = coordinator.create_session(_session_options(args, args.name))
            coordinator.start_session(created["session_id"])
        for raw in inp:
            line = raw.rstrip("\n")
            if not line.strip():
                continue
            try:
                if line.startswith("/"):
                    if not _handle_command(coordinator, line.strip(), args, out):
                        break
                else:
                    coordinator.send_message_to_active_session(line)
            except WingmanError as exc:
                out.write(f"error: {exc}\n")
    except WingmanError as exc:
        out.write(f"error: {exc}\n")
        return 1
    finally:
        stop_event.set()
        coordinator.unsubscribe(q)
        coordinator.shutdown()
    return 0


def _run_sessions(args, out=None, coordinator=None):
    out = out or sys.stdout
    if getattr(args, "agent", False):
        for item in _list_goose_sessions():
            out.write(f"{item.get('id') or item.get('name')}  {item.get('description') or '-'}\n")
        return 0
    coordinator = coordinator or SessionCoordinator()
    for record in coordinator.get_available_sessions():
        out.write(
            f"{record.get('name')}  {record.get('status')}  "
            f"{record.get('message_count', 0)} message(s)  last used {record.get('last_used') or '-'}\n"
        )
    return 0


def _run_recipes(args, out=None, resolver=None):
    out = out or sys.stdout
    resolver = resolver or RecipeResolver()
    recipes = resolver.list_recipes()
    if not recipes:
        out.write("No recipes found.\n")
    for recipe in recipes:
        out.write(f"{recipe['id']}  {recipe.get('name') or recipe.get('title') or '-'}\n")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog="wingman", description="Run several goose sessions side by side.")
    sub = parser.add_subparsers(dest="command")

    chat = sub.add_parser("chat", help="Start an interactive session")
    chat.add_argument("--name", help="Session name (default: generated)")
    chat.add_argument("--resume", metavar="NAME", help="Resume a stored session instead of creating one")
    chat.add_argument("--workdir", default=os.getcwd(), help="Working directory for the session")
    chat.add_argument("--extension", action="append", help="Extension command (repeatable)")
    chat.add_argument("--builtin", action="append", help="Builtin extension name (repeatable)")
    chat.add_argument("--recipe", help="Recipe id to run the session from")
    chat.add_argument("--debug", action="store_true", help="Pass --debug to goose")

    sessions = sub.add_parser("sessions", help="List stored sessions")
    sessions.add_argument("--agent", action="store_true", help="List the sessions goose itself knows about")

    sub.add_parser("recipes", help="List available recipes")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "chat":
        logger.info("[CLI] Starting chat")
        return _run_chat(args)
    if args.command == "sessions":
        return _run_sessions(args)
    if args.command == "recipes":
        return _run_recipes(args)
    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
