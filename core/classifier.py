"""Line classification for the wrapped agent's terminal output.

Rules are evaluated top to bottom and the first match wins. New output formats
are handled by adding a ``Rule`` to ``LINE_RULES`` (or passing a custom rule
list to ``classify_line``), not by touching the wrapper's control flow.
"""
import re
from collections import namedtuple

NOISE = "noise"
READY = "ready"
TOOL = "tool"
STATUS = "status"
CONTEXT = "context"
HISTORY = "history"
CONTENT = "content"

# CSI sequences (colors, cursor moves), OSC sequences (titles, hyperlinks),
# and the remaining two-byte escapes.
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

Rule = namedtuple("Rule", ["tag", "predicate", "resuming_only"])


def _matches(*patterns, flags=0):
    compiled = [re.compile(p, flags) for p in patterns]

    def predicate(line):
        return any(p.search(line) for p in compiled)

    return predicate


_STARTUP_PATTERNS = (
    r"^starting session",
    r"^logging to",
    r"^working directory:",
    r"^session id:",
    r"^Goose is running!",
    r"^Welcome to Goose",
    r"^Loading recipe",
    r"WARN.*goose::",
    r"^\d{4}-\d{2}-\d{2}T.*WARN",
    r"^at crates/",
)

_READY_PATTERNS = (
    r"^>\s*$",
    r"^\( ?O\)>\s*$",
    r"^Enter your message:",
    r"ready for input",
    r"awaiting input",
    r"^Hello! How can I help",
)

_TOOL_PATTERNS = (
    r"\U0001f527",  # wrench emoji
    r"^Tool:",
    r"^Running:",
    r"^Executing:",
    r"^Using tool:",
    r"^File operation:",
    r"^─+\s*\S+\s*\|\s*\S+",
)

_STATUS_PATTERNS = (
    r"^(✅|✔|✓|⚠|❌|✖|✗)",
    r"^(Error|Warning|Success|Info):",
    r"^Switched to session",
    r"^Session (resumed|saved|closed)",
    r"^Interrupted",
)

_CONTEXT_PATTERNS = (
    r"^Context:",
)

_HISTORY_PATTERNS = (
    r"^(You|User|Assistant):",
    r"^\[[^\]]*\]\s*(You|User|Assistant):",
    # Unprefixed replayed prose: more than five characters, starting with a letter.
    r"^[A-Za-z].{5,}$",
)

LINE_RULES = [
    Rule(NOISE, _matches(*_STARTUP_PATTERNS), False),
    Rule(READY, _matches(*_READY_PATTERNS, flags=re.IGNORECASE), False),
    Rule(TOOL, _matches(*_TOOL_PATTERNS), False),
    Rule(STATUS, _matches(*_STATUS_PATTERNS), False),
    Rule(CONTEXT, _matches(*_CONTEXT_PATTERNS), False),
    Rule(HISTORY, _matches(*_HISTORY_PATTERNS), True),
]

_TOOL_NAME_RE = re.compile(r"(?:\U0001f527\s*|Tool:\s*|Using tool:\s*|^─+\s*)([\w.\-]+)")
_HISTORY_ROLE_RE = re.compile(r"^(?:\[[^\]]*\]\s*)?(You|User|Assistant):\s*")


def strip_ansi(text):
    if not text:
        return ""
    return _CONTROL_RE.sub("", _ANSI_RE.sub("", text))


def classify_line(line, resuming=False, rules=None):
    """Return the tag of the first rule matching an ANSI-free line."""
    text = (line or "").strip()
    if not text:
        return CONTENT
    for rule in (rules if rules is not None else LINE_RULES):
        if rule.resuming_only and not resuming:
            continue
        if rule.predicate(text):
            return rule.tag
    return CONTENT


def extract_tool_name(line):
    match = _TOOL_NAME_RE.search(line or "")
    return match.group(1) if match else "unknown"


def split_history_line(line):
    """Split a replayed line into (role, text)."""
    text = (line or "").strip()
    match = _HISTORY_ROLE_RE.match(text)
    if not match:
        return "assistant", text
    role = "assistant" if match.group(1) == "Assistant" else "user"
    return role, text[match.end():]


def flatten_input(text):
    """Collapse newline runs to single spaces so the child sees one submission."""
    return re.sub(r"[ \t]*(?:\r\n|\r|\n)+[ \t]*", " ", (text or "").strip())
