"""Turn child-process failures into human-readable diagnoses."""
import re
from collections import namedtuple

Diagnosis = namedtuple("Diagnosis", ["kind", "message"])

# Checked against accumulated stderr when the process exits before readiness.
EARLY_EXIT_SIGNATURES = [
    (
        re.compile(r"spawn \S+ ENOENT|command not found", re.IGNORECASE),
        "command_not_found",
        "An extension command was not found, check that it is installed and on PATH",
    ),
    (
        re.compile(r"no such file or directory|path does not exist|ENOENT", re.IGNORECASE),
        "missing_path",
        "A filesystem path required by one of the session's extensions does not exist",
    ),
    (
        re.compile(
            r"exited before (?:it was )?initiali[sz]ed|before initiali[sz]ation"
            r"|connection closed.*initiali[sz]|failed to initiali[sz]e.*(?:extension|server)",
            re.IGNORECASE,
        ),
        "server_exited",
        "An extension server exited before it finished initializing",
    ),
    (
        re.compile(r"serde|deserializ|malformed|invalid json|unexpected end of json|expected value at line", re.IGNORECASE),
        "malformed_message",
        "An extension sent a malformed message to the agent",
    ),
    (
        re.compile(r"failed to access keyring|secure storage", re.IGNORECASE),
        "keyring_locked",
        "Keychain locked. Unlock your keychain and re-run the agent's configure step, then retry",
    ),
    (
        re.compile(r"recipe not found|failed to (?:load|parse) recipe", re.IGNORECASE),
        "recipe_invalid",
        "Recipe file not found or invalid",
    ),
    (
        re.compile(r"no provider configured|provider .*not (?:found|configured)|unknown provider", re.IGNORECASE),
        "provider_invalid",
        "Invalid provider configuration",
    ),
]

_EXIT_CODE_DIAGNOSES = {
    126: Diagnosis("permission_denied", "Permission denied running the agent executable, check file permissions"),
    127: Diagnosis("command_not_found", "Agent executable not found, ensure it is installed and on PATH"),
}

# Checked against each stderr chunk of a live session.
STREAM_ERROR_SIGNATURES = [
    (re.compile(r"failed to access keyring|secure storage", re.IGNORECASE),
     "Keychain locked. Unlock your keychain and re-run the agent's configure step, then retry"),
    (re.compile(r"ENOENT.*spawn|command not found", re.IGNORECASE),
     "Command not found, check that the extension server is installed and on PATH"),
    (re.compile(r"EACCES|permission denied", re.IGNORECASE),
     "Permission denied, check execute permissions for the extension server"),
    (re.compile(r"timed? ?out", re.IGNORECASE),
     "Extension server timed out"),
    (re.compile(r"ECONNREFUSED|connection refused", re.IGNORECASE),
     "Connection refused, ensure the target server is running and reachable"),
]

_MAX_STDERR_IN_MESSAGE = 2000


def diagnose_exit(returncode, stderr):
    """Classify a process that exited before it became ready."""
    text = stderr or ""
    for pattern, kind, message in EARLY_EXIT_SIGNATURES:
        if pattern.search(text):
            return Diagnosis(kind, message)
    if returncode in _EXIT_CODE_DIAGNOSES:
        return _EXIT_CODE_DIAGNOSES[returncode]
    tail = text.strip()[-_MAX_STDERR_IN_MESSAGE:]
    if tail:
        return Diagnosis("unknown", f"Process exited with code {returncode}: {tail}")
    return Diagnosis("unknown", f"Process exited with code {returncode}")


def describe_stream_error(text):
    """Friendly message for stderr seen while the session is live."""
    for pattern, message in STREAM_ERROR_SIGNATURES:
        if pattern.search(text or ""):
            return message
    return (text or "").strip()
