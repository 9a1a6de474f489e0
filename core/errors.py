"""Exception hierarchy for session coordination.

Each error carries a ``code`` matching the API error codes in ``app.py`` so a
front end can map it without inspecting the message text.
"""


class WingmanError(Exception):
    """Base class for errors returned synchronously to a caller."""
    code = "OPERATION_FAILED"


class InvalidRequestError(WingmanError):
    """Malformed input: missing field, bad name, bad type."""
    code = "INVALID_INPUT"


class SessionNotFoundError(WingmanError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_ref):
        self.session_ref = session_ref
        super().__init__(f"Session {session_ref} not found")


class NoActiveSessionError(WingmanError):
    code = "NO_ACTIVE_SESSION"

    def __init__(self):
        super().__init__("No active session")


class SessionConflictError(WingmanError):
    code = "CONFLICT"


class RecipeNotFoundError(WingmanError):
    code = "RECIPE_NOT_FOUND"

    def __init__(self, recipe_id):
        self.recipe_id = recipe_id
        super().__init__(f"Recipe {recipe_id} not found")


class SessionNotReadyError(WingmanError):
    code = "SESSION_NOT_READY"


class SpawnError(WingmanError):
    """The child executable could not be launched at all."""
    code = "CLI_NOT_FOUND"

    def __init__(self, command, reason):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to launch {command}: {reason}")


class SessionStartError(WingmanError):
    """The child process exited before it became ready."""
    code = "START_FAILED"

    def __init__(self, diagnosis, returncode=None, stderr=""):
        self.diagnosis = diagnosis
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(diagnosis)
