# reconcile_engine/core/errors.py

# -----------------------------
# Base Errors
# -----------------------------

class ReconcileError(Exception):
    """Base class for all reconcile engine errors."""
    pass


# -----------------------------
# Render / Secret Errors
# -----------------------------

class RenderError(ReconcileError):
    """Compose definition could not be rendered into desired services."""

    PARSE = "parse"
    RESOLVE = "resolve"

    def __init__(self, stack: str, cause: str, kind: str = PARSE):
        self.stack = stack
        self.cause = cause
        self.kind = kind
        super().__init__(f"render {stack} failed ({kind}): {cause}")


class DecryptionError(ReconcileError):
    """SOPS key missing or invalid, or ciphertext corrupt."""
    pass


class InterpolationError(ReconcileError):
    """Required variable has no value and no default."""
    pass


# -----------------------------
# Registry Errors
# -----------------------------

class Conflict(ReconcileError):
    """Duplicate stack name or deploy already in flight."""
    pass


class PreconditionFailed(ReconcileError):
    """Operation not allowed in the stack's current state."""
    pass


class NotFound(ReconcileError):
    pass


class InvalidPath(ReconcileError):
    """Relative path escapes the stack directory."""
    pass


# -----------------------------
# Deploy Errors
# -----------------------------

class DeployFailed(ReconcileError):
    """Apply command exited non-zero or was cancelled."""

    def __init__(self, stack: str, exit_code: int | None, last_error: str):
        self.stack = stack
        self.exit_code = exit_code
        self.last_error = last_error
        super().__init__(
            f"deploy {stack} failed (exit={exit_code}): {last_error}"
        )
