from __future__ import annotations

from typing import Any


class SettingsError(Exception):
    """Base error for scoped settings overrides; carries a stable code and HTTP status."""

    code = "SETTINGS_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class SettingsValidationError(SettingsError):
    """Scope fields do not match the priority; nothing was mutated."""

    code = "VALIDATION_ERROR"
    status_code = 422


class ConflictError(SettingsError):
    code = "CONFLICT"
    status_code = 409


class NotFoundError(SettingsError):
    code = "NOT_FOUND"
    status_code = 404


class PriorityMismatchError(SettingsError):
    """ADMIN records can only be updated in place."""

    code = "PRIORITY_MISMATCH"
    status_code = 400


class PersistenceError(SettingsError):
    code = "PERSISTENCE_ERROR"
    status_code = 500


class PartialFailureError(SettingsError):
    """A post-commit side effect gave up; the committed settings change stands."""

    code = "PARTIAL_FAILURE"
    status_code = 500

    def __init__(self, side_effect: str, target: str, attempts: int, error: str) -> None:
        self.side_effect = side_effect
        self.target = target
        self.attempts = attempts
        super().__init__(
            f"{side_effect} failed for {target} after {attempts} attempt(s): {error}",
            details={"side_effect": side_effect, "target": target, "attempts": attempts},
        )


class ForbiddenError(SettingsError):
    code = "FORBIDDEN"
    status_code = 403
