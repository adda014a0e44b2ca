"""Errors raised by store implementations."""

from typing import Optional


class StoreError(Exception):
    """Base class for store errors."""


class UserNotFoundError(StoreError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User '{user_id}' not found")


class VersionNotFoundError(StoreError):
    def __init__(self, version_id: Optional[str]):
        self.version_id = version_id
        if version_id is None:
            super().__init__("No active FSM version")
        else:
            super().__init__(f"FSM version '{version_id}' not found")


class StateNotFoundError(StoreError):
    def __init__(self, state_id: str, version_id: str = ""):
        self.state_id = state_id
        self.version_id = version_id
        message = f"State '{state_id}' not found"
        if version_id:
            message += f" in version '{version_id}'"
        super().__init__(message)


class StateCommitConflictError(StoreError):
    """
    Compare-and-set failure: the user's state changed since it was read.

    Retryable by the caller; the engine never retries on its own.
    """

    def __init__(
        self,
        user_id: str,
        version_id: str,
        expected: Optional[str],
        actual: Optional[str],
    ):
        self.user_id = user_id
        self.version_id = version_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"State of user '{user_id}' in version '{version_id}' is "
            f"{actual!r}, expected {expected!r}"
        )


__all__ = [
    "StoreError",
    "UserNotFoundError",
    "VersionNotFoundError",
    "StateNotFoundError",
    "StateCommitConflictError",
]
