"""
Error hierarchy for the notes service.

    NotesError
    ├── NotFoundError          page / template / version absent
    ├── PermissionDeniedError  permission engine said no
    ├── StorageTimeoutError    a storage call exceeded its bound
    ├── ValidationError        malformed or empty argument
    │   └── InvalidTokenError  interaction token rejected
    └── SlugConflictError      slug uniqueness violation while allocating

Every error carries a short message that is safe to show to the user.
"""

from __future__ import annotations

from typing import Any


class NotesError(Exception):
    user_message = "Command error."

    def __init__(self, message: str | None = None, **context: Any):
        self.message = message or self.user_message
        self.context = context
        super().__init__(self.message)


class NotFoundError(NotesError):
    user_message = "Not found."


class PermissionDeniedError(NotesError):
    user_message = "You do not have permission to do that."


class StorageTimeoutError(NotesError):
    user_message = "Storage is not responding right now, please try again."


class ValidationError(NotesError):
    user_message = "Invalid input."


class InvalidTokenError(ValidationError):
    user_message = "Invalid action."


class SlugConflictError(NotesError):
    user_message = "That slug is already taken."
