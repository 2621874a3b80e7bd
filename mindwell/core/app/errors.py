from __future__ import annotations

from typing import List, Optional


class MindWellError(Exception):
    """Base class for every error raised by the mood pipeline."""


class KeyDerivationError(MindWellError):
    pass


class AuthenticationError(MindWellError):
    pass


class LockedOutError(AuthenticationError):
    def __init__(self, retry_after: int) -> None:
        super().__init__(f"Too many failed unlock attempts. Try again in {retry_after} seconds.")
        self.retry_after = retry_after


class EncryptionError(MindWellError):
    pass


class DecryptionError(EncryptionError):
    pass


class SessionLockedError(MindWellError):
    pass


class StorageError(MindWellError):
    pass


class ValidationError(MindWellError):
    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [message])


class ConsentError(MindWellError):
    pass
