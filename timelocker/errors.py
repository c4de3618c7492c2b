from __future__ import annotations

from typing import Optional


class TimeLockerError(Exception):
    """Base class for TimeLocker-specific errors."""


# Container format/parse
class ContainerFormatError(TimeLockerError):
    pass


class UnsupportedVersionError(ContainerFormatError):
    pass


class MetadataSizeError(ContainerFormatError):
    pass


class MissingFieldError(TimeLockerError):
    def __init__(self, field: str):
        super().__init__(f"Missing field: {field}")
        self.field = field


class InvalidUnlockTime(TimeLockerError):
    pass


# Time lock / beacon
class TimeLockActive(TimeLockerError):
    """The beacon round guarding a secret has not been published yet.

    Expected and recoverable: retry after ``unlock_timestamp``.
    """

    def __init__(self, round_number: Optional[int], unlock_timestamp: float, remaining_seconds: float):
        self.round_number = round_number
        self.unlock_timestamp = unlock_timestamp
        self.remaining_seconds = max(0.0, remaining_seconds)
        total = int(self.remaining_seconds)
        hours, rem = divmod(total, 3600)
        minutes = rem // 60
        super().__init__(f"Time lock still active. Unlock in {hours} hours, {minutes} minutes")


class BeaconUnavailable(TimeLockerError):
    pass


# Decryption
class DecryptionError(TimeLockerError):
    pass


class WrongPasswordError(DecryptionError):
    pass


class CorruptPayloadError(DecryptionError):
    pass


class ForeignLockedKeyError(DecryptionError):
    """The locked key is an age/tlock envelope written by another tool."""


class OperationCancelled(Exception):
    """Raised when a tracked operation observes its cancellation flag.

    Not a TimeLockerError: cancellation is an outcome, not a failure.
    """

    def __init__(self, operation_id: Optional[str] = None):
        super().__init__("Operation cancelled by user")
        self.operation_id = operation_id
