"""
Error taxonomy for the backup subsystem.

Every failure surfaces to the caller as a BackupError carrying a stable
ErrorCode. Each code has a plain-language message suitable for showing
directly to an elderly user, plus a category and a retry hint so the
caller can decide what to offer next.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Stable error codes surfaced to callers."""

    INVALID_PASSWORD = "INVALID_PASSWORD"
    INIT_FAILED = "INIT_FAILED"
    NOT_INITIALIZED = "NOT_INITIALIZED"
    KEY_NOT_FOUND = "KEY_NOT_FOUND"
    ENCRYPTION_FAILED = "ENCRYPTION_FAILED"
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    NO_NETWORK = "NO_NETWORK"
    WIFI_REQUIRED = "WIFI_REQUIRED"
    LOW_BATTERY = "LOW_BATTERY"
    BACKUP_DISABLED = "BACKUP_DISABLED"
    NO_DATA = "NO_DATA"
    BACKUP_IN_PROGRESS = "BACKUP_IN_PROGRESS"
    RESTORE_IN_PROGRESS = "RESTORE_IN_PROGRESS"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    BACKUP_NOT_FOUND = "BACKUP_NOT_FOUND"
    INVALID_FORMAT = "INVALID_FORMAT"


class ErrorCategory(str, Enum):
    """Broad grouping used by callers to pick a resolution path."""

    NETWORK = "network"
    AUTHENTICATION = "authentication"
    ENCRYPTION = "encryption"
    STORAGE = "storage"
    POWER = "power"
    UNKNOWN = "unknown"


# code -> (category, should_retry, user-facing message)
_ERROR_INFO: dict[ErrorCode, tuple[ErrorCategory, bool, str]] = {
    ErrorCode.INVALID_PASSWORD: (
        ErrorCategory.AUTHENTICATION, False,
        "That password did not match. Please check it and try again.",
    ),
    ErrorCode.INIT_FAILED: (
        ErrorCategory.ENCRYPTION, True,
        "We could not prepare your secure backup. Please try again.",
    ),
    ErrorCode.NOT_INITIALIZED: (
        ErrorCategory.AUTHENTICATION, False,
        "Please enter your backup password before continuing.",
    ),
    ErrorCode.KEY_NOT_FOUND: (
        ErrorCategory.ENCRYPTION, False,
        "The key for this backup is not on this device. Import your saved keys to open it.",
    ),
    ErrorCode.ENCRYPTION_FAILED: (
        ErrorCategory.ENCRYPTION, True,
        "We could not protect your memories for backup. Please try again.",
    ),
    ErrorCode.DECRYPTION_FAILED: (
        ErrorCategory.ENCRYPTION, False,
        "This backup could not be opened. It may be damaged or locked with a different password.",
    ),
    ErrorCode.VERIFICATION_FAILED: (
        ErrorCategory.STORAGE, True,
        "The backup did not pass its safety check. Please try again.",
    ),
    ErrorCode.NO_NETWORK: (
        ErrorCategory.NETWORK, True,
        "No internet connection. Please connect and try again.",
    ),
    ErrorCode.WIFI_REQUIRED: (
        ErrorCategory.NETWORK, True,
        "Automatic backups wait for Wi-Fi. You can back up now by pressing Back Up.",
    ),
    ErrorCode.LOW_BATTERY: (
        ErrorCategory.POWER, True,
        "Your battery is low. Please charge your device and we will back up later.",
    ),
    ErrorCode.BACKUP_DISABLED: (
        ErrorCategory.UNKNOWN, False,
        "Backup is turned off. Turn it on in settings to protect your memories.",
    ),
    ErrorCode.NO_DATA: (
        ErrorCategory.STORAGE, False,
        "There are no memories to back up yet.",
    ),
    ErrorCode.BACKUP_IN_PROGRESS: (
        ErrorCategory.UNKNOWN, True,
        "A backup is already running. Please wait for it to finish.",
    ),
    ErrorCode.RESTORE_IN_PROGRESS: (
        ErrorCategory.UNKNOWN, True,
        "A restore is already running. Please wait for it to finish.",
    ),
    ErrorCode.UPLOAD_FAILED: (
        ErrorCategory.NETWORK, True,
        "We could not send your backup. Please try again later.",
    ),
    ErrorCode.DOWNLOAD_FAILED: (
        ErrorCategory.NETWORK, True,
        "We could not fetch your backup. Please try again later.",
    ),
    ErrorCode.BACKUP_NOT_FOUND: (
        ErrorCategory.STORAGE, False,
        "That backup could not be found.",
    ),
    ErrorCode.INVALID_FORMAT: (
        ErrorCategory.STORAGE, False,
        "This backup is in a format we do not recognise.",
    ),
}


class BackupError(Exception):
    """A backup subsystem failure with a stable code.

    Attributes:
        code: The ErrorCode identifying the failure.
        message: Technical description for logs.
        user_message: Plain-language message for the user.
        category: Broad grouping (network, encryption, ...).
        should_retry: Whether retrying later may succeed.
    """

    def __init__(self, code: ErrorCode, message: Optional[str] = None) -> None:
        category, should_retry, user_message = _ERROR_INFO.get(
            code, (ErrorCategory.UNKNOWN, False, "Something went wrong."),
        )
        self.code = code
        self.message = message or user_message
        self.user_message = user_message
        self.category = category
        self.should_retry = should_retry
        super().__init__(f"{code.value}: {self.message}")

    def to_dict(self) -> dict:
        """Serialize for JSON output."""
        return {
            "code": self.code.value,
            "message": self.message,
            "user_message": self.user_message,
            "category": self.category.value,
            "should_retry": self.should_retry,
        }
