"""Shared constants for steward."""

# CLI exit codes, one per error kind
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_VALIDATION = 2
EXIT_PLATFORM_UNAVAILABLE = 3
EXIT_POLICY_DENIED = 4
EXIT_NOT_FOUND = 5
EXIT_CONCURRENT_MODIFICATION = 6
EXIT_INVALID_TRANSITION = 7

EXIT_CODE_FOR_KIND = {
    "ValidationError": EXIT_VALIDATION,
    "PlatformUnavailable": EXIT_PLATFORM_UNAVAILABLE,
    "PolicyDenied": EXIT_POLICY_DENIED,
    "NotFound": EXIT_NOT_FOUND,
    "ConcurrentModification": EXIT_CONCURRENT_MODIFICATION,
    "InvalidTransition": EXIT_INVALID_TRANSITION,
}


DEFAULT_STATE_DIR = ".steward"
DEFAULT_CONFIG_PATH = "steward.yaml"

# Telegram forum topic names are capped at 128 characters
DEFAULT_MAX_NAME_LENGTH = 128
DEFAULT_MAX_TITLE_SLUG_LENGTH = 64

DEFAULT_CALLBACK_NAMESPACE = "stw"

# Quarterly polish: 09:00 on the first day of each quarter
QUARTERLY_POLISH_CRON = "0 9 1 1,4,7,10 *"
EXPIRY_SWEEP_CRON = "15 * * * *"

# Archived topics are tracked under this stream whatever forum they live in
ARCHIVE_STREAM = "archive"
