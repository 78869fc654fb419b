"""
Named error taxonomy for the key store and admission layer.

Every error carries a stable ``code`` so the HTTP layer can map it to a
status code and a machine-readable body without string matching.
"""


class KeyGateError(Exception):
    """Base class for all keygate errors"""

    code = "keygate_error"
    default_message = "keygate error"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


# Not found

class KeyNotFound(KeyGateError):
    code = "key_not_found"
    default_message = "api key not found"


class UserNotFound(KeyGateError):
    code = "user_not_found"
    default_message = "user not found"


# Policy violations

class KeyDisabled(KeyGateError):
    code = "key_disabled"
    default_message = "api key disabled"


class QuotaExceeded(KeyGateError):
    code = "quota_exceeded"
    default_message = "quota exceeded"


class ConcurrencyExceeded(KeyGateError):
    code = "concurrency_exceeded"
    default_message = "concurrency exceeded"


# Authentication

class InvalidCredentials(KeyGateError):
    """Username/password login failed (unknown, disabled or wrong password)"""

    code = "invalid_credentials"
    default_message = "invalid credentials"


class NoCredentials(KeyGateError):
    """Request carried no API key in any supported location"""

    code = "no_credentials"
    default_message = "api key required"


class InvalidCredential(KeyGateError):
    """API key unknown, disabled, or supplied through an untrusted source"""

    code = "invalid_credential"
    default_message = "invalid api key"


# Validation

class RecordValidationError(KeyGateError, ValueError):
    code = "validation_error"
    default_message = "invalid record"


class DuplicateUsername(RecordValidationError):
    code = "duplicate_username"
    default_message = "duplicate username"


class DuplicateAPIKey(RecordValidationError):
    code = "duplicate_api_key"
    default_message = "duplicate api key"


# Persistence

class ConfigurationError(KeyGateError):
    code = "invalid_configuration"
    default_message = "invalid configuration"


class DecodeError(KeyGateError):
    code = "decode_error"
    default_message = "malformed data file"
