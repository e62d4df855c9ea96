class SecretError(Exception):
    """Base class for every typed outcome of the secrets engine.

    ``code`` and ``status_code`` are hints for the HTTP layer that sits in
    front of the engine. Messages never carry secret values.
    """

    code = "SECRET_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None):
        message = message or self.__class__.__doc__ or self.code
        super().__init__(message)
        self.message = message


class NotFoundError(SecretError):
    """Secret not found"""

    code = "SECRET_NOT_FOUND"
    status_code = 404


class AlreadyExistsError(SecretError):
    """Secret already exists"""

    code = "SECRET_EXISTS"
    status_code = 409


class NotActiveError(SecretError):
    """Secret version is not active"""

    code = "SECRET_NOT_ACTIVE"
    status_code = 409


class ValidationError(SecretError):
    """Invalid input"""

    code = "VALIDATION_ERROR"
    status_code = 400


class TamperError(SecretError):
    """Integrity check failed. Data may be corrupted or tampered with."""

    code = "TAMPERED"


class FormatError(SecretError):
    """Malformed encrypted value"""

    code = "INVALID_FORMAT"


class EncryptionKeyError(SecretError):
    """Invalid or missing encryption key"""

    code = "KEY_ERROR"


class KeyNotFoundError(EncryptionKeyError):
    """Unknown encryption key version"""

    def __init__(self, version: int):
        super().__init__(f"Key version {version} not found")
        self.version = version
