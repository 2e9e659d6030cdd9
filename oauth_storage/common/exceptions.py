class OAuthStorageError(Exception):
    """Base error for the storage engine.

    ``status_code`` is a hint for the HTTP layer translating the failure;
    nothing in this package depends on it.
    """

    status_code = 500

    def __init__(self, message: str = "Storage Error", status_code: int = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class StorageError(OAuthStorageError):
    def __init__(self, message: str = "Storage operation failed"):
        super().__init__(f"Storage error: {message}", 500)


class NotFoundError(OAuthStorageError):
    def __init__(self, resource: str = "Resource", identifier: str = None):
        message = f"{resource} '{identifier}' not found" if identifier else f"{resource} not found"
        super().__init__(message, 404)


class ConflictError(OAuthStorageError):
    def __init__(self, message: str = "Duplicate key"):
        super().__init__(message, 409)


class BackendUnavailableError(OAuthStorageError):
    def __init__(self, message: str = "Storage backend unavailable"):
        super().__init__(message, 503)


class InvariantViolationError(OAuthStorageError):
    def __init__(self, message: str = "Storage invariant violated"):
        super().__init__(message, 500)
