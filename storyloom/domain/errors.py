from typing import Optional


class StoryloomError(Exception):
    """Base error for the session engine"""

    retryable: bool = False


class InputValidationError(StoryloomError):
    """Caller-supplied input (custom scene, custom action) was rejected"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ResponseParseError(StoryloomError):
    """Narrator output did not match the STORY/SCENE/CHOICES shape"""

    def __init__(self, message: str, raw_length: int = 0):
        super().__init__(message)
        self.raw_length = raw_length


class GenerationError(StoryloomError):
    """Failure reported by the text-generation collaborator"""

    CODES = ("network_error", "auth_error", "api_error", "parse_error", "timeout_error")

    def __init__(
        self,
        message: str,
        code: str = "api_error",
        retryable: bool = True,
        status_code: Optional[int] = None
    ):
        super().__init__(message)
        if code not in self.CODES:
            raise ValueError(f"Unknown generation error code: {code}")
        self.code = code
        self.retryable = retryable
        self.status_code = status_code

    @classmethod
    def from_status(cls, status_code: int, message: Optional[str] = None) -> "GenerationError":
        """Classify an HTTP status from the generation service"""

        if status_code in (401, 403):
            return cls(message or "Invalid API key or unauthorized access", "auth_error", False, status_code)
        if status_code == 404:
            return cls(message or "API endpoint not found - check your base URL", "api_error", False, status_code)
        if status_code == 429:
            return cls(message or "Rate limit exceeded - please try again later", "api_error", True, status_code)
        if status_code >= 500:
            return cls(message or "Server error - please try again later", "api_error", True, status_code)
        return cls(message or f"HTTP {status_code}", "api_error", True, status_code)


class SessionStoreError(StoryloomError):
    """Durable storage failure; `retryable` separates transient from permanent"""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class StorageQuotaError(SessionStoreError):
    """Storage is full; retried in case space frees up"""

    def __init__(self, message: str = "Storage quota exceeded"):
        super().__init__(message, retryable=True)

