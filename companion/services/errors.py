"""Error taxonomy shared by the chat services and the HTTP layer.

Every error carries an HTTP-like status, a stable machine-readable code and
a details mapping that is returned to clients as-is.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

AI_UNAVAILABLE_MESSAGE = "AI response unavailable right now. Please retry in a moment."


class ChatError(Exception):
    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"message": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ChatError):
    """Bad input shape, length or mode. Never retried."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class UpstreamRejectedError(ValidationError):
    """A provider answered 400: the request itself is bad, stop the chain."""

    default_code = "AI_REQUEST_REJECTED"


class AuthRequirementError(ChatError):
    status_code = 401
    default_code = "AUTH_REQUIRED"


class QuotaExceededError(ChatError):
    status_code = 403
    default_code = "MODE_LIMIT_REACHED"


class RateLimitedError(ChatError):
    status_code = 429
    default_code = "RATE_LIMITED"


class ProviderUnavailableError(ChatError):
    status_code = 503
    default_code = "AI_RESPONSE_UNAVAILABLE"

    def __init__(self, failures: List[Any], message: str = AI_UNAVAILABLE_MESSAGE, provider: str = "") -> None:
        self.failures = list(failures)
        details: Dict[str, Any] = {"failures": [f.to_dict() for f in self.failures]}
        if provider:
            details["provider"] = provider
        super().__init__(message, details=details)


class AssetUploadError(ChatError):
    status_code = 502
    default_code = "IMAGE_UPLOAD_FAILED"


class IntegrityError(ChatError):
    """Ciphertext, tag or associated data did not verify."""

    default_code = "DECRYPTION_FAILED"


class StorageError(ChatError):
    default_code = "STORAGE_ERROR"


class DuplicateKeyError(StorageError):
    """A uniqueness constraint rejected an insert (usually a concurrent upsert)."""

    default_code = "DUPLICATE_KEY"
