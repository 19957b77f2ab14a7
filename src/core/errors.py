"""Error taxonomy shared by the publication pipeline."""

from __future__ import annotations

from typing import Any, Optional


class PipelineError(RuntimeError):
    """Base class for errors raised inside the publication pipeline."""

    code = "PIPELINE_ERROR"
    retryable = True

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(PipelineError):
    """Raised when a payload does not match its declared content type."""

    code = "VALIDATION_ERROR"
    retryable = False


class NotFoundError(PipelineError):
    """Raised when a publication, social account or brand is missing."""

    code = "NOT_FOUND"
    retryable = False


class CredentialsError(PipelineError):
    """Raised when a credential blob cannot be decrypted or has the wrong platform."""

    code = "CREDENTIALS_ERROR"
    retryable = False


class ReauthRequiredError(PipelineError):
    """Raised when a token is expired and cannot be refreshed without the user."""

    code = "REAUTH_REQUIRED"
    retryable = False


class InvalidTransitionError(PipelineError):
    """Raised when a status change would leave a terminal state."""

    code = "INVALID_TRANSITION"
    retryable = False


class ProviderError(PipelineError):
    """Raised when an external platform rejects a request."""

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message, code=code)
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["provider"] = self.provider
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        return payload


class TransientError(PipelineError):
    """Raised on network failures and timeouts talking to a provider."""

    code = "TRANSIENT_ERROR"
