"""Domain exceptions raised by the orderflow services.

Routes translate these into HTTP responses; services never build responses
themselves.
"""

from typing import Optional


class OrderflowError(Exception):
    """Base class for every error the engine raises on purpose."""

    status_code = 500

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(OrderflowError, ValueError):
    """Bad input shape, bad quantity or an illegal state transition."""

    status_code = 400


class SecurityError(OrderflowError):
    """Denied request. The message is safe to show; details stay in logs."""

    status_code = 403


class RateLimitError(SecurityError):
    status_code = 429


class AuthenticationError(SecurityError):
    status_code = 401


class NotFoundError(OrderflowError):
    status_code = 404


class ExternalProviderError(OrderflowError):
    """A payment provider or chat API call failed.

    ``status_code`` of the provider response is kept when there was one; a
    provider that answered with an explicit error never minted a resource, so
    the caller may release its claim. Timeouts and connection errors leave
    ``provider_status`` empty.
    """

    status_code = 502
    retryable = True

    def __init__(
        self,
        message: str,
        provider: str,
        provider_status: Optional[int] = None,
        definitive: Optional[bool] = None,
        **details,
    ) -> None:
        super().__init__(message, provider=provider, provider_status=provider_status, **details)
        self.provider = provider
        self.provider_status = provider_status
        self._definitive = definitive

    @property
    def definitive(self) -> bool:
        if self._definitive is not None:
            return self._definitive
        return self.provider_status is not None
