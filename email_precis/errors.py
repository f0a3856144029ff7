"""Error taxonomy for the ingestion and classification pipeline."""

from datetime import timedelta
from typing import Optional


class PrecisError(Exception):
    """Base exception for all pipeline errors."""


# Credentials
class MissingCredentialError(PrecisError):
    """No usable provider credential; the user has to reconnect their account."""


class MissingTokenError(MissingCredentialError):
    """No stored access token for the user, or it could not be decrypted."""


# Upstream lookups
class NotFoundError(PrecisError):
    """Message, part or attachment absent upstream."""


# Providers
class ProviderError(PrecisError):
    """Base exception for mail and text-generation provider failures."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimitError(ProviderError):
    """Provider signalled quota exhaustion. Retryable after ``retry_after``."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[timedelta] = None,
        quota_metric: Optional[str] = None,
        quota_value: Optional[str] = None,
        status: Optional[int] = 429,
    ):
        super().__init__(message, status=status)
        self.retry_after = retry_after
        self.quota_metric = quota_metric
        self.quota_value = quota_value

    @property
    def quota_limit(self) -> Optional[str]:
        if self.quota_value and self.quota_metric:
            return f"{self.quota_value} requests ({self.quota_metric})"
        return self.quota_value or self.quota_metric


class TransientProviderError(ProviderError):
    """Network failure, timeout or 5xx. Retried with backoff."""


class ProviderRequestError(ProviderError):
    """4xx other than a rate limit. Not retried."""


# Content
class ParseError(PrecisError):
    """Provider reply did not match the six-segment format."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class UnprocessableEmailError(PrecisError):
    """Email cannot be classified as-is (e.g. body over the token budget)."""


# Crypto
class EncryptionError(PrecisError):
    """Key/nonce misconfiguration or authentication tag mismatch."""
