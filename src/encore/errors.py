"""Exception hierarchy shared by the provider clients and the importer."""

from __future__ import annotations


class EncoreError(Exception):
    """Base class for all Encore errors."""


class ProviderError(EncoreError):
    """An external catalog/ticketing/setlist provider call failed."""

    def __init__(self, provider: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class NotFoundError(ProviderError):
    """The provider answered successfully but returned nothing for the query."""


class RateLimitedError(ProviderError):
    """The provider kept answering 429 after the client's own backoff."""

    def __init__(self, provider: str, message: str = "rate limited", *, retry_after: float | None = None) -> None:
        super().__init__(provider, message, status_code=429)
        self.retry_after = retry_after


class UpstreamError(ProviderError):
    """Non-2xx response (other than 404/429) or a network failure."""

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(provider, message, status_code=status_code)
        self.retryable = retryable


class ProviderAuthError(ProviderError):
    """Credentials were rejected or missing."""


class ConcurrencyConflictError(EncoreError):
    """An import for this artist is already running elsewhere."""

    def __init__(self, artist_id: str) -> None:
        super().__init__(f"Import already in progress for artist {artist_id}")
        self.artist_id = artist_id
