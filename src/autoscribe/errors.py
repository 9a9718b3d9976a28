from __future__ import annotations

TRANSPORT_ERROR = "transport_error"
PARSE_ERROR = "parse_error"
DEDUP_CONFLICT = "dedup_conflict"
QUOTA_EXHAUSTED = "quota_exhausted"
NO_CREDENTIAL_AVAILABLE = "no_credential_available"
PROVIDER_REJECTED = "provider_rejected"
LEASE_EXPIRED = "lease_expired"
LEASE_EXPIRED_MAX_RETRY = "lease_expired_max_retry"
PUBLISH_ERROR = "publish_error"

RETRYABLE_KINDS = frozenset(
    {TRANSPORT_ERROR, QUOTA_EXHAUSTED, NO_CREDENTIAL_AVAILABLE, LEASE_EXPIRED, PUBLISH_ERROR}
)


class AutoscribeError(Exception):
    pass


class ConfigError(AutoscribeError, ValueError):
    pass


class StorageError(AutoscribeError):
    pass


class CampaignNotFound(AutoscribeError, LookupError):
    pass


class TransportError(AutoscribeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransformError(AutoscribeError):
    """Failure reported by a transformation provider.

    ``kind`` is one of the taxonomy names above or a provider-specific
    refinement such as ``rate_limited`` or ``timeout``. ``transient`` failures
    may be retried against the next provider in the chain.
    """

    def __init__(
        self,
        kind: str,
        message: str,
        *,
        transient: bool,
        rate_limited: bool = False,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.transient = transient
        self.rate_limited = rate_limited
