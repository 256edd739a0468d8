"""Exception taxonomy shared by the store, services and HTTP layer."""


class SubscriptionServiceError(Exception):
    """Base exception for subscription service errors."""

    pass


class SubscriptionValidationError(SubscriptionServiceError):
    """Raised for malformed or missing input. Never retried by HTTP callers."""

    pass


class SubscriptionNotFoundError(SubscriptionServiceError):
    """Raised when no matching subscription record exists."""

    pass


class DuplicateSubscriptionYearError(SubscriptionServiceError):
    """Raised when a second record is inserted for the same (tenant, profile, year)."""

    def __init__(self, tenant_id, profile_id: str, subscription_year: int, existing_id: str):
        super().__init__(
            f"Subscription for profile {profile_id} in {subscription_year} already exists "
            f"(tenant={tenant_id}, id={existing_id})"
        )
        self.tenant_id = tenant_id
        self.profile_id = profile_id
        self.subscription_year = subscription_year
        self.existing_id = existing_id


class TransientInfraError(SubscriptionServiceError):
    """Raised when the store or the bus is unavailable. Event handlers re-raise it."""

    pass


class EnrichmentFailure(SubscriptionServiceError):
    """Raised when a secondary lookup fails. Callers degrade the field to None."""

    pass


class AuthenticationError(SubscriptionServiceError):
    """Missing or invalid bearer token."""

    pass


class AuthorizationError(SubscriptionServiceError):
    """Authenticated caller is not allowed to use the endpoint."""

    pass
