class SubscriptionEngineError(Exception):
    """Base exception for the subscription engine."""

    pass


class SignatureInvalid(SubscriptionEngineError):
    """Raised when a webhook or checkout signature does not match."""

    pass


class DuplicateEvent(SubscriptionEngineError):
    """Raised internally when an event_id has already been processed.

    Never surfaces as an error response: duplicates are acknowledged with 200.
    """

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event '{event_id}' already processed")


class TransitionConflict(SubscriptionEngineError):
    """Raised when a conditional update matched zero rows.

    Another writer already advanced the state; callers treat this as success-no-op.
    """

    def __init__(self, entity: str, key: str, guard: str):
        self.entity = entity
        self.key = key
        self.guard = guard
        super().__init__(f"Conditional update on {entity} '{key}' skipped ({guard})")


class PersistenceFailure(SubscriptionEngineError):
    """Transient store failure. The event must be retried."""

    pass


class EventInFlight(SubscriptionEngineError):
    """Raised when another delivery of the same event_id holds the claim lease."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event '{event_id}' is being processed by another delivery")


class OutOfOrderEvent(PersistenceFailure):
    """Event references state that has not been created yet (e.g. renewal before activation)."""

    def __init__(self, event_type: str, external_subscription_id: str):
        self.event_type = event_type
        self.external_subscription_id = external_subscription_id
        super().__init__(
            f"'{event_type}' references unknown subscription '{external_subscription_id}'"
        )


class DataIntegrityViolation(SubscriptionEngineError):
    """Payload can never be applied (malformed, negative period, unknown plan).

    The event is acknowledged and flagged for manual review instead of retried.
    """

    pass


class QuotaExceeded(SubscriptionEngineError):
    """Raised when a monthly quota is exhausted."""

    def __init__(self, quota_type: str, used: int, limit: int):
        self.quota_type = quota_type
        self.used = used
        self.limit = limit
        super().__init__(f"Monthly {quota_type} quota exhausted ({used}/{limit})")


class RateLimitExceeded(SubscriptionEngineError):
    """Raised when the daily message limit is reached."""

    def __init__(self, limit: int, reset_at: str):
        self.limit = limit
        self.reset_at = reset_at
        super().__init__(f"Daily limit of {limit} reached, resets at {reset_at}")
