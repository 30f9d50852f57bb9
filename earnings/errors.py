class EarningsError(Exception):
    pass


class ConfigurationError(EarningsError):
    pass


class ValidationError(EarningsError):
    pass


class CreatorNotFoundError(EarningsError):
    pass


class CreatorNotConnectedError(ValidationError):
    pass


class TicketNotFoundError(EarningsError):
    pass


class InvalidStateTransitionError(EarningsError):
    pass


class WebhookSignatureError(EarningsError):
    pass


class StorageError(EarningsError):
    """Retryable failure raised by the storage collaborator."""


class DuplicateKeyError(StorageError):
    """A uniqueness constraint rejected an insert."""


class ProviderError(EarningsError):
    """Retryable failure talking to the payment provider."""


class PaymentIntentStateError(ProviderError):
    """The provider refused an operation because the payment is already final."""
