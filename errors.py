class ReconciliationError(Exception):
    """Base class for errors raised while reconciling contacts."""


class InvalidInput(ReconciliationError):
    """The caller supplied neither an email nor a phone number."""


class DataInconsistency(ReconciliationError):
    """Stored contacts violate the cluster invariant (e.g. a dangling linkedId)."""


class StoreUnavailable(ReconciliationError):
    """The contact store failed to complete an operation."""


class StoreBusy(StoreUnavailable):
    """The store write lock could not be acquired in time."""


class ContactNotFound(ReconciliationError, LookupError):
    def __init__(self, message: str = "Contact not found"):
        super().__init__(message)
