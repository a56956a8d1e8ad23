"""Error taxonomy for account deletion."""


class AccountDeletionError(Exception):
    """Base class for account deletion errors."""

    code = "ACCOUNT_DELETION_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AccountDeletionValidationError(AccountDeletionError, ValueError):
    """Caller state is malformed; rejected before any job is created."""

    code = "VALIDATION"


class NotAuthenticatedError(AccountDeletionError):
    """Caller has no verified identity."""

    code = "NOT_AUTHENTICATED"


class StoreError(AccountDeletionError):
    """A datastore, blob store or identity store call failed."""

    code = "STORE_ERROR"
    retryable = False

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class TransientStoreError(StoreError):
    """Timeout or unavailability; retried at operation and job level."""

    code = "TRANSIENT_STORE_ERROR"
    retryable = True


class PermanentStoreError(StoreError):
    """Data cannot be deleted as stored; the job fails without auto-retry."""

    code = "PERMANENT_STORE_ERROR"


class BatchTooLargeError(PermanentStoreError):
    """A batch exceeded the store's atomic write limit."""


class LeaseLostError(AccountDeletionError):
    """Another worker reclaimed the job; the current worker must stop."""

    code = "LEASE_LOST"


class DeletionPlanError(AccountDeletionError):
    """The static resource graph is inconsistent."""

    code = "PLAN_ERROR"
