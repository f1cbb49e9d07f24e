"""Exception hierarchy for lease/payment synchronization."""

import uuid


class SyncError(Exception):
    """Base exception for all synchronization errors."""


class NotFoundError(SyncError):
    """Raised when a referenced lease or payment does not exist. Never retried."""


class LeaseNotFoundError(NotFoundError):
    def __init__(self, lease_id: uuid.UUID | str):
        self.lease_id = lease_id
        super().__init__("Lease not found")


class PaymentNotFoundError(NotFoundError):
    def __init__(self, payment_ref: uuid.UUID | str):
        self.payment_ref = payment_ref
        super().__init__("Payment not found")


class SyncValidationError(SyncError):
    """Raised when validation reports errors and the sync was not forced."""

    def __init__(self, errors: list[str], payment_ids: list[str] | None = None):
        self.errors = errors
        self.payment_ids = payment_ids or []
        super().__init__("Validation failed - use force_sync to override")


class ConcurrencyConflictError(SyncError):
    """Raised when a payment's version moved between read and write."""

    def __init__(self, payment_id: uuid.UUID):
        self.payment_id = payment_id
        super().__init__(
            f"Payment {payment_id} was modified concurrently (version mismatch)"
        )


class TransactionFailureError(SyncError):
    """Raised when the database rejects or fails the reconciliation transaction."""


class SyncUnavailableError(SyncError):
    """Raised when the database cannot be reached at all."""


class MigrationRequiredError(SyncError):
    """Raised when sync-control fields are missing from payments."""

    def __init__(self):
        super().__init__(
            "Payment sync migration has not been applied - run the schema bootstrap first"
        )
