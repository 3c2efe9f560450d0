"""
Vendorflow — Error taxonomy.

Task-level errors are converted into task outcomes by the dispatcher.
Only StoreUnavailableError is allowed to escape a polling cycle.
"""


class VendorflowError(Exception):
    """Base class for all vendorflow errors."""

    retryable = False


class ValidationError(VendorflowError):
    """Bad input to enqueue / transition / admin operations."""


class InvalidTransitionError(VendorflowError):
    """Lifecycle event is not legal for the vendor's current status."""

    def __init__(self, status: str, event: str):
        super().__init__(f"Event {event} is not allowed from status {status}")
        self.status = status
        self.event = event


class NotFoundError(VendorflowError):
    """A referenced document does not exist."""


class VendorNotFoundError(NotFoundError):
    def __init__(self, vendor_id: str):
        super().__init__(f"Vendor {vendor_id} not found")
        self.vendor_id = vendor_id


class TaskNotFoundError(NotFoundError):
    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class ConflictError(VendorflowError):
    """A conditional write lost against a concurrent writer."""

    retryable = True


class StoreUnavailableError(VendorflowError):
    """Storage engine unreachable — the whole cycle should back off."""

    retryable = True


class CapabilityError(VendorflowError):
    """An AI or transport capability failed (network, HTTP error, bad payload)."""

    retryable = True


class DeliveryError(CapabilityError):
    """A notification channel could not deliver a message."""
