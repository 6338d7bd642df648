# errors.py - failures raised along the fulfillment and redemption paths
from enum import Enum


class DeliveryError(Exception):
    """Base class for failures that end a request with a known status."""

    status_code = 400

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthenticationFailure(DeliveryError):
    status_code = 401


class ValidationFailure(DeliveryError):
    status_code = 400

    def __init__(self, message: str, order_id: int | None = None):
        super().__init__(message)
        self.order_id = order_id


class NotFound(DeliveryError):
    status_code = 404


class DenialReason(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    NOT_OWNER = "not_owner"


class Denied(DeliveryError):
    status_code = 410

    def __init__(self, reason: DenialReason, message: str, status_code: int | None = None, token=None):
        super().__init__(message, status_code)
        self.reason = reason
        self.token = token


class DependencyFailure(DeliveryError):
    """A collaborator (file store, mail transport) could not do its part."""

    status_code = 404


class EmailDeliveryError(Exception):
    pass


class StorageError(Exception):
    """The store cannot keep its invariants; not handled per request."""


class TokenCollisionError(StorageError):
    pass
