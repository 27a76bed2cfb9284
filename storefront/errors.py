"""
Commerce error taxonomy

Every error raised by the commerce core derives from CommerceError and carries
the HTTP status and the message that is safe to show to the caller. Provider
detail is kept on the exception for server-side logging only.
"""

from typing import Optional


class ConfigurationError(Exception):
    """Raised at startup when required key material is missing or malformed"""


class CommerceError(Exception):
    status_code = 500
    message = "Request failed"

    def __init__(self, message: Optional[str] = None):
        if message:
            self.message = message
        super().__init__(self.message)


class NotConfigured(CommerceError):
    status_code = 503
    message = "Square is not configured"


class InvalidState(CommerceError):
    status_code = 400
    message = "Invalid OAuth state"


class InvalidSignature(CommerceError):
    status_code = 401
    message = "Invalid signature"


class NotConnected(CommerceError):
    status_code = 409
    message = "Square is not connected"


class ProviderError(CommerceError):
    """A Square API call returned a non-success status or could not be completed"""

    status_code = 502
    message = "Square request failed"

    def __init__(self, detail: str, status: Optional[int] = None):
        self.detail = detail
        self.status = status
        super().__init__()

    def __str__(self) -> str:
        if self.status is not None:
            return f"{self.detail} (status {self.status})"
        return self.detail


class AccessDenied(CommerceError):
    status_code = 403
    message = "Cart does not belong to this session"


class NotFound(CommerceError):
    status_code = 404
    message = "Not found"


class ProductNotFound(NotFound):
    message = "Product not found"


class ServiceNotFound(NotFound):
    message = "Service not found"


class ServiceNotSynced(NotFound):
    message = "Service is not linked to Square"


class CartNotFound(NotFound):
    message = "Cart not found"


class CartItemNotFound(NotFound):
    message = "Cart item not found"


class EmptyCart(CommerceError):
    status_code = 400
    message = "Cart is empty"


class PaymentFailed(CommerceError):
    status_code = 402
    message = "Payment failed"

    def __init__(self, message: Optional[str] = None, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


class BookingFailed(CommerceError):
    status_code = 502
    message = "Booking failed"

    def __init__(self, message: Optional[str] = None, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


class SchemaMismatch(CommerceError):
    """Local product table lacks the Square identifier columns"""

    message = "Local schema is missing Square identifier columns"
