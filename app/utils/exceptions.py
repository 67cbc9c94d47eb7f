"""
Custom exceptions for SipGrounds settlement logic.

These exceptions carry a machine readable code so services can turn them into
structured results and the API layer into the right HTTP status.
"""


class SettlementError(Exception):
    """Base exception for all order, points and coupon settlement errors."""

    def __init__(self, message: str, code: str = "SETTLEMENT_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class NotFoundError(SettlementError):
    """Resource not found."""

    def __init__(self, resource: str, identifier=None, code: str = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with ID {identifier} not found"
        super().__init__(message, code or f"{resource.upper().replace(' ', '_')}_NOT_FOUND")


class ItemNotFoundError(NotFoundError):
    """A cart line references an unknown catalog item."""

    def __init__(self, identifier=None):
        super().__init__("Item", identifier, "ITEM_NOT_FOUND")


class OrderNotFoundError(NotFoundError):
    """Order not found."""

    def __init__(self, identifier=None):
        super().__init__("Order", identifier, "ORDER_NOT_FOUND")


class UserNotFoundError(NotFoundError):
    """User not found."""

    def __init__(self, identifier=None):
        super().__init__("User", identifier, "USER_NOT_FOUND")


class ValidationError(SettlementError):
    """Invalid input data."""

    def __init__(self, message: str, field: str = None):
        self.field = field
        code = f"INVALID_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(message, code)


class InsufficientStockError(SettlementError):
    """Requested quantity exceeds what the catalog has on hand."""

    def __init__(self, item_name: str, available=None, requested: int = None):
        self.item_name = item_name
        self.available = available
        self.requested = requested
        super().__init__(f"{item_name} is out of stock or insufficient quantity", "INSUFFICIENT_STOCK")


class InsufficientPointsError(SettlementError):
    """Not enough points for the operation."""

    def __init__(self, current: int = None, required: int = None):
        self.current = current
        self.required = required
        message = "Insufficient points balance"
        if current is not None and required is not None:
            message = f"Insufficient points balance. Current: {current}, Required: {required}"
        super().__init__(message, "INSUFFICIENT_POINTS")


class InvalidCouponError(SettlementError):
    """Coupon missing or failing a validation rule."""

    def __init__(self, reason: str = "Invalid coupon code"):
        self.reason = reason
        super().__init__(reason, "INVALID_COUPON")


class GatewayError(SettlementError):
    """The payment processor refused or failed a request."""

    def __init__(self, message: str, original_error: Exception = None):
        self.original_error = original_error
        super().__init__(message, "GATEWAY_ERROR")


class GatewayTimeoutError(GatewayError):
    """The processor did not answer in time; the charge outcome is unknown."""

    def __init__(self, message: str = "Payment processor timed out", original_error: Exception = None):
        super().__init__(message, original_error)
        self.code = "GATEWAY_TIMEOUT"


class SignatureInvalidError(SettlementError):
    """Webhook payload failed signature verification."""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, "INVALID_SIGNATURE")


class PermissionDeniedError(SettlementError):
    """User not authorized for this resource."""

    def __init__(self, message: str = "Permission denied"):
        super().__init__(message, "PERMISSION_DENIED")


class AlreadySettled(SettlementError):
    """The order was already committed; repeat confirmations are no-ops."""

    def __init__(self, order_number: str = None):
        self.order_number = order_number
        super().__init__("Order already settled", "ALREADY_SETTLED")


class InvalidStatusTransitionError(SettlementError):
    """Invalid status transition for a resource."""

    def __init__(self, resource: str, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        message = f"Cannot change {resource} status from '{from_status}' to '{to_status}'"
        super().__init__(message, "INVALID_STATUS_TRANSITION")


class RewardUnavailableError(SettlementError):
    """Reward inactive, sold out, capped per user or not offered at the cafe."""

    def __init__(self, message: str = "This reward is no longer available"):
        super().__init__(message, "REWARD_UNAVAILABLE")


class ConfigurationError(SettlementError):
    """Application configuration error."""

    def __init__(self, message: str):
        super().__init__(message, "CONFIGURATION_ERROR")
