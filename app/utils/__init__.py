"""
Utility modules for SipGrounds.
"""
from .logging_config import setup_logging, get_logger, init_request_id_tracking
from .errors import (
    ErrorCode,
    GENERIC_ERROR_MESSAGE,
    error_response,
    result_error_response,
    bad_request,
    unauthorized,
    forbidden,
    not_found,
    internal_error
)
from .exceptions import (
    SettlementError,
    NotFoundError,
    ItemNotFoundError,
    OrderNotFoundError,
    UserNotFoundError,
    ValidationError,
    InsufficientStockError,
    InsufficientPointsError,
    InvalidCouponError,
    GatewayError,
    GatewayTimeoutError,
    SignatureInvalidError,
    PermissionDeniedError,
    AlreadySettled,
    InvalidStatusTransitionError,
    RewardUnavailableError,
    ConfigurationError
)
