"""
Domain errors for the order, payment and wallet core.

Every error carries the HTTP status it maps to and a stable machine code so
the API layer can translate it without inspecting messages:

- Validation errors are rejected before any side effect.
- Conflicts are raised inside a transaction that the caller rolls back.
- Gateway errors say whether a retry can succeed.
"""
from typing import Optional


class StorefrontError(Exception):
    """Base class for all domain errors."""
    status_code: int = 400
    code: str = "storefront_error"
    retryable: bool = False

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self.args[0])


# ==================== VALIDATION ====================

class ValidationError(StorefrontError):
    """Request rejected by validation."""
    status_code = 422
    code = "validation_error"


class ProductUnavailable(ValidationError):
    """Product is inactive or does not exist."""
    code = "product_unavailable"

    def __init__(self, product_id):
        self.product_id = product_id
        super().__init__(f"Product {product_id} is not available")


class CouponInvalid(ValidationError):
    """Coupon cannot be applied."""
    code = "coupon_invalid"


class SplitConfigInvalid(ValidationError):
    """Payment split configuration is invalid."""
    code = "split_config_invalid"


class ChargeAmountInvalid(ValidationError):
    """Charge amount is outside what the provider accepts."""
    code = "charge_amount_invalid"


class WithdrawalAmountInvalid(ValidationError):
    """Withdrawal amount is outside platform bounds."""
    code = "withdrawal_amount_invalid"


class WithdrawalReasonRequired(ValidationError):
    """A rejection reason is required."""
    code = "withdrawal_reason_required"


class KycIncomplete(ValidationError):
    """Personal data must be registered before withdrawing."""
    code = "kyc_incomplete"


class InvalidPersonalData(ValidationError):
    """Personal data is invalid."""
    code = "invalid_personal_data"


class PaymentProviderNotConfigured(StorefrontError):
    """No payment provider is available for this store."""
    status_code = 400
    code = "payment_provider_not_configured"


# ==================== NOT FOUND ====================

class NotFoundError(StorefrontError):
    status_code = 404
    code = "not_found"


class OrderNotFound(NotFoundError):
    """Order not found."""
    code = "order_not_found"


class CustomerNotFound(NotFoundError):
    """Customer not found."""
    code = "customer_not_found"


class WithdrawalNotFound(NotFoundError):
    """Withdrawal not found."""
    code = "withdrawal_not_found"


# ==================== CONFLICTS ====================

class ConflictError(StorefrontError):
    status_code = 409
    code = "conflict"


class InsufficientStock(ConflictError):
    """Not enough inventory units to fulfil the request."""
    code = "insufficient_stock"

    def __init__(self, product_id, requested: int = 0, available: int = 0):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested {requested}, available {available}"
        )


class InsufficientFunds(ConflictError):
    """Available balance is lower than the requested amount."""
    code = "insufficient_funds"


class AlreadyProcessed(ConflictError):
    """Withdrawal has already been resolved."""
    code = "already_processed"


class WithdrawalLimitReached(ConflictError):
    """Daily withdrawal limit reached."""
    code = "withdrawal_limit_reached"


class InvalidOrderTransition(ConflictError):
    """Order cannot move to the requested state."""
    code = "invalid_order_transition"


class CustomerBlocked(StorefrontError):
    """Customer is blocked in this store."""
    status_code = 403
    code = "customer_blocked"


# ==================== EXTERNAL DEPENDENCIES ====================

class GatewayError(StorefrontError):
    status_code = 502
    code = "gateway_error"

    def __init__(self, message: Optional[str] = None, provider: Optional[str] = None):
        self.provider = provider
        super().__init__(message)


class GatewayUnavailable(GatewayError):
    """Payment provider could not be reached. Safe to retry."""
    status_code = 503
    code = "gateway_unavailable"
    retryable = True


class GatewayRejected(GatewayError):
    """Payment provider rejected the request."""
    code = "gateway_rejected"
