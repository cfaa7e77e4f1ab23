from typing import Optional


class EngineError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


# Validation

class ValidationFailed(EngineError):
    status_code = 400
    code = "validation_failed"


class InvalidPromoCode(ValidationFailed):
    code = "invalid_promo_code"


# Stock

class InsufficientStock(EngineError):
    status_code = 409
    code = "stock_unavailable"

    def __init__(self, product_id: str, size: Optional[str], available: int, requested: int, name: str = ""):
        label = f"{name or product_id}" + (f" ({size})" if size else "")
        super().__init__(
            f"Insufficient stock for {label}. Available: {available}, Requested: {requested}"
        )
        self.product_id = product_id
        self.size = size
        self.available = available
        self.requested = requested


# Not found

class ProductNotFound(EngineError):
    status_code = 404
    code = "product_not_found"


class OrderNotFound(EngineError):
    status_code = 404
    code = "order_not_found"


class GatewayNotFound(EngineError):
    status_code = 404
    code = "gateway_not_found"


# Identity

class Unauthenticated(EngineError):
    status_code = 401
    code = "unauthenticated"


class Forbidden(EngineError):
    status_code = 403
    code = "forbidden"


class SignatureInvalid(EngineError):
    status_code = 401
    code = "signature_invalid"


# Gateways

class GatewayError(EngineError):
    status_code = 503
    code = "gateway_error"

    def __init__(self, gateway: str, message: Optional[str] = None):
        super().__init__(f"{gateway}: {message}" if message else gateway)
        self.gateway = gateway


class GatewayNotConfigured(GatewayError):
    code = "gateway_not_configured"


class GatewayAuthFailed(GatewayError):
    code = "gateway_auth_failed"


class GatewayUnavailable(GatewayError):
    code = "gateway_unavailable"


class GatewayRejected(GatewayError):
    status_code = 502
    code = "gateway_rejected"


# Amount integrity: the request to the provider is never sent.

class InvalidAmount(EngineError):
    status_code = 500
    code = "invalid_amount"


class AmountUnitMismatch(InvalidAmount):
    code = "amount_unit_mismatch"


# Conflicts

class OrderAlreadyPaid(EngineError):
    status_code = 409
    code = "order_already_paid"


class RetryNotAllowed(EngineError):
    status_code = 409
    code = "retry_not_allowed"


class ConcurrentUpdate(EngineError):
    status_code = 409
    code = "concurrent_update"


class RetryRateLimited(EngineError):
    status_code = 429
    code = "retry_rate_limited"

    def __init__(self, retry_after: int):
        super().__init__(
            f"Payment was retried too recently. Try again in {retry_after} seconds."
        )
        self.retry_after = retry_after


class DatastoreUnavailable(EngineError):
    status_code = 503
    code = "datastore_unavailable"
