"""Domain errors raised by the payment-first services.

Routers never build HTTP errors for these themselves; the exception handler
registered in ``payfirst.main`` renders every ``PaymentFirstError`` with its
own status code.
"""


class PaymentFirstError(Exception):
    status_code = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(PaymentFirstError):
    status_code = 400
    code = "validation_error"
    default_message = "Request is invalid"


class SignatureMismatch(PaymentFirstError):
    status_code = 401
    code = "invalid_signature"
    default_message = "Invalid signature"


class NotFound(PaymentFirstError):
    status_code = 404
    code = "not_found"
    default_message = "Payment not found"


class NotCompleted(PaymentFirstError):
    status_code = 400
    code = "payment_not_completed"
    default_message = "Payment not completed"


class AlreadyRegistered(PaymentFirstError):
    status_code = 409
    code = "already_registered"
    default_message = "You already have access to this course. Please sign in to continue."

    def __init__(self, message: str | None = None, *, email: str | None = None):
        super().__init__(message)
        self.email = email


class AccountExists(PaymentFirstError):
    status_code = 409
    code = "account_exists"
    default_message = "An account with this email already exists. Please sign in instead."


class DuplicateOrder(PaymentFirstError):
    status_code = 409
    code = "duplicate_order"
    default_message = "Merchant order id already exists"


class InvalidCredentials(PaymentFirstError):
    status_code = 401
    code = "invalid_credentials"
    default_message = "Incorrect email or password."


class GatewayRejected(PaymentFirstError):
    status_code = 400
    code = "gateway_rejected"
    default_message = "Payment provider rejected the request"


class GatewayUnavailable(PaymentFirstError):
    status_code = 502
    code = "gateway_unavailable"
    default_message = "Payment provider is unavailable, please retry"


class IdentityProviderError(PaymentFirstError):
    status_code = 502
    code = "identity_provider_error"
    default_message = "Identity provider request failed, please retry"


class DatabaseError(PaymentFirstError):
    status_code = 500
    code = "database_error"
    default_message = "Failed to complete registration. Please try again."
