"""Custom exceptions for the storefront checkout application."""

class StorefrontError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['status'] = 'error'
        return rv

class BusinessLogicError(StorefrontError):
    """Exception raised for business logic violations."""
    def __init__(self, message, status_code=400, payload=None):
        super().__init__(message, status_code, payload)

class NotFoundError(StorefrontError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)

class InvalidTransitionError(BusinessLogicError):
    """Raised when a checkout or order is asked to move to a state it cannot reach."""
    def __init__(self, entity, current, target):
        current_value = getattr(current, 'value', current)
        target_value = getattr(target, 'value', target)
        message = f"{entity} cannot move from '{current_value}' to '{target_value}'"
        super().__init__(message, status_code=409, payload={'current': current_value, 'target': target_value})

class CheckoutFailedError(BusinessLogicError):
    """Payment failed after the allowed retry; the customer must start a new checkout."""
    def __init__(self, message="Payment could not be completed. Please start a new checkout.", payload=None):
        super().__init__(message, status_code=402, payload=payload)

class PaymentGatewayError(StorefrontError):
    """Raised when the payment provider cannot be reached or rejects a request."""
    def __init__(self, message="Payment provider unavailable", payload=None):
        super().__init__(message, 502, payload)

class InvariantViolationError(StorefrontError):
    """
    A programming-contract failure (ledger row missing, unreachable state).

    The message is logged; clients only ever see an opaque internal error.
    """
    def __init__(self, message):
        super().__init__(message, 500)

    def to_dict(self):
        return {'status': 'error', 'message': 'Internal Server Error'}

class ReservationLapsedError(InvariantViolationError):
    """Payment confirmed for a reservation that expired and whose slot is gone."""
