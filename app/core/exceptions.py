from typing import Optional


class SubscriptionError(Exception):
    """Base class for expected failures of the subscription billing core."""

    def __init__(self, detail: str, user_message: Optional[str] = None):
        self.detail = detail
        self.user_message = user_message
        super().__init__(detail)


class ValidationError(SubscriptionError):
    """A plan change or eligibility precondition does not hold. Nothing was mutated."""


class NotFoundError(SubscriptionError):
    """A subscription, plan or payment method is missing or belongs to another user."""


class ExternalGatewayError(SubscriptionError):
    """The payment gateway call failed, timed out or returned an unusable body."""

    def __init__(self, detail: str, status_code: Optional[int] = None, user_message: Optional[str] = None):
        self.status_code = status_code
        super().__init__(detail, user_message=user_message)


class GatewayPayloadError(ExternalGatewayError):
    """The gateway answered 2xx JSON that does not have the expected shape."""


class ConsistencyError(SubscriptionError):
    """
    The gateway charged the customer but a later gateway step failed.
    The local transaction is rolled back while the external charge stands, so
    the charge must be reconciled by hand.
    """

    def __init__(self, detail: str, charge_transaction_id: Optional[str] = None):
        self.charge_transaction_id = charge_transaction_id
        super().__init__(detail)


class InvalidTransitionError(SubscriptionError):
    """A payment status change that the transaction state machine does not allow."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid status transition from {current} to {requested}")
