"""
Reconciliation Exceptions

Routers translate these to HTTP status codes; the poller treats
UpstreamUnavailable as retryable.
"""


class ReconciliationError(Exception):
    """Base exception for payment reconciliation"""
    pass


class AuthenticationFailure(ReconciliationError):
    """Webhook secret missing or wrong"""
    pass


class WebhookTokenNotConfigured(ReconciliationError):
    """No webhook secret configured in production"""
    pass


class MalformedPayload(ReconciliationError):
    """Webhook body could not be parsed into transactions"""
    pass


class UpstreamUnavailable(ReconciliationError):
    """Casso API failed or timed out"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class TransactionNotFound(ReconciliationError):
    pass


class OrderNotFound(ReconciliationError):
    pass
