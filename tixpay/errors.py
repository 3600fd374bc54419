# tixpay/errors.py
from typing import Any, Dict, Optional


class TixPayError(Exception):
    """Base for errors that map onto an HTTP status and an ``{"error": ...}`` body."""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.context = context or {}


class ValidationError(TixPayError):
    status_code = 400


class NotFoundError(TixPayError):
    status_code = 404


class InsufficientInventoryError(TixPayError):
    status_code = 409


class PaymentNotCompletedError(TixPayError):
    status_code = 409


class SignatureError(TixPayError):
    status_code = 400


class ConfigurationError(TixPayError):
    status_code = 500


class GatewayError(TixPayError):
    """Non-2xx (or unusable) answer from the payment gateway."""

    status_code = 502

    def __init__(self, message: str, http_status: Optional[int] = None, body: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.http_status = http_status
        self.body = body


class InvalidSplitError(GatewayError):
    """The gateway rejected the split code attached to the transaction."""


class GatewayTimeoutError(GatewayError):
    status_code = 504


class FatalReconciliationError(TixPayError):
    """A charge succeeded but its tickets could not be issued. Needs an operator."""

    status_code = 500
