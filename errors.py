# errors.py


class SettlementError(Exception):
    """Base for everything the checkout flow raises on purpose."""


class PaymentValidationError(SettlementError):
    """Malformed local input. Raised before any network call."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class GatewayError(SettlementError):
    """Backend explicitly rejected the request or reported a failed payment."""

    def __init__(self, message: str, status_code: int | None = None, payload: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class TransientError(SettlementError):
    """Network or parse failure; the poller recovers by polling again."""


class VerificationTimeoutError(SettlementError):
    """Countdown reached zero before a terminal answer arrived."""
