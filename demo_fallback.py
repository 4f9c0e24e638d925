# demo_fallback.py
import logging
import os
import random
import string
from typing import Any, Dict, Optional

from initiator import expected_plan_amount
from models import PaymentIntent

APP_ENV = os.getenv("APP_ENV", "development")
DEMO_FALLBACK_ENABLED = os.getenv("DEMO_FALLBACK_ENABLED", "").lower() in ("1", "true", "yes")

ERROR_THRESHOLD = 2          # consecutive verify errors before a synthetic success
MIN_REMAINING_SECONDS = 10   # never inject in the last stretch of the countdown

logger = logging.getLogger(__name__)


def demo_fallback_allowed(enabled: bool = DEMO_FALLBACK_ENABLED, app_env: str = APP_ENV) -> bool:
    return enabled and app_env.lower() != "production"


def fake_receipt_number() -> str:
    return "QEI2" + "".join(random.choices(string.ascii_uppercase + string.digits, k=6))


class DemoFallbackSimulator:
    """
    Keeps the flow usable against a flaky or absent backend (local/demo
    deployments) by fabricating one success after repeated verify errors.
    Results are tagged demo=True so registration knows they are unproven.
    """

    def __init__(
        self,
        enabled: Optional[bool] = None,
        error_threshold: int = ERROR_THRESHOLD,
        min_remaining_seconds: int = MIN_REMAINING_SECONDS,
    ):
        self.enabled = demo_fallback_allowed() if enabled is None else demo_fallback_allowed(enabled)
        self.error_threshold = error_threshold
        self.min_remaining_seconds = min_remaining_seconds
        self.used = False

    def should_inject(self, session) -> bool:
        if not self.enabled or self.used or session.is_terminal:
            return False
        return (
            session.consecutive_errors >= self.error_threshold
            and session.countdown_seconds > self.min_remaining_seconds
        )

    def synthesize(self, intent: PaymentIntent) -> Dict[str, Any]:
        if self.used:
            raise RuntimeError(f"demo fallback already used for {intent.tx_ref}")
        self.used = True
        amount = expected_plan_amount(intent.plan_name)
        if amount is None:
            amount = intent.amount
        payload = {
            "status": "success",
            "amount": float(amount),
            "mpesaReceiptNumber": fake_receipt_number(),
            "resultDesc": "The service request is processed successfully.",
            "demo": True,
        }
        logger.warning("Demo fallback: synthesized success for %s (receipt %s)", intent.tx_ref, payload["mpesaReceiptNumber"])
        return payload
