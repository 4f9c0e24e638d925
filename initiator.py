# initiator.py
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple

from errors import PaymentValidationError
from models import (
    MOBILE_MONEY, CardInput, CbeInput, PaymentIntent, PaymentMethod, PaymentMethodInput,
)

logger = logging.getLogger(__name__)

# Plan catalog (ETB). Starter is free and never reaches the payment flow.
PLAN_PRICES = {
    "Starter": Decimal("0"),
    "Growth": Decimal("2500"),
    "Enterprise": Decimal("10000"),
}

QUICK_PAY_EMAIL = "quickpay@example.com"
QUICK_PAY_FIRST_NAME = "Quick"
QUICK_PAY_LAST_NAME = "Payment"

PHONE_DIGITS = 9
COUNTRY_PREFIX = "251"
EXPIRY_RE = re.compile(r"^(\d{2})/?(\d{2})$")


def digits(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())


def normalize_phone(raw: str) -> str:
    """
    Local 9-digit subscriber number, e.g. "911234567".
    Accepts "0911 234 567" and "+251 911 234 567" as well.
    """
    d = digits(raw or "")
    if len(d) == PHONE_DIGITS + len(COUNTRY_PREFIX) and d.startswith(COUNTRY_PREFIX):
        d = d[len(COUNTRY_PREFIX):]
    elif len(d) == PHONE_DIGITS + 1 and d.startswith("0"):
        d = d[1:]
    if len(d) != PHONE_DIGITS:
        raise PaymentValidationError("Please enter a valid phone number", field="phone")
    return d


def parse_plan_price(price: str) -> Decimal:
    """'2,500 ETB' -> Decimal('2500')"""
    cleaned = re.sub(r"[^0-9.]", "", price or "")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise PaymentValidationError("Invalid plan price", field="amount")
    if amount <= 0:
        raise PaymentValidationError("Invalid plan price", field="amount")
    return amount


def _validate_card(card: CardInput) -> None:
    number = digits(card.number)
    if not 12 <= len(number) <= 19:
        raise PaymentValidationError("Please enter all card details", field="number")
    m = EXPIRY_RE.match(card.expiry.strip())
    if not m or not 1 <= int(m.group(1)) <= 12:
        raise PaymentValidationError("Expiry must be MM/YY", field="expiry")
    if not card.cvv.isdigit() or len(card.cvv) not in (3, 4):
        raise PaymentValidationError("CVV must be 3 or 4 digits", field="cvv")


def validate_method_input(payment: PaymentMethodInput) -> Optional[str]:
    """Check method-specific fields. Returns the normalized phone for mobile money."""
    if isinstance(payment, CardInput):
        _validate_card(payment)
        return None
    if isinstance(payment, CbeInput):
        if not payment.reference.strip():
            raise PaymentValidationError("Please enter your CBE reference", field="reference")
        return None
    return normalize_phone(payment.phone)


def expected_plan_amount(plan_name: str) -> Optional[Decimal]:
    """Catalog price for a known plan, None for plans priced elsewhere."""
    return PLAN_PRICES.get(plan_name)


def validate_checkout(amount: Decimal, email: str, plan_name: str) -> None:
    if not plan_name or not plan_name.strip():
        raise PaymentValidationError("Plan name is required", field="plan_name")
    if amount is None or amount <= 0:
        raise PaymentValidationError("Valid amount is required", field="amount")
    expected = expected_plan_amount(plan_name)
    if expected is not None and amount != expected:
        raise PaymentValidationError(f"{plan_name} plan costs {expected} ETB", field="amount")
    if not email or "@" not in email:
        raise PaymentValidationError("Please enter a valid email address", field="email")


def build_initialize_body(
    *,
    amount: Decimal,
    email: str,
    first_name: str,
    last_name: str,
    description: str,
    method: PaymentMethod,
    phone: Optional[str] = None,
) -> dict:
    body = {
        "amount": float(amount),
        "email": email,
        "firstName": first_name,
        "lastName": last_name,
        "description": description,
        "category": "Subscription",
        "type": "subscription",
        "paymentMethod": method.value,
    }
    if method in MOBILE_MONEY:
        body["phoneNumber"] = phone
    return body


class PaymentIntentInitiator:
    def __init__(self, gateway):
        self.gateway = gateway

    async def initiate(
        self,
        *,
        plan_name: str,
        amount: Decimal,
        payment: PaymentMethodInput,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        quick_pay: bool = False,
    ) -> Tuple[PaymentIntent, str]:
        """
        Validate locally, then ask the backend for a transaction reference.

        Returns the intent and what the UI should do next: "push_prompt" for
        mobile money (no redirect), "redirect" when the backend handed out a
        checkout page, otherwise "await_confirmation".
        """
        if quick_pay:
            email = email or QUICK_PAY_EMAIL
            first_name = first_name or QUICK_PAY_FIRST_NAME
            last_name = last_name or QUICK_PAY_LAST_NAME
            description = f"{plan_name} Plan - Quick Payment"
        else:
            description = f"{plan_name} Plan Subscription"

        validate_checkout(amount, email, plan_name)
        phone = validate_method_input(payment)
        method = PaymentMethod(payment.method)
        reference = payment.reference.strip() if isinstance(payment, CbeInput) else None

        body = build_initialize_body(
            amount=amount,
            email=email,
            first_name=first_name or "Customer",
            last_name=last_name or "User",
            description=description,
            method=method,
            phone=phone,
        )
        resp = await self.gateway.initialize(body)

        intent = PaymentIntent(
            tx_ref=resp.data.tx_ref,
            method=method,
            amount=amount,
            plan_name=plan_name,
            email=email,
            checkout_url=resp.data.checkout_url,
            reference=reference,
        )
        logger.info("Initialized %s payment %s for %s plan (%s ETB)", method.value, intent.tx_ref, plan_name, amount)
        if reference:
            logger.info("Payment %s carries bank reference %s", intent.tx_ref, reference)

        if method in MOBILE_MONEY:
            next_action = "push_prompt"
        elif intent.checkout_url:
            next_action = "redirect"
        else:
            next_action = "await_confirmation"
        return intent, next_action
