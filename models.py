# models.py  (pydantic I/O models)
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class PaymentMethod(str, Enum):
    TELEBIRR = "telebirr"
    CBE = "cbe"
    CARD = "card"
    MPESA = "mpesa"


MOBILE_MONEY = {PaymentMethod.TELEBIRR, PaymentMethod.MPESA}


# ---- Method-specific input (tagged on "method") ----
class TelebirrInput(BaseModel):
    method: Literal["telebirr"] = "telebirr"
    phone: str


class MpesaInput(BaseModel):
    method: Literal["mpesa"] = "mpesa"
    phone: str


class CbeInput(BaseModel):
    method: Literal["cbe"] = "cbe"
    reference: str


class CardInput(BaseModel):
    method: Literal["card"] = "card"
    number: str
    expiry: str  # "MM/YY"
    cvv: str


PaymentMethodInput = Annotated[
    Union[TelebirrInput, MpesaInput, CbeInput, CardInput],
    Field(discriminator="method"),
]


# ---- Input from the UI ----
class CheckoutRequest(BaseModel):
    plan_name: str
    amount: Decimal = Field(..., description="Plan price in ETB, e.g. 2500")
    payment: PaymentMethodInput
    flow: Literal["verification", "quick_pay"] = "verification"
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


# ---- Intent issued by the backend ----
class PaymentIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    tx_ref: str
    method: PaymentMethod
    amount: Decimal
    plan_name: str
    email: str
    checkout_url: Optional[str] = None
    reference: Optional[str] = None  # CBE transfer reference, kept for reconciliation


# ---- Backend wire shapes ----
class InitializeData(BaseModel):
    model_config = ConfigDict(extra="allow")

    tx_ref: str
    checkout_url: Optional[str] = None


class InitializeResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str
    message: Optional[str] = None
    data: Optional[InitializeData] = None


class VerifyData(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: Optional[str] = None
    amount: Optional[float] = None
    mpesaReceiptNumber: Optional[str] = None
    resultDesc: Optional[str] = None


class VerifyResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: Optional[str] = None
    message: Optional[str] = None
    data: Optional[VerifyData] = None


# ---- Output structures ----
class SessionOut(BaseModel):
    tx_ref: str
    plan_name: str
    method: PaymentMethod
    amount: Decimal
    status: str
    outcome: str
    attempts: int
    max_attempts: int
    countdown_seconds: int
    demo: bool = False
    failure_reason: Optional[str] = None
    payment_data: Optional[Dict[str, Any]] = None
    registration_status: str
    account: Optional[Dict[str, Any]] = None


class CheckoutOut(BaseModel):
    tx_ref: str
    checkout_url: Optional[str] = None
    next_action: Literal["push_prompt", "redirect", "await_confirmation"]
    session: SessionOut


class IntentHistoryItem(BaseModel):
    id: int
    created_at: str
    tx_ref: str
    method: str
    amount: float
    plan_name: str
    email: str
    reference: Optional[str] = None


class IntentHistoryOut(BaseModel):
    items: List[IntentHistoryItem]


class AuthStatusOut(BaseModel):
    authenticated: bool
    claims: Optional[Dict[str, Any]] = None
