# storage.py
import json
from datetime import datetime, timezone

from sqlalchemy import Boolean, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, Session

from db import Base
from models import PaymentIntent

# ---- ORM tables ----
class PaymentIntentORM(Base):
    __tablename__ = "payment_intents"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[str] = mapped_column(String, index=True)
    tx_ref: Mapped[str] = mapped_column(String, unique=True, index=True)
    method: Mapped[str] = mapped_column(String(16))
    amount: Mapped[float] = mapped_column(Float)
    plan_name: Mapped[str] = mapped_column(String)
    email: Mapped[str] = mapped_column(String)
    checkout_url: Mapped[str | None] = mapped_column(String, nullable=True)
    reference: Mapped[str | None] = mapped_column(String, nullable=True)

class RegistrationORM(Base):
    __tablename__ = "registrations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[str] = mapped_column(String)
    tx_ref: Mapped[str] = mapped_column(String, unique=True, index=True)
    email: Mapped[str] = mapped_column(String)
    plan_name: Mapped[str] = mapped_column(String)
    demo: Mapped[bool] = mapped_column(Boolean, default=False)
    account_json: Mapped[str] = mapped_column(Text)

class ClientStateORM(Base):
    __tablename__ = "client_state"
    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[str] = mapped_column(String)

# ---- helpers ----
def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

def save_intent(db: Session, intent: PaymentIntent) -> PaymentIntentORM:
    row = PaymentIntentORM(
        created_at=now_iso(),
        tx_ref=intent.tx_ref,
        method=intent.method.value,
        amount=float(intent.amount),
        plan_name=intent.plan_name,
        email=intent.email,
        checkout_url=intent.checkout_url,
        reference=intent.reference,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row

def list_intents(db: Session, limit: int = 500):
    return db.query(PaymentIntentORM).order_by(PaymentIntentORM.id.desc()).limit(limit).all()

def get_registration(db: Session, tx_ref: str) -> RegistrationORM | None:
    return db.query(RegistrationORM).filter(RegistrationORM.tx_ref == tx_ref).first()

def record_registration(db: Session, tx_ref: str, email: str, plan_name: str, account: dict, demo: bool) -> RegistrationORM:
    row = RegistrationORM(
        created_at=now_iso(),
        tx_ref=tx_ref,
        email=email,
        plan_name=plan_name,
        demo=demo,
        account_json=json.dumps(account, default=str),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row

def get_state(db: Session, key: str) -> str | None:
    row = db.get(ClientStateORM, key)
    return row.value if row else None

def set_state(db: Session, key: str, value: str) -> None:
    row = db.get(ClientStateORM, key)
    if row is None:
        db.add(ClientStateORM(key=key, value=value, updated_at=now_iso()))
    else:
        row.value = value
        row.updated_at = now_iso()
    db.commit()

def delete_state(db: Session, key: str) -> None:
    db.query(ClientStateORM).filter(ClientStateORM.key == key).delete()
    db.commit()
