# main.py
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Dict

from fastapi import FastAPI, HTTPException, Depends, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from countdown import QUICK_PAY_CADENCE, VERIFICATION_CADENCE
from db import SessionLocal, get_db, init_db
from errors import GatewayError, PaymentValidationError, TransientError
from gateway import PaymentGateway
from initiator import PaymentIntentInitiator
from models import (
    AuthStatusOut, CheckoutOut, CheckoutRequest, IntentHistoryItem, IntentHistoryOut, SessionOut,
)
from notify import emit, manager
from poller import VerificationPoller
from registration import RegistrationBinder
from storage import list_intents, save_intent
from token_store import TokenStore

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

MAX_FINISHED_SESSIONS = 500

token_store = TokenStore(SessionLocal)
gateway = PaymentGateway(token_store=token_store)
binder = RegistrationBinder(gateway, SessionLocal, token_store=token_store)

# Live and recently finished checkout sessions, keyed by tx_ref
SESSIONS: Dict[str, VerificationPoller] = {}
RUNNERS: Dict[str, asyncio.Task] = {}


def get_gateway() -> PaymentGateway:
    return gateway

def get_binder() -> RegistrationBinder:
    return binder

def get_token_store() -> TokenStore:
    return token_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Checkout service started")
    yield
    for poller in list(SESSIONS.values()):
        await poller.cancel("Service shutting down")
    if RUNNERS:
        await asyncio.gather(*list(RUNNERS.values()), return_exceptions=True)
    logger.info("Checkout service stopped")


app = FastAPI(title="Plan Checkout (payment → registration settlement)", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _runner_done(tx_ref: str, task: asyncio.Task) -> None:
    RUNNERS.pop(tx_ref, None)
    if not task.cancelled() and task.exception() is not None:
        logger.error("Checkout session %s crashed", tx_ref, exc_info=task.exception())

def _prune_finished() -> None:
    finished = [ref for ref, p in SESSIONS.items() if ref not in RUNNERS]
    for ref in finished[: max(0, len(finished) - MAX_FINISHED_SESSIONS)]:
        SESSIONS.pop(ref, None)

def _get_poller(tx_ref: str) -> VerificationPoller:
    poller = SESSIONS.get(tx_ref)
    if poller is None:
        raise HTTPException(404, detail="Checkout session not found")
    return poller

# --------------------- WebSocket ---------------------
@app.websocket("/ws/{tx_ref}")
async def websocket_endpoint(websocket: WebSocket, tx_ref: str):
    await manager.connect(tx_ref, websocket)
    poller = SESSIONS.get(tx_ref)
    if poller is not None:
        await websocket.send_json({"type": "snapshot", **poller.session.to_out().model_dump(mode="json")})
    try:
        while True:
            # Keep the socket open; clients may send pings.
            await websocket.receive_text()
    except WebSocketDisconnect:
        remaining = await manager.disconnect(tx_ref, websocket)
        poller = SESSIONS.get(tx_ref)
        if remaining == 0 and poller is not None:
            # last screen watching this payment is gone
            await poller.cancel("Checkout screen closed")

# --------------------- Checkout -------------------
@app.post("/checkout", response_model=CheckoutOut)
async def start_checkout(
    req: CheckoutRequest,
    db: Session = Depends(get_db),
    gw: PaymentGateway = Depends(get_gateway),
    reg: RegistrationBinder = Depends(get_binder),
):
    initiator = PaymentIntentInitiator(gw)
    try:
        intent, next_action = await initiator.initiate(
            plan_name=req.plan_name,
            amount=req.amount,
            payment=req.payment,
            email=req.email,
            first_name=req.first_name,
            last_name=req.last_name,
            quick_pay=req.flow == "quick_pay",
        )
    except PaymentValidationError as e:
        raise HTTPException(400, detail=str(e))
    except GatewayError as e:
        raise HTTPException(502, detail=f"Payment initialization failed: {e}")
    except TransientError as e:
        raise HTTPException(502, detail=f"Payment backend unreachable: {e}")

    if intent.tx_ref in SESSIONS:
        raise HTTPException(409, detail="Transaction reference already has a session")

    save_intent(db, intent)

    cadence = QUICK_PAY_CADENCE if req.flow == "quick_pay" else VERIFICATION_CADENCE
    poller = VerificationPoller(intent, gw, reg, cadence=cadence, emit=emit)
    _prune_finished()
    SESSIONS[intent.tx_ref] = poller
    task = asyncio.create_task(poller.run())
    RUNNERS[intent.tx_ref] = task
    task.add_done_callback(lambda t, ref=intent.tx_ref: _runner_done(ref, t))

    return CheckoutOut(
        tx_ref=intent.tx_ref,
        checkout_url=intent.checkout_url,
        next_action=next_action,
        session=poller.session.to_out(),
    )

@app.get("/checkout/{tx_ref}", response_model=SessionOut)
def get_checkout(tx_ref: str):
    return _get_poller(tx_ref).session.to_out()

@app.post("/checkout/{tx_ref}/check", response_model=SessionOut)
async def check_checkout(tx_ref: str):
    poller = _get_poller(tx_ref)
    await poller.check_now()
    return poller.session.to_out()

@app.delete("/checkout/{tx_ref}", response_model=SessionOut)
async def cancel_checkout(tx_ref: str):
    poller = _get_poller(tx_ref)
    await poller.cancel()
    return poller.session.to_out()

# --------------- History -----------------
@app.get("/payments/history", response_model=IntentHistoryOut)
def payment_history(db: Session = Depends(get_db)):
    rows = list_intents(db)
    return IntentHistoryOut(items=[
        IntentHistoryItem(
            id=r.id,
            created_at=r.created_at,
            tx_ref=r.tx_ref,
            method=r.method,
            amount=r.amount,
            plan_name=r.plan_name,
            email=r.email,
            reference=r.reference,
        )
        for r in rows
    ])

# --------------- Auth token -----------------
@app.get("/auth/status", response_model=AuthStatusOut)
def auth_status(store: TokenStore = Depends(get_token_store)):
    claims = store.load()
    return AuthStatusOut(authenticated=claims is not None, claims=claims)

@app.delete("/auth/token", response_model=AuthStatusOut)
def logout(store: TokenStore = Depends(get_token_store)):
    store.clear()
    return AuthStatusOut(authenticated=False)
