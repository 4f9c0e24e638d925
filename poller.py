# poller.py
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from countdown import VERIFICATION_CADENCE, Cadence, SessionClock, Sleep, TaskHandle
from demo_fallback import DemoFallbackSimulator
from errors import GatewayError, SettlementError, TransientError, VerificationTimeoutError
from models import PaymentIntent, SessionOut, VerifyResponse

SETTLE_DELAY_SECONDS = 1.0

Emit = Callable[[str, str, Optional[Dict[str, Any]]], Awaitable[None]]

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    CHECKING = "checking"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL = {SessionStatus.SUCCESS, SessionStatus.FAILED}


class VerificationSession:
    """State of one verification screen. Only its VerificationPoller mutates it."""

    def __init__(self, intent: PaymentIntent, cadence: Cadence):
        self.intent = intent
        self.cadence = cadence
        self.status = SessionStatus.CHECKING
        self.transitions: List[SessionStatus] = [SessionStatus.CHECKING]
        self.attempts = 0
        self.countdown_seconds = cadence.budget_seconds
        self.payment_data: Optional[Dict[str, Any]] = None
        self.demo = False
        self.consecutive_errors = 0
        self.cancelled = False
        self.error: Optional[SettlementError] = None
        self.failure_reason: Optional[str] = None
        self.registration_status = "not_started"
        self.account: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @property
    def outcome(self) -> str:
        if self.status == SessionStatus.FAILED or self.registration_status == "failed":
            return "failed"
        if self.registration_status == "registered":
            return "success"
        return "in_flight"

    def to_out(self) -> SessionOut:
        return SessionOut(
            tx_ref=self.intent.tx_ref,
            plan_name=self.intent.plan_name,
            method=self.intent.method,
            amount=self.intent.amount,
            status=self.status.value,
            outcome=self.outcome,
            attempts=self.attempts,
            max_attempts=self.cadence.max_attempts,
            countdown_seconds=self.countdown_seconds,
            demo=self.demo,
            failure_reason=self.failure_reason,
            payment_data=self.payment_data,
            registration_status=self.registration_status,
            account=self.account,
        )


class VerificationPoller:
    """
    Drives a VerificationSession: polls /payments/verify on a fixed cadence,
    lets the countdown decide when to give up, and hands a confirmed payment
    to the RegistrationBinder exactly once.

    Every state change checks the session first; once it is terminal or the
    handle is cancelled, late responses are dropped.
    """

    def __init__(
        self,
        intent: PaymentIntent,
        gateway,
        binder,
        cadence: Cadence = VERIFICATION_CADENCE,
        fallback: Optional[DemoFallbackSimulator] = None,
        emit: Optional[Emit] = None,
        sleep: Sleep = asyncio.sleep,
        settle_delay: float = SETTLE_DELAY_SECONDS,
    ):
        self.session = VerificationSession(intent, cadence)
        self.gateway = gateway
        self.binder = binder
        self.fallback = fallback if fallback is not None else DemoFallbackSimulator()
        self.handle = TaskHandle()
        self.clock = SessionClock(cadence, self.handle, sleep)
        self.settle_delay = settle_delay
        self._emit_fn = emit
        self._sleep = sleep
        self._poll_task: Optional[asyncio.Task] = None
        self._registration_task: Optional[asyncio.Task] = None

    @property
    def tx_ref(self) -> str:
        return self.session.intent.tx_ref

    def _stale(self) -> bool:
        return self.handle.cancelled or self.session.is_terminal

    async def _emit(self, stage: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if self._emit_fn is not None:
            await self._emit_fn(stage, self.tx_ref, payload)

    # --------------------- lifecycle ---------------------
    async def run(self) -> VerificationSession:
        await self._emit("SESSION_STARTED", {
            "plan": self.session.intent.plan_name,
            "method": self.session.intent.method.value,
            "countdown": self.session.countdown_seconds,
        })
        try:
            await self.clock.run(self._on_tick, self._on_poll_due, self._on_expire)
        finally:
            self.handle.stop()
            await self.handle.drain()
        if self._registration_task is not None:
            await self._registration_task
        return self.session

    async def cancel(self, reason: str = "Cancelled by user") -> bool:
        """User closed the screen. Stops the countdown and any poll in one call."""
        if self._stale():
            return False
        s = self.session
        s.cancelled = True
        s.status = SessionStatus.FAILED
        s.transitions.append(s.status)
        s.failure_reason = reason
        s.error = SettlementError(reason)
        self.handle.stop()
        logger.info("Session %s cancelled at %ss remaining", self.tx_ref, s.countdown_seconds)
        await self._emit("CANCELLED", {"reason": reason})
        return True

    async def check_now(self) -> bool:
        """Manual "check again". False when a poll is already in flight or the session is over."""
        if self._stale():
            return False
        if self._poll_task is not None and not self._poll_task.done():
            return False
        task = await self._start_poll()
        if task is None:
            return False
        await asyncio.wait({task})
        return True

    # --------------------- clock callbacks ---------------------
    async def _on_tick(self, remaining: int) -> None:
        if self._stale():
            return
        self.session.countdown_seconds = remaining
        await self._emit("COUNTDOWN", {"countdown": remaining})

    async def _on_poll_due(self) -> None:
        if self._stale():
            return
        if self._poll_task is not None and not self._poll_task.done():
            logger.debug("Poll for %s still in flight; skipping this tick", self.tx_ref)
            return
        await self._start_poll()

    async def _on_expire(self) -> None:
        err = VerificationTimeoutError(f"No confirmation for {self.tx_ref} within {self.session.cadence.budget_seconds}s")
        await self._fail("Payment was cancelled or timed out", err)

    # --------------------- polling ---------------------
    async def _start_poll(self) -> Optional[asyncio.Task]:
        s = self.session
        if s.attempts >= s.cadence.max_attempts:
            await self._fail("Payment timeout. Please check your phone and try again.",
                             VerificationTimeoutError(f"{s.attempts} attempts exhausted"))
            return None
        s.attempts += 1
        self._poll_task = self.handle.track(asyncio.create_task(self._poll_once(s.attempts)))
        return self._poll_task

    async def _poll_once(self, attempt: int) -> None:
        try:
            resp = await self.gateway.verify(self.tx_ref)
        except TransientError as e:
            await self._on_error(e, attempt)
            return
        if self._stale():
            logger.info("Discarding late verify response for %s (attempt %s)", self.tx_ref, attempt)
            return
        await self._apply(resp)

    async def _apply(self, resp: VerifyResponse) -> None:
        data = resp.data
        nested = data.status if data else None
        if resp.status == "success" and nested == "success":
            await self._succeed(data.model_dump(exclude_none=True), demo=False)
            return
        if resp.status == "failed" or nested == "failed":
            reason = (data.resultDesc if data else None) or "Payment was declined or failed"
            if data:
                self.session.payment_data = data.model_dump(exclude_none=True)
            await self._fail(reason, GatewayError(reason, payload=resp.model_dump()))
            return
        # pending, or no usable status on an otherwise good response
        self.session.consecutive_errors = 0
        if data:
            self.session.payment_data = data.model_dump(exclude_none=True)
        await self._transition(SessionStatus.PENDING)

    async def _on_error(self, err: TransientError, attempt: int) -> None:
        if self._stale():
            return
        s = self.session
        s.consecutive_errors += 1
        logger.warning("Verify attempt %s for %s failed (%s consecutive): %s", attempt, self.tx_ref, s.consecutive_errors, err)
        if self.fallback.should_inject(s):
            payload = self.fallback.synthesize(s.intent)
            await self._emit("DEMO_FALLBACK", {"receipt": payload["mpesaReceiptNumber"]})
            await self._succeed(payload, demo=True)
            return
        await self._transition(SessionStatus.PENDING)

    # --------------------- transitions ---------------------
    async def _transition(self, status: SessionStatus) -> None:
        if self._stale():
            return
        self.session.status = status
        self.session.transitions.append(status)
        await self._emit("STATUS", {"status": status.value, "attempts": self.session.attempts})

    async def _succeed(self, payment_data: Dict[str, Any], demo: bool) -> None:
        if self._stale():
            return
        s = self.session
        s.status = SessionStatus.SUCCESS
        s.transitions.append(s.status)
        s.payment_data = payment_data
        s.demo = demo
        self.handle.stop()
        self._registration_task = asyncio.create_task(self._register())
        logger.info("Payment %s confirmed%s after %s attempts", self.tx_ref, " (demo)" if demo else "", s.attempts)
        await self._emit("STATUS", {"status": s.status.value, "payment": payment_data, "demo": demo})

    async def _fail(self, reason: str, error: Optional[SettlementError] = None) -> None:
        if self._stale():
            return
        s = self.session
        s.status = SessionStatus.FAILED
        s.transitions.append(s.status)
        s.failure_reason = reason
        s.error = error
        self.handle.stop()
        logger.info("Payment %s failed: %s", self.tx_ref, reason)
        await self._emit("STATUS", {"status": s.status.value, "reason": reason})

    # --------------------- registration ---------------------
    async def _register(self) -> None:
        await self._sleep(self.settle_delay)
        s = self.session
        s.registration_status = "in_progress"
        try:
            outcome = await self.binder.bind(s)
        except GatewayError as e:
            await self._registration_failed(str(e), e)
            return
        except Exception as e:
            logger.exception("Registration for %s crashed", self.tx_ref)
            await self._registration_failed("Registration could not be completed", SettlementError(str(e)))
            return
        s.registration_status = "registered"
        s.account = outcome.account
        await self._emit("REGISTERED", {"demo": outcome.demo, "account": outcome.account})

    async def _registration_failed(self, reason: str, error: SettlementError) -> None:
        s = self.session
        s.registration_status = "failed"
        s.error = error
        s.failure_reason = reason
        await self._emit("REGISTRATION_FAILED", {"reason": reason})
