import asyncio

from countdown import QUICK_PAY_CADENCE, Cadence
from demo_fallback import DemoFallbackSimulator
from errors import GatewayError, SettlementError, VerificationTimeoutError
from fakes import FAILED, PENDING, FakeGateway, RecordingEmitter, fast_sleep, network_down, success
from poller import SessionStatus, VerificationPoller
from registration import RegistrationBinder

C, P, S, F = SessionStatus.CHECKING, SessionStatus.PENDING, SessionStatus.SUCCESS, SessionStatus.FAILED


def make_poller(intent, gateway, session_factory, fallback_enabled=False, **kwargs):
    binder = RegistrationBinder(gateway, session_factory)
    return VerificationPoller(
        intent,
        gateway,
        binder,
        fallback=DemoFallbackSimulator(enabled=fallback_enabled),
        sleep=fast_sleep,
        **kwargs,
    )


def test_pending_three_times_then_success_registers_once(intent, session_factory):
    gw = FakeGateway([PENDING, PENDING, PENDING, success()])
    emitter = RecordingEmitter()
    poller = make_poller(intent, gw, session_factory, emit=emitter)

    session = asyncio.run(poller.run())

    assert session.transitions == [C, P, P, P, S]
    assert session.attempts == 4
    assert session.payment_data["mpesaReceiptNumber"] == "QEI2ABCDEF"
    assert session.demo is False
    assert gw.registration_calls == [{"txRef": "TX123", "email": "abebe@example.com", "planName": "Growth"}]
    assert session.registration_status == "registered"
    assert session.outcome == "success"
    assert "REGISTERED" in emitter.stages()


def test_consecutive_success_responses_transition_once(intent, session_factory):
    gw = FakeGateway([success(), success()], default=success())
    poller = make_poller(intent, gw, session_factory)

    async def scenario():
        await poller.run()
        # a second observation after success is a no-op
        return await poller.check_now()

    rechecked = asyncio.run(scenario())

    assert rechecked is False
    assert poller.session.transitions.count(S) == 1
    assert len(gw.verify_calls) == 1
    assert len(gw.registration_calls) == 1


def test_failed_status_is_terminal_and_skips_registration(intent, session_factory):
    gw = FakeGateway([FAILED])
    poller = make_poller(intent, gw, session_factory)

    session = asyncio.run(poller.run())

    assert session.transitions == [C, F]
    assert len(gw.verify_calls) == 1
    assert gw.registration_calls == []
    assert session.failure_reason == "Request cancelled by user"
    assert isinstance(session.error, GatewayError)
    assert session.outcome == "failed"


def test_countdown_expiry_forces_failed_and_stops_polling(intent, session_factory):
    gw = FakeGateway(default=PENDING)
    poller = make_poller(intent, gw, session_factory)

    session = asyncio.run(poller.run())

    assert session.status == F
    assert isinstance(session.error, VerificationTimeoutError)
    assert session.countdown_seconds == 0
    assert poller.clock.elapsed == 60
    # polls at 0, 5, ... 55; nothing after the deadline
    assert len(gw.verify_calls) == 12
    assert session.attempts == 12


def test_cancel_while_verify_in_flight_discards_late_response(intent, session_factory):
    gw = FakeGateway([PENDING, PENDING, PENDING, PENDING, success()])
    poller = make_poller(intent, gw, session_factory)

    async def cancel_on_fifth_call(n):
        if n == 5:
            await poller.cancel()

    gw.on_verify = cancel_on_fifth_call

    session = asyncio.run(poller.run())

    assert session.cancelled is True
    assert session.status == F
    assert session.countdown_seconds == 40
    assert poller.clock.elapsed == 20
    assert session.attempts == 5
    assert S not in session.transitions
    assert session.payment_data == {"status": "pending"}
    assert gw.registration_calls == []
    assert len(gw.verify_calls) == 5


def test_cancel_is_idempotent_and_blocks_manual_checks(intent, session_factory):
    gw = FakeGateway()
    poller = make_poller(intent, gw, session_factory)

    async def scenario():
        first = await poller.cancel()
        second = await poller.cancel()
        checked = await poller.check_now()
        return first, second, checked

    assert asyncio.run(scenario()) == (True, False, False)
    assert gw.verify_calls == []
    assert poller.session.transitions == [C, F]


def test_demo_fallback_injects_success_once_after_repeated_errors(intent, session_factory):
    gw = FakeGateway(default=network_down(), registration=network_down())
    emitter = RecordingEmitter()
    poller = make_poller(intent, gw, session_factory, fallback_enabled=True, emit=emitter)

    async def scenario():
        await poller.run()
        return await poller.check_now()

    rechecked = asyncio.run(scenario())

    s = poller.session
    assert s.transitions == [C, P, S]
    assert s.demo is True
    assert s.payment_data["demo"] is True
    assert s.payment_data["amount"] == 2500.0
    assert s.payment_data["mpesaReceiptNumber"].startswith("QEI2")
    assert len(gw.verify_calls) == 2
    assert rechecked is False
    assert poller.fallback.used is True
    assert emitter.stages().count("DEMO_FALLBACK") == 1
    # server re-validation is still attempted, then the demo record is accepted
    assert len(gw.registration_calls) == 1
    assert s.registration_status == "registered"
    assert s.account["demo"] is True
    assert s.account["verified"] is True


def test_errors_without_fallback_stay_pending_until_countdown(intent, session_factory):
    gw = FakeGateway(default=network_down())
    poller = make_poller(intent, gw, session_factory, fallback_enabled=False)

    session = asyncio.run(poller.run())

    assert session.transitions[:2] == [C, P]
    assert session.transitions[-1] == F
    assert S not in session.transitions
    assert session.consecutive_errors == 12
    assert isinstance(session.error, VerificationTimeoutError)


def test_real_payment_registration_failure_surfaces_failed(intent, session_factory):
    gw = FakeGateway([success()], registration=GatewayError("Payment amount does not match selected plan", status_code=400))
    poller = make_poller(intent, gw, session_factory)

    session = asyncio.run(poller.run())

    assert session.status == S
    assert session.registration_status == "failed"
    assert session.outcome == "failed"
    assert session.failure_reason == "Payment amount does not match selected plan"
    assert session.account is None


def test_attempt_bound_forces_failed(intent, session_factory):
    gw = FakeGateway(default=PENDING)
    poller = make_poller(intent, gw, session_factory, cadence=Cadence(budget_seconds=10, poll_interval=5))

    async def scenario():
        return [await poller.check_now() for _ in range(3)]

    assert asyncio.run(scenario()) == [True, True, False]
    assert poller.session.status == F
    assert isinstance(poller.session.error, VerificationTimeoutError)
    assert len(gw.verify_calls) == 2


def test_quick_pay_cadence_waits_before_first_probe(intent, session_factory):
    gw = FakeGateway(default=PENDING)
    poller = make_poller(intent, gw, session_factory, cadence=QUICK_PAY_CADENCE)
    seen_at = []

    async def record_elapsed(n):
        seen_at.append(poller.clock.elapsed)

    gw.on_verify = record_elapsed

    session = asyncio.run(poller.run())

    assert seen_at[:3] == [5, 15, 25]
    assert len(gw.verify_calls) == 30
    assert session.status == F


class CrashingBinder:
    def __init__(self):
        self.calls = 0

    async def bind(self, session):
        self.calls += 1
        raise RuntimeError("database is locked")


def test_unexpected_registration_crash_still_settles_session(intent):
    gw = FakeGateway([success()])
    emitter = RecordingEmitter()
    binder = CrashingBinder()
    poller = VerificationPoller(intent, gw, binder, fallback=DemoFallbackSimulator(enabled=False), emit=emitter, sleep=fast_sleep)

    session = asyncio.run(poller.run())

    assert binder.calls == 1
    assert session.status == S
    assert session.registration_status == "failed"
    assert session.outcome == "failed"
    assert session.failure_reason == "Registration could not be completed"
    assert isinstance(session.error, SettlementError)
    assert "REGISTRATION_FAILED" in emitter.stages()


def test_cancelled_session_carries_error(intent, session_factory):
    poller = make_poller(intent, FakeGateway(), session_factory)

    asyncio.run(poller.cancel())

    assert isinstance(poller.session.error, SettlementError)
    assert str(poller.session.error) == "Cancelled by user"
    assert poller.session.to_out().failure_reason == "Cancelled by user"
