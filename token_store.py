# token_store.py
import logging
import time
from typing import Any, Dict, Optional

import jwt
from sqlalchemy.orm import sessionmaker

from storage import delete_state, get_state, set_state

AUTH_TOKEN_KEY = "auth_token"
REQUIRED_CLAIMS = ("userId", "email", "companyName")

logger = logging.getLogger(__name__)


class TokenStore:
    """
    The client's auth token, kept under one well-known key.

    The token is signed by the backend; this side holds no key, so claims are
    read without signature verification and only used to decide whether an
    auto-login is worth attempting.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self) -> Optional[str]:
        with self.session_factory() as db:
            return get_state(db, AUTH_TOKEN_KEY)

    def save(self, token: str) -> None:
        with self.session_factory() as db:
            set_state(db, AUTH_TOKEN_KEY, token)

    def clear(self) -> None:
        with self.session_factory() as db:
            delete_state(db, AUTH_TOKEN_KEY)

    def load(self) -> Optional[Dict[str, Any]]:
        """Claims of the stored token, or None. Bad tokens are removed."""
        token = self.get()
        if not token:
            return None

        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError as e:
            logger.warning("Stored auth token is malformed (%s); removing it", e)
            self.clear()
            return None

        exp = claims.get("exp")
        if exp is not None and (not isinstance(exp, (int, float)) or exp < time.time()):
            logger.info("Stored auth token has expired; removing it")
            self.clear()
            return None

        missing = [c for c in REQUIRED_CLAIMS if not claims.get(c)]
        if missing:
            logger.warning("Stored auth token is missing claims %s; removing it", missing)
            self.clear()
            return None

        return claims
