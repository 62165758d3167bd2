"""
relay_state.py - Anti-CSRF state for the GitHub authorization round trip.

Nothing is stored server-side. The random state travels twice: once in a
signed, short-lived cookie set by /auth, and once through GitHub, which
echoes it on /callback. The two must agree and the cookie signature must
verify. The cookie is an HS256 JWT keyed with SESSION_SECRET, so every
relay instance behind a load balancer must share that secret.
"""

from __future__ import annotations

import hmac
import secrets
import time
from dataclasses import dataclass
from enum import Enum

import jwt
from starlette.responses import Response

STATE_COOKIE = "oauth_state"
STATE_TTL = 300  # 5 minutes
STATE_BYTES = 16
JWT_ALGORITHM = "HS256"


class StateCheck(Enum):
    VALID = "valid"
    MISSING = "missing"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class CookieDirectives:
    key: str
    value: str
    max_age: int
    path: str = "/"
    httponly: bool = True
    secure: bool = False
    samesite: str = "lax"

    def apply(self, response: Response) -> None:
        response.set_cookie(
            self.key,
            self.value,
            max_age=self.max_age,
            path=self.path,
            httponly=self.httponly,
            secure=self.secure,
            samesite=self.samesite,
        )


class StateStore:
    """Issues and verifies the single-use state cookie."""

    def __init__(self, secret: str, secure: bool = False, ttl: int = STATE_TTL):
        self._secret = secret
        self.secure = secure
        self.ttl = ttl

    def issue(self) -> tuple[str, CookieDirectives]:
        state = secrets.token_hex(STATE_BYTES)
        now = int(time.time())
        signed = jwt.encode(
            {"state": state, "iat": now, "exp": now + self.ttl},
            self._secret,
            algorithm=JWT_ALGORITHM,
        )
        return state, CookieDirectives(
            key=STATE_COOKIE,
            value=signed,
            max_age=self.ttl,
            secure=self.secure,
        )

    def check(self, cookie_value: str | None, query_value: str | None) -> StateCheck:
        if not cookie_value or not query_value:
            return StateCheck.MISSING
        try:
            claims = jwt.decode(
                cookie_value,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["state", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            return StateCheck.EXPIRED
        except jwt.InvalidTokenError:
            return StateCheck.BAD_SIGNATURE

        cookie_state = claims.get("state")
        if not isinstance(cookie_state, str):
            return StateCheck.BAD_SIGNATURE
        if not hmac.compare_digest(cookie_state.encode(), query_value.encode()):
            return StateCheck.MISMATCH
        return StateCheck.VALID

    def validate(self, cookie_value: str | None, query_value: str | None) -> bool:
        return self.check(cookie_value, query_value) is StateCheck.VALID

    def clear(self, response: Response) -> None:
        # Must mirror the path used when setting, or the browser keeps it.
        response.delete_cookie(STATE_COOKIE, path="/", secure=self.secure,
                               httponly=True, samesite="lax")
