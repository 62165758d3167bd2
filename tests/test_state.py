"""Tests for relay_state.py."""
import sys
from pathlib import Path

import jwt
import pytest
from starlette.responses import Response

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from relay_state import STATE_COOKIE, STATE_TTL, StateCheck, StateStore

SECRET = "state-secret-for-tests-0123456789abcdef"


@pytest.fixture
def store():
    return StateStore(SECRET)


def _set_cookie_headers(response: Response) -> list[str]:
    return [v.decode() for k, v in response.raw_headers if k == b"set-cookie"]


# ---------------------------------------------------------------------------
# issue()
# ---------------------------------------------------------------------------

class TestIssue:
    def test_state_is_hex_with_16_bytes_entropy(self, store):
        state, _ = store.issue()
        assert len(state) == 32
        int(state, 16)

    def test_states_are_unique(self, store):
        states = {store.issue()[0] for _ in range(100)}
        assert len(states) == 100

    def test_cookie_directives(self, store):
        _, cookie = store.issue()
        assert cookie.key == STATE_COOKIE
        assert cookie.path == "/"
        assert cookie.httponly is True
        assert cookie.secure is False
        assert cookie.max_age == STATE_TTL == 300
        assert cookie.samesite == "lax"

    def test_cookie_value_is_signed_not_raw_state(self, store):
        state, cookie = store.issue()
        assert cookie.value != state
        claims = jwt.decode(cookie.value, SECRET, algorithms=["HS256"])
        assert claims["state"] == state
        assert claims["exp"] - claims["iat"] == STATE_TTL

    def test_secure_in_production(self):
        _, cookie = StateStore(SECRET, secure=True).issue()
        assert cookie.secure is True

    def test_apply_sets_cookie_attributes(self, store):
        _, cookie = store.issue()
        response = Response()
        cookie.apply(response)
        [header] = _set_cookie_headers(response)
        lowered = header.lower()
        assert header.startswith(f"{STATE_COOKIE}={cookie.value}")
        assert "httponly" in lowered
        assert "max-age=300" in lowered
        assert "path=/" in lowered
        assert "samesite=lax" in lowered
        assert "; secure" not in lowered


# ---------------------------------------------------------------------------
# check() / validate()
# ---------------------------------------------------------------------------

class TestValidate:
    def test_round_trip_many(self, store):
        for _ in range(50):
            state, cookie = store.issue()
            assert store.validate(cookie.value, state)

    def test_mismatch(self, store):
        state, cookie = store.issue()
        other, _ = store.issue()
        assert store.check(cookie.value, other) is StateCheck.MISMATCH
        assert not store.validate(cookie.value, other)

    def test_one_character_difference(self, store):
        state, cookie = store.issue()
        flipped = ("0" if state[0] != "0" else "1") + state[1:]
        assert not store.validate(cookie.value, flipped)

    @pytest.mark.parametrize("cookie_value", [None, ""])
    def test_missing_cookie(self, store, cookie_value):
        state, _ = store.issue()
        assert store.check(cookie_value, state) is StateCheck.MISSING

    @pytest.mark.parametrize("query_value", [None, ""])
    def test_missing_query_state(self, store, query_value):
        _, cookie = store.issue()
        assert store.check(cookie.value, query_value) is StateCheck.MISSING

    def test_cookie_signed_with_other_secret(self, store):
        state, cookie = StateStore("some-other-secret-0123456789abcdefgh").issue()
        assert store.check(cookie.value, state) is StateCheck.BAD_SIGNATURE

    def test_raw_state_in_cookie_is_rejected(self, store):
        state, _ = store.issue()
        assert store.check(state, state) is StateCheck.BAD_SIGNATURE

    def test_tampered_payload(self, store):
        state, cookie = store.issue()
        header, payload, sig = cookie.value.split(".")
        forged = jwt.encode({"state": "attacker", "exp": 9999999999}, "guess",
                            algorithm="HS256").split(".")[1]
        assert store.check(f"{header}.{forged}.{sig}", "attacker") is StateCheck.BAD_SIGNATURE

    def test_expired_cookie(self):
        store = StateStore(SECRET, ttl=-10)
        state, cookie = store.issue()
        assert store.check(cookie.value, state) is StateCheck.EXPIRED

    def test_cookie_without_state_claim(self, store):
        token = jwt.encode({"exp": 9999999999}, SECRET, algorithm="HS256")
        assert store.check(token, "anything") is StateCheck.BAD_SIGNATURE


# ---------------------------------------------------------------------------
# clear()
# ---------------------------------------------------------------------------

class TestClear:
    def test_clear_expires_cookie(self, store):
        response = Response()
        store.clear(response)
        [header] = _set_cookie_headers(response)
        assert header.startswith(f"{STATE_COOKIE}=")
        assert "max-age=0" in header.lower()
        assert "path=/" in header.lower()

    def test_cleared_state_cannot_be_reused(self, store):
        state, cookie = store.issue()
        assert store.validate(cookie.value, state)
        # Once cleared the browser no longer sends the cookie.
        assert not store.validate(None, state)
