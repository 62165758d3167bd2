"""
relay_flow.py - Authorization flow controller.

One flow is one popup round trip:

  START -> AWAITING_CALLBACK -> VALIDATING -> EXCHANGING
        -> FETCHING_PROFILE -> VERIFYING_PERMISSION -> TERMINAL

The controller never renders anything. It decides a FlowOutcome and turns
it into a redirect to /success or /error. Reasons placed in a redirect are
fixed, user-safe strings; the details of what went wrong go to the server
log and the audit log only.
"""

from __future__ import annotations

import json
import logging
import time
import urllib.parse
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from relay_config import RelayConfig
from relay_errors import CsrfValidationError
from relay_github import Err, GitHubClient
from relay_state import CookieDirectives, StateCheck, StateStore

logger = logging.getLogger("relay-flow")
audit_logger = logging.getLogger("relay-audit")

SUCCESS_PATH = "/success"
ERROR_PATH = "/error"

MSG_START_FAILED = "Failed to initiate authentication."
MSG_CSRF = "CSRF validation failed: state could not be verified."
MSG_PROVIDER_ERROR = "An error occurred during GitHub authentication."
MSG_NO_CODE = "Authorization code missing from GitHub callback."
MSG_EXCHANGE_FAILED = "Failed to obtain access token from GitHub."
MSG_PROFILE_FAILED = "Failed to fetch user profile from GitHub."
MSG_ACCESS_DENIED = ("Access Denied: You do not have sufficient permissions "
                     "for the configured repository.")
MSG_INTERNAL = "An internal error occurred during callback processing."


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


class FlowState(Enum):
    START = "start"
    AWAITING_CALLBACK = "awaiting_callback"
    VALIDATING = "validating"
    EXCHANGING = "exchanging"
    FETCHING_PROFILE = "fetching_profile"
    VERIFYING_PERMISSION = "verifying_permission"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class Success:
    credential: str
    target_origin: str

    def __repr__(self) -> str:
        return f"Success(credential=<redacted>, target_origin={self.target_origin!r})"


@dataclass(frozen=True)
class Failure:
    reason: str
    target_origin: str
    # None when the failure did not come from a flow step (e.g. /success).
    failed_at: FlowState | None = None


FlowOutcome = Union[Success, Failure]


@dataclass(frozen=True)
class FlowStart:
    location: str
    cookie: CookieDirectives | None = None


@dataclass(frozen=True)
class CallbackParams:
    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    @classmethod
    def from_query(cls, query: Any) -> "CallbackParams":
        return cls(
            code=query.get("code") or None,
            state=query.get("state") or None,
            error=query.get("error") or None,
            error_description=query.get("error_description") or None,
        )


def redirect_location(outcome: FlowOutcome) -> str:
    if isinstance(outcome, Success):
        query = {"token": outcome.credential, "origin": outcome.target_origin}
        return f"{SUCCESS_PATH}?{urllib.parse.urlencode(query)}"
    query = {"error": outcome.reason, "origin": outcome.target_origin}
    return f"{ERROR_PATH}?{urllib.parse.urlencode(query)}"


class AuthorizationFlow:
    """Drives a single GitHub authorization attempt from /auth to a terminal page."""

    def __init__(self, config: RelayConfig, states: StateStore, github: GitHubClient):
        self.config = config
        self.states = states
        self.github = github

    @property
    def origin(self) -> str:
        return self.config.frontend_url

    def _fail(self, reason: str, at: FlowState) -> Failure:
        return Failure(reason=reason, target_origin=self.origin, failed_at=at)

    def begin(self) -> FlowStart:
        """START: issue state and point the popup at GitHub."""
        try:
            state, cookie = self.states.issue()
            url = self.github.authorization_url(state)
        except Exception:
            logger.exception("begin: could not initiate authentication")
            return FlowStart(location=redirect_location(self._fail(MSG_START_FAILED, FlowState.START)))
        logger.info("begin: redirecting to GitHub for authorization")
        return FlowStart(location=url, cookie=cookie)

    def _validate_state(self, params: CallbackParams, cookie_value: str | None) -> None:
        check = self.states.check(cookie_value, params.state)
        if check is not StateCheck.VALID:
            raise CsrfValidationError(check)

    async def complete(self, params: CallbackParams, cookie_value: str | None) -> FlowOutcome:
        """AWAITING_CALLBACK onwards. Never raises.

        The caller is responsible for clearing the state cookie on the
        response, whatever the outcome.
        """
        try:
            self._validate_state(params, cookie_value)
        except CsrfValidationError as e:
            logger.warning("callback: state rejected (%s), potential CSRF", e.check.value)
            _audit("state_rejected", check=e.check.value)
            return self._fail(MSG_CSRF, FlowState.VALIDATING)
        logger.info("callback: state validated")

        if params.error:
            logger.error("callback: GitHub returned error=%s description=%s",
                         params.error, params.error_description)
            _audit("provider_error", error=params.error)
            return self._fail(params.error_description or MSG_PROVIDER_ERROR,
                              FlowState.VALIDATING)

        if not params.code:
            logger.error("callback: no authorization code received")
            return self._fail(MSG_NO_CODE, FlowState.VALIDATING)

        state = FlowState.EXCHANGING
        try:
            exchanged = await self.github.exchange_code(params.code)
            if isinstance(exchanged, Err):
                logger.error("callback: token exchange failed: %s", exchanged.error)
                _audit("token_exchange_failed", status=exchanged.error.status)
                return self._fail(MSG_EXCHANGE_FAILED, state)
            credential = exchanged.value

            state = FlowState.FETCHING_PROFILE
            profile = await self.github.fetch_identity(credential)
            if isinstance(profile, Err):
                logger.error("callback: profile unavailable: %s", profile.error)
                _audit("profile_failed", status=profile.error.status)
                return self._fail(MSG_PROFILE_FAILED, state)
            identity = profile.value

            state = FlowState.VERIFYING_PERMISSION
            access = await self.github.check_access(credential, identity.login)
            if isinstance(access, Err):
                logger.error("callback: permission check failed for %s: %s",
                             identity.login, access.error)
                _audit("permission_check_failed", login=identity.login,
                       status=access.error.status)
                return self._fail(MSG_INTERNAL, state)

            if not access.value:
                logger.warning("callback: %s lacks write access to %s",
                               identity.login, self.config.github_repo)
                _audit("permission_denied", login=identity.login, user_id=identity.id,
                       repo=self.config.github_repo)
                return self._fail(MSG_ACCESS_DENIED, state)
        except Exception:
            logger.exception("callback: unexpected error while %s", state.value)
            return self._fail(MSG_INTERNAL, state)

        logger.info("callback: %s authorized for %s", identity.login, self.config.github_repo)
        _audit("access_granted", login=identity.login, user_id=identity.id,
               repo=self.config.github_repo)
        return Success(credential=credential, target_origin=self.origin)
