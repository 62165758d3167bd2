"""
relay_github.py - The three GitHub calls a relay flow makes.

  exchange_code   - POST /login/oauth/access_token (code -> access token)
  fetch_identity  - GET  /user
  check_access    - GET  /repos/{owner}/{repo}/collaborators/{login}/permission

Each returns Ok(value) or Err(error) instead of raising, so the flow
controller decides every outcome explicitly. Access tokens are never
logged.
"""

from __future__ import annotations

import logging
import urllib.parse
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

import httpx

from relay_config import RelayConfig
from relay_errors import (
    PermissionCheckError,
    ProviderError,
    TokenExchangeError,
    UpstreamUnavailable,
)

logger = logging.getLogger("relay-github")

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_API = "https://api.github.com"
USER_AGENT = "DecapCMS-GitHub-OAuth-Relay"

T = TypeVar("T")
E = TypeVar("E", bound=Exception)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E


Result = Union[Ok[T], Err[E]]


class PermissionLevel(str, Enum):
    NONE = "none"
    READ = "read"
    WRITE = "write"
    MAINTAIN = "maintain"
    ADMIN = "admin"


SUFFICIENT_LEVELS = frozenset({
    PermissionLevel.ADMIN,
    PermissionLevel.WRITE,
    PermissionLevel.MAINTAIN,
})


def is_sufficient(permission: object) -> bool:
    """True only for admin, write and maintain. Anything else fails closed."""
    try:
        level = PermissionLevel(permission)
    except (ValueError, TypeError):
        return False
    return level in SUFFICIENT_LEVELS


@dataclass(frozen=True)
class ProviderIdentity:
    login: str
    id: int


class GitHubClient:
    """Talks to GitHub on behalf of one relay configuration."""

    def __init__(self, config: RelayConfig):
        self.config = config
        self.timeout = httpx.Timeout(config.github_http_timeout)

    def _api_headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"token {access_token}",
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": USER_AGENT,
        }

    def authorization_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.config.github_client_id,
            "redirect_uri": self.config.github_callback_url,
            "scope": self.config.github_scope,
            "state": state,
        }
        return f"{GITHUB_AUTHORIZE_URL}?{urllib.parse.urlencode(params)}"

    async def exchange_code(self, code: str) -> Result[str, TokenExchangeError]:
        # redirect_uri and scope must match the authorize request.
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.config.github_client_id,
            "client_secret": self.config.github_client_secret,
            "redirect_uri": self.config.github_callback_url,
            "scope": self.config.github_scope,
        }
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(GITHUB_TOKEN_URL, data=form, headers=headers)
        except httpx.HTTPError as e:
            logger.error("token exchange: GitHub unreachable: %s", type(e).__name__)
            return Err(TokenExchangeError(f"token endpoint unreachable: {e}"))

        if not resp.is_success:
            logger.error("token exchange: status=%d body=%s", resp.status_code, resp.text[:500])
            return Err(TokenExchangeError(
                f"token endpoint returned {resp.status_code}", status=resp.status_code,
            ))

        try:
            data = resp.json()
        except ValueError:
            logger.error("token exchange: response is not JSON")
            return Err(TokenExchangeError("token endpoint returned invalid JSON",
                                          status=resp.status_code))

        token = data.get("access_token") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            # GitHub reports bad codes as 200 + {"error": ...}
            detail = data.get("error", "no access_token") if isinstance(data, dict) else "unexpected payload"
            logger.error("token exchange: malformed payload (%s)", detail)
            return Err(TokenExchangeError(
                f"access token not in expected string format: {detail}",
                status=resp.status_code,
            ))
        return Ok(token)

    async def fetch_identity(self, access_token: str) -> Result[ProviderIdentity, ProviderError]:
        url = f"{GITHUB_API}/user"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(url, headers=self._api_headers(access_token))
        except httpx.HTTPError as e:
            logger.error("fetch profile: GitHub unreachable: %s", type(e).__name__)
            return Err(UpstreamUnavailable(f"{url} unreachable: {e}"))

        if not resp.is_success:
            logger.error("fetch profile: status=%d body=%s", resp.status_code, resp.text[:500])
            return Err(ProviderError(f"{url} returned {resp.status_code}",
                                     status=resp.status_code))
        try:
            data = resp.json()
        except ValueError:
            return Err(ProviderError(f"{url} returned invalid JSON", status=resp.status_code))

        login = data.get("login") if isinstance(data, dict) else None
        user_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(login, str) or not login or isinstance(user_id, bool) \
                or not isinstance(user_id, int):
            logger.error("fetch profile: payload missing login/id")
            return Err(ProviderError(f"{url} returned an unexpected payload",
                                     status=resp.status_code))

        logger.info("fetch profile: login=%s id=%d", login, user_id)
        return Ok(ProviderIdentity(login=login, id=user_id))

    async def check_access(self, access_token: str, login: str) -> Result[bool, PermissionCheckError]:
        """Ask GitHub for ``login``'s permission on the configured repository.

        Returns Ok(False) when the user is not a collaborator (404), holds a
        read-only or unknown permission, or when the answer could not be
        obtained (network failure, malformed body, or any other exception).
        Only a non-404 error status becomes an Err, since it may mean the
        relay itself is misconfigured.
        """
        repo = self.config.github_repo
        url = (f"{GITHUB_API}/repos/{urllib.parse.quote(self.config.repo_owner)}"
               f"/{urllib.parse.quote(self.config.repo_name)}"
               f"/collaborators/{urllib.parse.quote(login, safe='')}/permission")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(url, headers=self._api_headers(access_token))

            if resp.status_code == 404:
                logger.warning("permission: %s is not a collaborator on %s", login, repo)
                return Ok(False)
            if not resp.is_success:
                logger.error("permission: status=%d user=%s repo=%s body=%s",
                             resp.status_code, login, repo, resp.text[:500])
                return Err(PermissionCheckError(
                    f"permission endpoint returned {resp.status_code}",
                    status=resp.status_code,
                ))

            permission = resp.json().get("permission")
        except Exception as e:
            logger.error("permission: could not determine access for %s on %s (%s); denying",
                         login, repo, type(e).__name__)
            return Ok(False)

        allowed = is_sufficient(permission)
        logger.info("permission: user=%s repo=%s permission=%s sufficient=%s",
                    login, repo, permission, allowed)
        return Ok(allowed)
