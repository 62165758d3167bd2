"""
Decap CMS OAuth relay - HTTP surface.

Routes:
  GET /auth      start a GitHub authorization (sets the state cookie)
  GET /callback  GitHub redirect target; always answers with a 302
  GET /success   popup page that hands the token to the CMS window
  GET /error     popup page that reports a failure to the CMS window
  GET /health    liveness probe

Run with:  python server.py [--host H] [--port P]
Configuration comes from the environment (see .env.example).
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timezone

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from relay_config import RelayConfig, load_config
from relay_errors import ConfigurationError
from relay_flow import (
    ERROR_PATH,
    AuthorizationFlow,
    CallbackParams,
    Failure,
    redirect_location,
)
from relay_github import GitHubClient
from relay_middleware import RateLimitMiddleware, RequestLogMiddleware
from relay_pages import SUCCESS_PAGE, render_error_page
from relay_state import STATE_COOKIE, StateStore

logger = logging.getLogger("relay")

MSG_TOKEN_MISSING = "Authentication successful, but token not provided to success handler."
MSG_UNSPECIFIED = "An unspecified error occurred."

# The success URL carries the token: keep it out of caches and Referer headers.
_PAGE_HEADERS = {"Cache-Control": "no-store", "Referrer-Policy": "no-referrer"}


def _flow(request: Request) -> AuthorizationFlow:
    return request.app.state.flow


async def auth_route(request: Request) -> Response:
    start = _flow(request).begin()
    response = RedirectResponse(start.location, status_code=302)
    if start.cookie is not None:
        start.cookie.apply(response)
    return response


async def callback_route(request: Request) -> Response:
    flow = _flow(request)
    params = CallbackParams.from_query(request.query_params)
    outcome = await flow.complete(params, request.cookies.get(STATE_COOKIE))
    response = RedirectResponse(redirect_location(outcome), status_code=302,
                                headers={"Cache-Control": "no-store"})
    flow.states.clear(response)
    return response


async def success_route(request: Request) -> Response:
    if not request.query_params.get("token"):
        logger.error("success: token missing from query")
        failure = Failure(reason=MSG_TOKEN_MISSING, target_origin=_flow(request).origin)
        return RedirectResponse(redirect_location(failure), status_code=302)
    logger.info("success: serving handoff page")
    return HTMLResponse(SUCCESS_PAGE, headers=_PAGE_HEADERS)


async def error_route(request: Request) -> Response:
    q = request.query_params
    message = q.get("error") or q.get("message") or MSG_UNSPECIFIED
    logger.warning("error page: %r", message)
    return HTMLResponse(render_error_page(message, q.get("origin")), headers=_PAGE_HEADERS)


async def health_route(request: Request) -> Response:
    return JSONResponse({"status": "ok",
                         "timestamp": datetime.now(timezone.utc).isoformat()})


def create_app(config: RelayConfig, github: GitHubClient | None = None) -> Starlette:
    """Wire the relay components together for one configuration."""
    states = StateStore(config.session_secret, secure=config.is_production)
    flow = AuthorizationFlow(config, states, github or GitHubClient(config))

    middleware = [
        Middleware(RequestLogMiddleware),
        Middleware(
            CORSMiddleware,
            allow_origins=[config.frontend_url],
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization"],
            allow_credentials=True,
        ),
    ]
    if config.app_env != "test":
        middleware.append(Middleware(
            RateLimitMiddleware,
            max_requests=config.rate_limit_requests,
            window=config.rate_limit_window_seconds,
        ))
        logger.info("rate limiting: %d requests per %d minutes",
                    config.rate_limit_requests, config.rate_limit_window_minutes)
    else:
        logger.info("rate limiting disabled for test environment")

    app = Starlette(
        routes=[
            Route("/auth", auth_route, methods=["GET"]),
            Route("/callback", callback_route, methods=["GET"]),
            Route("/success", success_route, methods=["GET"]),
            Route(ERROR_PATH, error_route, methods=["GET"]),
            Route("/health", health_route, methods=["GET"]),
        ],
        middleware=middleware,
    )
    app.state.config = config
    app.state.flow = flow
    logger.info("CORS allowed origin: %s", config.frontend_url)
    return app


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    # Audit logger: bare JSON lines
    audit_handler = logging.StreamHandler()
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("relay-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Decap CMS GitHub OAuth relay")
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--host", default=None)
    args = parser.parse_args(argv)

    try:
        config = load_config()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("%s", e)
        sys.exit(1)

    configure_logging(config.log_level)
    host = args.host or config.host
    port = args.port or config.port

    import uvicorn

    app = create_app(config)
    logger.info("relay: starting HTTP server on %s:%d (%s)", host, port, config.app_env)
    uvicorn.run(app, host=host, port=port, log_level=config.log_level.lower(),
                proxy_headers=True, forwarded_allow_ips=config.forwarded_allow_ips,
                # The access log records query strings, which carry tokens.
                access_log=False)


if __name__ == "__main__":
    main()
