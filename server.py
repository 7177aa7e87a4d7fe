#!/usr/bin/env python3
"""
HTTP boundary of the RSS proxy.

Routes:
  GET /api/proxy/rss?url=<feed url>  -> normalized feed text (UTF-8)
  GET /api/health                    -> {"status": "ok", "service": "rss-proxy"}

Cross-origin requests are checked against ALLOWED_ORIGINS and every client IP
is held to a sliding-window request ceiling (health checks excepted).
"""

import math
from typing import Iterable, Optional

from aiohttp import ClientSession, web

from config import config, get_logger
from errors import FeedPipelineError, FetchTimeoutError, RateLimitExceeded, ValidationError
from proxy import fetch_feed
from telemetry import init_telemetry
from utils import SlidingWindowRateLimiter

logger = get_logger("server")

HEALTH_PATH = "/api/health"
PROXY_PATH = "/api/proxy/rss"
SERVICE_NAME = "rss-proxy"

SESSION_KEY = web.AppKey("session", ClientSession)
LIMITER_KEY = web.AppKey("rate_limiter", SlidingWindowRateLimiter)
ORIGINS_KEY = web.AppKey("allowed_origins", frozenset)
DEVELOPMENT_KEY = web.AppKey("development", bool)


def _error(message: str, status: int, url: Optional[str] = None, headers: Optional[dict] = None) -> web.Response:
    payload = {"error": message}
    if url:
        payload["url"] = url
    return web.json_response(payload, status=status, headers=headers)


def client_ip(request: web.Request) -> str:
    if config.TRUST_PROXY:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.remote or "unknown"


def origin_allowed(origin: Optional[str], allowed: Iterable[str], development: bool) -> bool:
    """Same-origin requests (no Origin header) always pass."""
    if not origin:
        return True
    if development:
        return True
    return origin.rstrip("/") in allowed


@web.middleware
async def cors_middleware(request: web.Request, handler):
    origin = request.headers.get("Origin")
    if not origin_allowed(origin, request.app[ORIGINS_KEY], request.app[DEVELOPMENT_KEY]):
        logger.warning(f"Rejected cross-origin request from {origin}")
        return _error("Not allowed by CORS", 403)

    if request.method == "OPTIONS":
        response = web.Response(status=204)
        response.headers["Access-Control-Max-Age"] = "86400"
    else:
        response = await handler(request)

    if origin:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        response.headers["Vary"] = "Origin"
    return response


@web.middleware
async def rate_limit_middleware(request: web.Request, handler):
    if request.path == HEALTH_PATH or request.method == "OPTIONS":
        return await handler(request)

    limiter = request.app[LIMITER_KEY]
    allowed, remaining, reset_after = limiter.hit(client_ip(request))
    headers = {
        "RateLimit-Limit": str(limiter.max_requests),
        "RateLimit-Remaining": str(remaining),
        "RateLimit-Reset": str(math.ceil(reset_after)),
    }
    if not allowed:
        headers["Retry-After"] = str(math.ceil(reset_after))
        return _error("Too many requests, please try again later.", 429, headers=headers)

    response = await handler(request)
    response.headers.update(headers)
    return response


async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "service": SERVICE_NAME})


async def proxy_rss(request: web.Request) -> web.Response:
    url = request.query.get("url", "").strip()
    if not url:
        return _error("Missing url parameter", 400)

    try:
        feed = await fetch_feed(
            url,
            session=request.app[SESSION_KEY],
            development=request.app[DEVELOPMENT_KEY],
        )
    except ValidationError as e:
        return _error(e.message, 400, url)
    except FetchTimeoutError:
        return _error("Request timeout", 504, url)
    except RateLimitExceeded as e:
        headers = {"Retry-After": str(math.ceil(e.retry_after))} if e.retry_after is not None else None
        return _error(f"Failed to fetch feed: {e.message}", 429, url, headers)
    except FeedPipelineError as e:
        status = e.status if e.status in (403, 404) else 500
        return _error(f"Failed to fetch feed: {e.message}", status, url)
    except Exception as e:
        logger.exception(f"Unexpected error proxying {url}: {e}")
        return _error(f"Failed to fetch feed: {e}", 500, url)

    return web.Response(
        body=feed.text.encode("utf-8"),
        headers={
            "Content-Type": feed.content_type,
            "Cache-Control": "public, max-age=300",
        },
    )


async def _client_session(app: web.Application):
    async with ClientSession() as session:
        app[SESSION_KEY] = session
        yield


def create_app(
    session: Optional[ClientSession] = None,
    *,
    allowed_origins: Optional[Iterable[str]] = None,
    development: Optional[bool] = None,
    rate_limiter: Optional[SlidingWindowRateLimiter] = None,
) -> web.Application:
    """Build the proxy application.

    A caller-supplied ``session`` is used as-is and not closed; otherwise one
    session is opened for the application's lifetime.
    """
    app = web.Application(middlewares=[cors_middleware, rate_limit_middleware])
    app[ORIGINS_KEY] = frozenset(o.rstrip("/") for o in (config.ALLOWED_ORIGINS if allowed_origins is None else allowed_origins))
    app[DEVELOPMENT_KEY] = config.DEVELOPMENT if development is None else development
    app[LIMITER_KEY] = rate_limiter or SlidingWindowRateLimiter(
        config.RATE_LIMIT_MAX_REQUESTS, config.RATE_LIMIT_WINDOW_MINUTES * 60
    )
    if session is not None:
        app[SESSION_KEY] = session
    else:
        app.cleanup_ctx.append(_client_session)

    app.router.add_get(HEALTH_PATH, health)
    app.router.add_get(PROXY_PATH, proxy_rss)
    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    init_telemetry(SERVICE_NAME)
    app = create_app()
    host = host or config.HOST
    port = port or config.PORT
    logger.info(f"🚀 RSS proxy listening on {host}:{port} (environment={config.ENVIRONMENT})")
    logger.debug(f"Configuration: {config.get_config_summary()}")
    if app[DEVELOPMENT_KEY]:
        logger.warning("Development mode: private network guard disabled, CORS relaxed")
    web.run_app(app, host=host, port=port, print=None)
