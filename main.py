#!/usr/bin/env python3
"""
Now Playing - Entry Point
Spotify status gateway: REST lookup + WebSocket push + rate limiting
"""
import logging
import sys
import time
from typing import Dict, List, Optional

import aiohttp
from aiohttp import web
from pydantic import ValidationError

from nowplaying.api import (
    ACCOUNTS, GATEWAY, REGISTRY, SETTINGS, TOKEN_STORE,
    api_callback, api_login, api_np, index, logged_in, ws_gateway,
)
from nowplaying.config import Settings
from nowplaying.gateway import Gateway
from nowplaying.poller import StatusPoller
from nowplaying.spotify import CredentialCache, SpotifyAccounts, StatusFetcher
from nowplaying.state import SubscriptionRegistry
from nowplaying.tokens import TokenStore
from nowplaying.utils import client_key

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("nowplaying")

HTTP = web.AppKey("http", aiohttp.ClientSession)
POLLER = web.AppKey("poller", StatusPoller)

# path prefix -> (requests allowed, window in seconds, message)
RATE_LIMIT_RULES = {
    "/api/login": (10, 60 * 60, "Too many requests, please try again later."),
    "/api/callback": (10, 60 * 60, "Too many requests, please try again later."),
    "/api/np/": (5, 5 * 60, "Too many requests, please use the websocket gateway."),
}
RATE_LIMIT_GROUPS = {"/api/callback": "/api/login"}
RATE_LIMIT_SWEEP_INTERVAL = 60


class RateLimits:
    """Request timestamps per (route group, client), dropped once outside the window"""

    def __init__(self):
        self.hits: Dict[tuple, List[float]] = {}
        self.last_sweep = 0.0

    def allow(self, key, limit: int, window: float, now: float) -> bool:
        recent = [t for t in self.hits.get(key, ()) if now - t < window]
        allowed = len(recent) < limit
        if allowed:
            recent.append(now)
        if recent:
            self.hits[key] = recent
        else:
            self.hits.pop(key, None)
        return allowed

    def sweep(self, now: float) -> None:
        """Forget clients with no request inside their window"""
        self.last_sweep = now
        for key in list(self.hits):
            window = RATE_LIMIT_RULES[key[0]][1]
            if now - self.hits[key][-1] >= window:
                del self.hits[key]


RATE_LIMITS = web.AppKey("rate_limits", RateLimits)


@web.middleware
async def rate_limit_middleware(request, handler):
    """Sliding window rate limiting per client, per route group"""
    rule = next((p for p in RATE_LIMIT_RULES if request.path.startswith(p)), None)
    if rule is None:
        return await handler(request)

    limit, window, message = RATE_LIMIT_RULES[rule]
    key = (RATE_LIMIT_GROUPS.get(rule, rule), client_key(request))
    limits = request.app[RATE_LIMITS]
    now = time.time()

    if now - limits.last_sweep >= RATE_LIMIT_SWEEP_INTERVAL:
        limits.sweep(now)

    if not limits.allow(key, limit, window, now):
        logger.warning(f"Rate limit exceeded for {key[1]} on {key[0]}")
        return web.json_response({"message": message}, status=429)

    return await handler(request)


@web.middleware
async def cors_middleware(request, handler):
    try:
        response = await handler(request)
    except web.HTTPException as e:
        e.headers["Access-Control-Allow-Origin"] = "*"
        raise
    response.headers["Access-Control-Allow-Origin"] = "*"
    return response


async def start_background_tasks(app: web.Application):
    settings = app[SETTINGS]
    http = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=settings.upstream_timeout / 1000)
    )
    app[HTTP] = http

    accounts = SpotifyAccounts(http, settings)
    credentials = CredentialCache(accounts, app[TOKEN_STORE])
    registry = SubscriptionRegistry(credentials, StatusFetcher(http, settings, credentials))
    gateway = Gateway(
        registry,
        heartbeat_interval=settings.heartbeat_interval / 1000,
        subscribe_timeout=settings.subscribe_timeout / 1000,
    )
    app[ACCOUNTS] = accounts
    app[REGISTRY] = registry
    app[GATEWAY] = gateway

    poller = StatusPoller(registry, gateway, settings.update_interval / 1000)
    poller.start()
    app[POLLER] = poller


async def close_sessions(app: web.Application):
    await app[POLLER].stop()
    await app[GATEWAY].shutdown()


async def cleanup_background_tasks(app: web.Application):
    app[REGISTRY].credentials.clear()
    await app[HTTP].close()


def create_app(settings: Settings, token_store: Optional[TokenStore] = None) -> web.Application:
    """Create and configure the aiohttp application"""
    if settings.dev:
        logging.getLogger().setLevel(logging.DEBUG)

    app = web.Application(middlewares=[cors_middleware, rate_limit_middleware])
    app[SETTINGS] = settings
    app[TOKEN_STORE] = token_store or TokenStore(settings.data_dir / "tokens.json")
    app[RATE_LIMITS] = RateLimits()

    # HTML routes
    app.router.add_get("/", index)
    app.router.add_get("/logged-in", logged_in)

    # API routes
    app.router.add_get("/api/login", api_login)
    app.router.add_get("/api/callback", api_callback)
    app.router.add_get("/api/np/{user_id}", api_np)

    # WebSocket for real-time status updates
    app.router.add_get("/gateway", ws_gateway)

    app.on_startup.append(start_background_tasks)
    app.on_shutdown.append(close_sessions)
    app.on_cleanup.append(cleanup_background_tasks)
    return app


def main():
    try:
        settings = Settings.from_env()
    except ValidationError as e:
        logger.error(f"Invalid environment variables\n{e}")
        sys.exit(1)

    app = create_app(settings)
    logger.info(f"🚀 Listening on {settings.host}:{settings.port}")
    web.run_app(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
