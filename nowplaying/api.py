"""
HTTP handlers: static pages, Spotify authorization flow, one-shot status
lookup and the websocket gateway route.
"""
import logging
from urllib.parse import urlencode

from aiohttp import web

from .config import Settings
from .errors import Unauthorized, UpstreamError
from .gateway import Gateway
from .spotify import SpotifyAccounts
from .state import SubscriptionRegistry
from .tokens import TokenStore
from .utils import is_valid_auth_code, is_valid_user_id

logger = logging.getLogger("nowplaying")

SETTINGS = web.AppKey("settings", Settings)
TOKEN_STORE = web.AppKey("token_store", TokenStore)
ACCOUNTS = web.AppKey("accounts", SpotifyAccounts)
REGISTRY = web.AppKey("registry", SubscriptionRegistry)
GATEWAY = web.AppKey("gateway", Gateway)


def error(message: str, status: int) -> web.Response:
    return web.json_response({"message": message}, status=status)

# ============================================================
# STATIC PAGES
# ============================================================

async def index(request: web.Request) -> web.StreamResponse:
    return web.FileResponse(request.app[SETTINGS].static_dir / "index.html")


async def logged_in(request: web.Request) -> web.StreamResponse:
    return web.FileResponse(request.app[SETTINGS].static_dir / "logged-in.html")

# ============================================================
# AUTHORIZATION
# ============================================================

async def api_login(request: web.Request) -> web.Response:
    """Send the user to Spotify to authorize the application"""
    raise web.HTTPFound(request.app[ACCOUNTS].authorize_url())


async def api_callback(request: web.Request) -> web.Response:
    """Exchange the authorization code and remember the refresh token"""
    code = request.query.get("code")
    if not code or not is_valid_auth_code(code):
        return error("Bad code", 400)

    accounts = request.app[ACCOUNTS]
    try:
        token = await accounts.exchange_code(code)
    except UpstreamError as e:
        logger.error(f"Error while fetching token: {e}")
        return error("Bad response from spotify", 500)
    if token is None:
        return error("Bad code", 400)

    try:
        user = await accounts.get_profile(token.access_token)
    except UpstreamError as e:
        logger.error(f"Error while fetching user profile: {e}")
        return error("Bad response from spotify", 500)

    request.app[TOKEN_STORE].set(user.id, token.refresh_token)
    logger.info(f"✅ User {user.display_name} ({user.id}) authorized the application")

    query = urlencode({"display_name": user.display_name, "id": user.id})
    raise web.HTTPFound(f"/logged-in?{query}")

# ============================================================
# STATUS
# ============================================================

async def api_np(request: web.Request) -> web.Response:
    """One-shot status lookup; never registers a subscription"""
    user_id = request.match_info["user_id"]
    if not is_valid_user_id(user_id):
        return error("Bad user id", 400)

    try:
        status = await request.app[REGISTRY].fetch(user_id)
    except Unauthorized:
        logger.debug(f"User {user_id} has not authorized the application")
        return error("User has not authorized the application.", 400)
    except UpstreamError as e:
        logger.error(f"Error fetching user status: {e}")
        return error("Error fetching user status", 500)

    return web.json_response(status.as_dict())


async def ws_gateway(request: web.Request) -> web.WebSocketResponse:
    """WebSocket endpoint for real-time status updates"""
    return await request.app[GATEWAY].handle(request)
