"""
Small helpers shared by the handlers and the Spotify client
"""
import base64
import re

USER_ID_RE = re.compile(r"^[A-Za-z0-9]+$")
AUTH_CODE_RE = re.compile(r"^[A-Za-z0-9_\-]+$")


def basic_auth(client_id: str, client_secret: str) -> str:
    """Authorization header value for the accounts service"""
    token = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()
    return f"Basic {token}"


def is_valid_user_id(user_id: str) -> bool:
    return bool(USER_ID_RE.match(user_id))


def is_valid_auth_code(code: str) -> bool:
    return bool(AUTH_CODE_RE.match(code))


def client_key(request) -> str:
    """Rate limit key: first X-Forwarded-For hop, or the peer address"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote or "unknown"
