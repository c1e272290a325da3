"""
Environment configuration, validated once at startup
"""
import os
from pathlib import Path

from pydantic import BaseModel, Field


class Settings(BaseModel):
    port: int = 3000
    host: str = "0.0.0.0"
    callback_url: str
    client_id: str
    client_secret: str
    # Poll loop period, milliseconds
    update_interval: int = Field(default=5000, gt=0)
    heartbeat_interval: int = Field(default=15000, gt=0)
    subscribe_timeout: int = Field(default=10000, gt=0)
    # Total time allowed for one Spotify request, milliseconds
    upstream_timeout: int = Field(default=10000, gt=0)
    data_dir: Path = Path("./data")
    static_dir: Path = Path("./public")
    accounts_url: str = "https://accounts.spotify.com"
    api_url: str = "https://api.spotify.com"
    dev: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (raises ValidationError)"""
        env = {
            "port": os.environ.get("PORT"),
            "host": os.environ.get("SERVER_HOST"),
            "callback_url": os.environ.get("CALLBACK_URL"),
            "client_id": os.environ.get("CLIENT_ID"),
            "client_secret": os.environ.get("CLIENT_SECRET"),
            "update_interval": os.environ.get("UPDATE_INTERVAL"),
            "heartbeat_interval": os.environ.get("HEARTBEAT_INTERVAL"),
            "subscribe_timeout": os.environ.get("SUBSCRIBE_TIMEOUT"),
            "upstream_timeout": os.environ.get("UPSTREAM_TIMEOUT"),
            "data_dir": os.environ.get("DATA_DIR"),
            "static_dir": os.environ.get("STATIC_DIR"),
            "accounts_url": os.environ.get("SPOTIFY_ACCOUNTS_URL"),
            "api_url": os.environ.get("SPOTIFY_API_URL"),
            "dev": os.environ.get("DEV") == "true",
        }
        return cls(**{k: v for k, v in env.items() if v is not None})
