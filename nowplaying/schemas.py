"""
Validation schemas for untrusted payloads: session frames from clients and
responses from the Spotify accounts/web APIs.
"""
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# ============================================================
# SESSION FRAMES (client -> server)
# ============================================================

OP_STATUS = 0
OP_HELLO = 1
OP_SUBSCRIBE = 2
OP_HEARTBEAT = 3
OP_ERROR = 4


class SubscribeMessage(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid")

    op: Literal[2]
    d: Annotated[str, Field(min_length=1, max_length=32)]


class HeartbeatMessage(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid")

    op: Literal[3]


ClientMessage = Annotated[
    Union[SubscribeMessage, HeartbeatMessage],
    Field(discriminator="op"),
]

client_message_adapter = TypeAdapter(ClientMessage)


def parse_client_message(raw: str) -> Union[SubscribeMessage, HeartbeatMessage]:
    """Parse a text frame; raises pydantic.ValidationError on anything else"""
    return client_message_adapter.validate_json(raw)


# ============================================================
# SPOTIFY RESPONSES
# ============================================================

class TokenResponse(BaseModel):
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None


class UserResponse(BaseModel):
    id: str
    display_name: str


class Image(BaseModel):
    url: str


class Album(BaseModel):
    name: str
    images: List[Image]


class Artist(BaseModel):
    name: str


class Item(BaseModel):
    id: str
    name: str
    album: Album
    artists: List[Artist]
    duration_ms: int


class CurrentlyPlayingResponse(BaseModel):
    currently_playing_type: Literal["track", "episode", "ad", "unknown"]
    is_playing: bool
    progress_ms: Optional[int] = None
    item: Optional[Item] = None
