"""
WebSocket session protocol.

    server -> client  {"op": 1, "d": {"heartbeat_interval": ms}}   hello
    client -> server  {"op": 2, "d": "<user id>"}                  subscribe
    client -> server  {"op": 3}                                    heartbeat
    server -> client  {"op": 0, "d": <status>}                     snapshot / update
    server -> client  {"op": 4, "d": "<reason>"}                   fatal error, then close

A session must subscribe within the subscribe deadline and send a heartbeat
at least every 1.5 heartbeat intervals. Anything malformed closes it.
"""
import asyncio
import itertools
import logging
from typing import Optional, Set

from aiohttp import WSCloseCode, WSMsgType, web
from pydantic import ValidationError

from .errors import AlreadySubscribed, SubscribeRejected, UpstreamError
from .schemas import (
    OP_ERROR, OP_HELLO, OP_STATUS, HeartbeatMessage, SubscribeMessage,
    parse_client_message,
)
from .state import SubscriptionRegistry
from .status import Status

logger = logging.getLogger("nowplaying")

HEARTBEAT_GRACE = 1.5

_session_ids = itertools.count(1)


class GatewaySession:
    """One live connection and the timers it owns"""

    def __init__(self, ws: web.WebSocketResponse):
        self.id = next(_session_ids)
        self.ws = ws
        self.closing = False
        self.subscribe_timer: Optional[asyncio.TimerHandle] = None
        self.heartbeat_timer: Optional[asyncio.TimerHandle] = None
        self.subscribe_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    def __repr__(self):
        return f"<GatewaySession {self.id}>"

    async def send(self, op: int, d=None) -> bool:
        """Send a frame unless the session is closing; returns whether it went out"""
        if self.closing or self.ws.closed:
            return False
        frame = {"op": op} if d is None else {"op": op, "d": d}
        await self.ws.send_json(frame)
        return True

    async def send_status(self, status: Status) -> bool:
        return await self.send(OP_STATUS, status.as_dict())

    async def fail(self, reason: str) -> None:
        """Send an error frame and close"""
        if self.closing:
            return
        try:
            await self.send(OP_ERROR, reason)
        except ConnectionResetError:
            pass
        await self.close()

    async def close(self, code: int = WSCloseCode.OK) -> None:
        if self.closing:
            return
        self.closing = True
        self.cancel_timers()
        await self.ws.close(code=code)

    def fail_soon(self, reason: str) -> None:
        """Timer callbacks are synchronous; run fail() as a task"""
        task = asyncio.ensure_future(self.fail(reason))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def cancel_subscribe(self) -> None:
        """Stop an in-flight subscribe so it can no longer register the session"""
        task = self.subscribe_task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait([task])

    def cancel_timers(self) -> None:
        for timer in (self.subscribe_timer, self.heartbeat_timer):
            if timer:
                timer.cancel()
        self.subscribe_timer = None
        self.heartbeat_timer = None


class Gateway:
    """Accepts sessions and runs the protocol against the registry"""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        heartbeat_interval: float,
        subscribe_timeout: float,
    ):
        self.registry = registry
        # seconds
        self.heartbeat_interval = heartbeat_interval
        self.subscribe_timeout = subscribe_timeout
        self.sessions: Set[GatewaySession] = set()

    @property
    def heartbeat_timeout(self) -> float:
        return self.heartbeat_interval * HEARTBEAT_GRACE

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        session = GatewaySession(ws)
        self.sessions.add(session)
        logger.info(f"📡 New websocket connection, current connections: {len(self.sessions)}")

        try:
            await session.send(OP_HELLO, {"heartbeat_interval": int(self.heartbeat_interval * 1000)})
            self._arm_subscribe_deadline(session)
            self._reset_heartbeat(session)

            async for msg in ws:
                if msg.type != WSMsgType.TEXT:
                    logger.debug(f"{session} sent a non-text frame")
                    await session.fail("Bad message")
                    break
                await self._on_message(session, msg.data)
                if session.closing:
                    break
        except ConnectionResetError as e:
            logger.debug(f"{session} connection reset: {e}")
        except Exception:
            logger.exception(f"Unexpected error in {session}")
            await session.fail("Internal error")
        finally:
            session.closing = True
            session.cancel_timers()
            await session.cancel_subscribe()
            self.registry.unsubscribe(session)
            self.sessions.discard(session)
            logger.info(f"📡 Websocket closed, current connections: {len(self.sessions)}")

        return ws

    async def _on_message(self, session: GatewaySession, data: str) -> None:
        try:
            message = parse_client_message(data)
        except ValidationError:
            logger.debug(f"{session} sent a bad message")
            await session.fail("Bad message")
            return

        logger.debug(f"{session} received {message!r}")
        if isinstance(message, HeartbeatMessage):
            self._reset_heartbeat(session)
        elif isinstance(message, SubscribeMessage):
            if session.subscribe_task is not None:
                logger.debug(f"{session} sent a second subscribe")
                await session.fail(AlreadySubscribed.reason)
                return
            # Runs beside the read loop so heartbeats and bad frames are
            # still handled while Spotify answers.
            session.subscribe_task = asyncio.create_task(self._subscribe(session, message.d))

    async def _subscribe(self, session: GatewaySession, user_id: str) -> None:
        # Failures close through fail_soon: the read loop cancels this task
        # once the session closes.
        try:
            status = await self.registry.subscribe(session, user_id)
        except SubscribeRejected as e:
            logger.debug(f"{session} subscribe to {user_id} rejected: {e.reason}")
            session.fail_soon(e.reason)
            return
        except UpstreamError as e:
            logger.error(f"Error fetching status for {user_id}: {e}")
            session.fail_soon("Error fetching user status")
            return
        except Exception:
            logger.exception(f"Unexpected error subscribing {session} to {user_id}")
            session.fail_soon("Error fetching user status")
            return

        if session.subscribe_timer:
            session.subscribe_timer.cancel()
            session.subscribe_timer = None
        try:
            await session.send_status(status)
        except ConnectionResetError as e:
            logger.debug(f"Failed to send snapshot to {session}: {e}")

    def _arm_subscribe_deadline(self, session: GatewaySession) -> None:
        def expire():
            if self.registry.subscription_of(session) is None:
                logger.debug(f"{session} didn't subscribe in time")
                session.fail_soon("No initialization in time")

        session.subscribe_timer = asyncio.get_running_loop().call_later(
            self.subscribe_timeout, expire
        )

    def _reset_heartbeat(self, session: GatewaySession) -> None:
        if session.heartbeat_timer:
            session.heartbeat_timer.cancel()

        def expire():
            logger.debug(f"{session} didn't send heartbeat in time")
            session.fail_soon("No heartbeat received")

        session.heartbeat_timer = asyncio.get_running_loop().call_later(
            self.heartbeat_timeout, expire
        )

    async def broadcast(self, sessions, status: Status) -> int:
        """Send a status update to each session; returns how many went out"""
        sent = 0
        for session in sessions:
            try:
                if await session.send_status(status):
                    sent += 1
            except ConnectionResetError as e:
                logger.debug(f"Failed to send to {session}: {e}")
        return sent

    async def shutdown(self) -> None:
        for session in list(self.sessions):
            await session.close(code=WSCloseCode.GOING_AWAY)
