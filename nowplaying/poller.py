"""
Periodic now-playing poll for every tracked user, pushing changes to the
sessions subscribed to them.
"""
import asyncio
import logging
from typing import Optional

from .errors import UpstreamError
from .gateway import Gateway
from .state import SubscriptionRegistry

logger = logging.getLogger("nowplaying")


class StatusPoller:
    def __init__(self, registry: SubscriptionRegistry, gateway: Gateway, interval: float):
        self.registry = registry
        self.gateway = gateway
        # seconds between the end of one tick and the start of the next
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> None:
        """One pass over the users tracked when the tick starts"""
        for user_id in self.registry.tracked_users():
            try:
                await self.poll_user(user_id)
            except Exception:
                logger.exception(f"Unexpected error polling {user_id}")

    async def poll_user(self, user_id: str) -> int:
        """Refresh one user; returns the number of update frames sent"""
        registry = self.registry
        try:
            credential = await registry.credentials.get(user_id)
        except UpstreamError as e:
            logger.error(f"Error fetching access token for {user_id}: {e}")
            return 0
        if credential is None:
            logger.debug(f"User {user_id} is no longer authorized, skipping")
            return 0

        try:
            status = await registry.fetcher.fetch(user_id, credential)
        except UpstreamError as e:
            logger.error(f"Error fetching status for {user_id}: {e}")
            return 0

        sessions = registry.publish(user_id, status)
        if not sessions:
            return 0
        return await self.gateway.broadcast(sessions, status)

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
