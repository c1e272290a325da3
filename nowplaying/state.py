"""
In-memory tracking state: last known Status per tracked user, reference
counts of interested sessions, and each session's single subscription.

A user has a status cache entry exactly while at least one session is
subscribed to them. All mutations are synchronous; the only suspension
points are the Spotify calls made on a subscribe cache miss.
"""
import logging
from typing import Dict, Hashable, List, Optional, Set
from weakref import WeakSet

from .errors import AlreadySubscribed, Unauthorized
from .spotify import CredentialCache, StatusFetcher
from .status import Status

logger = logging.getLogger("nowplaying")


class SubscriptionRegistry:
    def __init__(self, credentials: CredentialCache, fetcher: StatusFetcher):
        self.credentials = credentials
        self.fetcher = fetcher
        # user_id -> last pushed Status
        self.statuses: Dict[str, Status] = {}
        # user_id -> number of subscribed sessions
        self.refcounts: Dict[str, int] = {}
        # session -> user_id
        self.subscriptions: Dict[Hashable, str] = {}
        # sessions that ever subscribed; a session only gets one subscription
        self._subscribed_once: WeakSet = WeakSet()

    def is_tracked(self, user_id: str) -> bool:
        return user_id in self.statuses

    def tracked_users(self) -> List[str]:
        """Snapshot of the users currently tracked"""
        return list(self.refcounts)

    def cached(self, user_id: str) -> Optional[Status]:
        return self.statuses.get(user_id)

    def subscription_of(self, session: Hashable) -> Optional[str]:
        return self.subscriptions.get(session)

    async def fetch(self, user_id: str) -> Status:
        """
        Stateless lookup: cached snapshot if tracked, otherwise a fresh
        fetch. Raises Unauthorized or UpstreamError.
        """
        status = self.cached(user_id)
        if status is not None:
            return status
        credential = await self.credentials.get(user_id)
        if credential is None:
            raise Unauthorized(user_id)
        return await self.fetcher.fetch(user_id, credential)

    async def subscribe(self, session: Hashable, user_id: str) -> Status:
        """
        Subscribe a session to a user and return the current snapshot.

        Raises AlreadySubscribed if the session subscribed before,
        Unauthorized if the user has no usable credential, and lets
        UpstreamError through; nothing is registered in those cases.
        """
        if session in self._subscribed_once:
            raise AlreadySubscribed(user_id)

        status = await self.fetch(user_id)

        if session in self._subscribed_once:
            raise AlreadySubscribed(user_id)
        # Another session may have started tracking this user while we
        # were fetching; keep its snapshot so both see the same content.
        if self.is_tracked(user_id):
            status = self.cached(user_id)
        else:
            self.statuses[user_id] = status
            logger.debug(f"Initial status for {user_id}: {status}")

        self.subscriptions[session] = user_id
        self._subscribed_once.add(session)
        count = self.refcounts.get(user_id, 0)
        if not count:
            logger.info(f"➕ Subscribed to {user_id}")
        self.refcounts[user_id] = count + 1
        return status

    def unsubscribe(self, session: Hashable) -> None:
        user_id = self.subscriptions.pop(session, None)
        if user_id is None:
            return
        count = self.refcounts.get(user_id, 0)
        if count <= 1:
            logger.info(f"➖ Unsubscribed from {user_id}")
            self.refcounts.pop(user_id, None)
            self.statuses.pop(user_id, None)
        else:
            self.refcounts[user_id] = count - 1

    def publish(self, user_id: str, status: Status) -> Set[Hashable]:
        """
        Record a freshly polled status. Returns the sessions to notify, which
        is empty when nothing changed or nobody tracks the user anymore.
        """
        if user_id not in self.refcounts:
            return set()
        if self.statuses.get(user_id) == status:
            return set()
        self.statuses[user_id] = status
        logger.debug(f"New status for {user_id}: {status}")
        return {s for s, u in self.subscriptions.items() if u == user_id}
