"""
Error types shared by the Spotify integration, the subscription registry and
the session gateway.
"""


class UpstreamError(Exception):
    """Spotify answered with something unexpected; retry on the next cycle"""


class SubscribeRejected(Exception):
    """A subscribe request that must end the session"""

    reason = "Subscribe rejected"


class Unauthorized(SubscribeRejected):
    reason = "User has not authorized the application"


class AlreadySubscribed(SubscribeRejected):
    reason = "Already initialized."
