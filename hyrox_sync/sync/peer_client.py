"""HTTP link to the companion device (direct delivery)."""

import logging
from typing import Optional

import requests

from .backoff import PEER_POLICY, BackoffPolicy
from .errors import TransportUnavailable
from .http import JsonHttpClient

__all__ = ["PeerClient"]

logger = logging.getLogger(__name__)


class PeerClient(JsonHttpClient):
    """Posts message envelopes to the companion's message endpoint.

    Any failure to get a reply (unreachable host, timeout, 5xx after retries,
    non-JSON reply) surfaces as ``TransportUnavailable`` so the transport can
    fall back to queued delivery.
    """

    error_class = TransportUnavailable
    DEFAULT_POLICY = PEER_POLICY

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        device_id: Optional[str] = None,
        timeout: float = 5.0,
        policy: Optional[BackoffPolicy] = None,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(
            base_url,
            token=token,
            device_id=device_id,
            timeout=timeout,
            policy=policy,
            session=session,
        )

    def is_reachable(self) -> bool:
        """Check if the companion answers its health endpoint."""
        try:
            self._request("GET", "health", retry=False)
            return True
        except TransportUnavailable:
            return False

    def send_message(self, payload: dict) -> dict:
        """Deliver one envelope and return the peer's reply.

        Raises:
            TransportUnavailable: no reply could be obtained
        """
        reply = self._request("POST", "messages", data=payload)
        if not isinstance(reply, dict):
            raise TransportUnavailable("Peer reply is not an object")
        return reply

