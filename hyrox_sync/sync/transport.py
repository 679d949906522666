"""Transport channel to the companion device.

Two delivery modes:

* direct: request/reply, only while the peer is reachable
* queued: durable store-and-forward through the outbox

``auto`` tries direct first and falls back to queued with the same message
when the peer is unreachable, times out, or the link fails.
"""

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .errors import TransportUnavailable
from .messages import Message, Reply, encode
from .protocols import PeerLinkProtocol, QueuedLinkProtocol

__all__ = ["DeliveryMode", "SendOutcome", "TransportChannel"]

logger = logging.getLogger(__name__)


class DeliveryMode(str, Enum):
    DIRECT = "direct"
    QUEUED = "queued"
    AUTO = "auto"


@dataclass
class SendOutcome:
    """Result of one send. ``accepted`` means the channel now owns the message."""

    accepted: bool
    mode: Optional[DeliveryMode] = None
    reply: Optional[dict] = None
    error: Optional[str] = None


class TransportChannel:
    """Delivers message envelopes to the companion."""

    def __init__(
        self,
        peer: PeerLinkProtocol,
        outbox: QueuedLinkProtocol,
        completion_executor: Optional[Executor] = None,
    ):
        """Initialize the channel.

        Args:
            peer: Direct link
            outbox: Queued link
            completion_executor: Where ``send_async`` callbacks run (the
                store's execution context). Callbacks run on the sending
                thread when omitted.
        """
        self.peer = peer
        self.outbox = outbox
        self.completion_executor = completion_executor
        self._send_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="transport")
        self._activation_callbacks: list[Callable[[], None]] = []
        self._reachable = False
        self._state_lock = threading.Lock()

    def is_peer_reachable(self) -> bool:
        try:
            return self.peer.is_reachable()
        except TransportUnavailable:
            return False

    def _send_direct(self, payload: dict) -> SendOutcome:
        if not self.is_peer_reachable():
            return SendOutcome(accepted=False, mode=DeliveryMode.DIRECT, error="peer unreachable")
        try:
            reply = self.peer.send_message(payload)
        except TransportUnavailable as e:
            logger.warning(f"Direct delivery failed: {e}")
            return SendOutcome(accepted=False, mode=DeliveryMode.DIRECT, error=str(e))
        return SendOutcome(accepted=True, mode=DeliveryMode.DIRECT, reply=reply)

    def _send_queued(self, payload: dict) -> SendOutcome:
        try:
            self.outbox.enqueue([payload])
        except TransportUnavailable as e:
            logger.error(f"Queued delivery failed: {e}")
            return SendOutcome(accepted=False, mode=DeliveryMode.QUEUED, error=str(e))
        return SendOutcome(accepted=True, mode=DeliveryMode.QUEUED)

    def send(self, message: Message, mode: DeliveryMode = DeliveryMode.AUTO) -> SendOutcome:
        """Send a message, blocking until the channel accepted or refused it."""
        payload = encode(message)

        if mode is DeliveryMode.QUEUED:
            return self._send_queued(payload)

        outcome = self._send_direct(payload)
        if outcome.accepted or mode is DeliveryMode.DIRECT:
            return outcome

        logger.info(f"Falling back to queued delivery for {message.kind.value} message")
        queued = self._send_queued(payload)
        if not queued.accepted:
            queued.error = f"direct: {outcome.error}; queued: {queued.error}"
        return queued

    def send_async(
        self,
        message: Message,
        mode: DeliveryMode = DeliveryMode.AUTO,
        on_complete: Optional[Callable[[SendOutcome], None]] = None,
    ) -> Future:
        """Send without blocking the caller.

        ``on_complete`` is dispatched onto the completion executor.
        """

        def run() -> SendOutcome:
            outcome = self.send(message, mode)
            if on_complete is not None:
                if self.completion_executor is not None:
                    self.completion_executor.submit(on_complete, outcome)
                else:
                    on_complete(outcome)
            return outcome

        return self._send_executor.submit(run)

    def request(self, message: Message) -> Reply:
        """Direct request/reply exchange.

        Raises:
            TransportUnavailable: peer unreachable or no reply
            MalformedMessage: the reply could not be decoded
        """
        if not self.is_peer_reachable():
            raise TransportUnavailable("Companion is not reachable")
        return Reply.from_wire(self.peer.send_message(encode(message)))

    def on_activated(self, callback: Callable[[], None]) -> None:
        """Register a callback for when the peer becomes reachable."""
        self._activation_callbacks.append(callback)

    def check_reachability(self) -> bool:
        """Probe the peer and handle an unreachable -> reachable edge.

        On the edge, the outbox is flushed and activation callbacks run.
        """
        reachable = self.is_peer_reachable()
        with self._state_lock:
            became_reachable = reachable and not self._reachable
            self._reachable = reachable

        if became_reachable:
            logger.info("Companion became reachable")
            self.flush_outbox()
            for callback in list(self._activation_callbacks):
                try:
                    callback()
                except Exception:
                    logger.exception("Activation callback failed")
        return reachable

    def flush_outbox(self):
        """Deliver queued messages now, if the peer is reachable."""
        if self.outbox.is_empty():
            return None
        return self.outbox.flush(self.peer)

    def close(self) -> None:
        self._send_executor.shutdown(wait=True)
