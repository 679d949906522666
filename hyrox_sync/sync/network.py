"""Connectivity monitor: socket probe on a scheduler interval."""

import logging
import socket
import threading
from typing import Callable, Optional

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger

__all__ = ["NetworkMonitor", "probe_host"]

logger = logging.getLogger(__name__)


def probe_host(host: str, port: int, timeout: float = 5.0) -> bool:
    """True if a TCP connection to host:port can be opened."""
    try:
        socket.create_connection((host, port), timeout=timeout).close()
        return True
    except OSError:
        return False


class NetworkMonitor:
    """Polls reachability and reports changes to listeners.

    The first check always reports, so listeners learn the initial state.
    """

    JOB_ID = "network_probe_job"

    def __init__(
        self,
        host: str,
        port: int,
        interval: float = 5,
        probe: Callable[[str, int], bool] = probe_host,
    ):
        self.host = host
        self.port = port
        self.interval = interval
        self._probe = probe
        self._online: Optional[bool] = None
        self._lock = threading.Lock()
        self._listeners: list[Callable[[bool], None]] = []

    @property
    def online(self) -> Optional[bool]:
        return self._online

    def add_listener(self, callback: Callable[[bool], None]) -> None:
        self._listeners.append(callback)

    def check(self) -> bool:
        """Probe once and notify listeners if the state changed."""
        online = self._probe(self.host, self.port)
        with self._lock:
            changed = online != self._online
            self._online = online
        if changed:
            logger.info(f"Network change detected: {'online' if online else 'offline'}")
            for callback in list(self._listeners):
                try:
                    callback(online)
                except Exception:
                    logger.exception(f"Error in network listener {getattr(callback, '__name__', callback)}")
        return online

    def start(self, scheduler: BaseScheduler) -> None:
        scheduler.add_job(
            self.check,
            trigger=IntervalTrigger(seconds=self.interval),
            id=self.JOB_ID,
            replace_existing=True,
        )
        logger.debug(f"Network monitor started (interval: {self.interval}s)")
