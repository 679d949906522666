"""Sync service: builds the components, wires events, runs the schedules."""

import logging
import signal
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import Config, setup_logging
from .credentials import CLOUD, PEER, CredentialStore
from .session import WorkoutSession
from .sync.capture import ChangeCaptureLog
from .sync.cloud import CloudSyncCoordinator
from .sync.cloud_client import CloudClient
from .sync.conflict import ConflictResolver
from .sync.events import EventBus, RecordsMerged
from .sync.goals import GoalsBroadcaster
from .sync.merge import SOURCE_COMPANION, InboundMergeEngine
from .sync.network import NetworkMonitor
from .sync.outbound import OutboundSyncAgent
from .sync.outbox import Outbox
from .sync.peer_client import PeerClient
from .sync.protocols import CloudStoreProtocol, PeerLinkProtocol, QueuedLinkProtocol, RemoteDocument
from .sync.records import EntityKind
from .sync.router import InboundRouter
from .sync.stats import StatisticsUpdater
from .sync.store import RecordStore
from .sync.transport import TransportChannel

__all__ = ["SyncService", "main"]

logger = logging.getLogger(__name__)


class SyncService:
    """Owns every sync component and the schedules that drive them.

    All store work runs on one single-thread executor (the store context);
    scheduler jobs, transport completions and inbound messages are
    dispatched onto it.
    """

    def __init__(
        self,
        config: Config,
        store: Optional[RecordStore] = None,
        peer: Optional[PeerLinkProtocol] = None,
        outbox: Optional[QueuedLinkProtocol] = None,
        cloud_store: Optional[CloudStoreProtocol] = None,
        scheduler: Optional[BaseScheduler] = None,
        credentials: Optional[CredentialStore] = None,
        network: Optional[NetworkMonitor] = None,
    ):
        self.config = config
        self.device_id = config.device_id
        self.events = EventBus()
        self.scheduler = scheduler or BackgroundScheduler()
        self.store_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="store")

        self.credentials = credentials or CredentialStore()
        if peer is None or cloud_store is None:
            peer_token = self.credentials.token_for(PEER)
            cloud_credentials = self.credentials.load(CLOUD)
        if peer is None:
            peer = PeerClient(
                config.peer.url,
                token=peer_token,
                device_id=self.device_id,
                timeout=config.peer.timeout_seconds,
            )
        if cloud_store is None:
            cloud_store = CloudClient(
                config.cloud.api_url,
                scheduler=self.scheduler,
                poll_interval=config.cloud.poll_interval_seconds,
                token=cloud_credentials.token if cloud_credentials else None,
                device_id=self.device_id,
            )
            if cloud_credentials and cloud_credentials.user_id and not config.cloud.user_id:
                config.cloud.user_id = cloud_credentials.user_id

        self.store = store or RecordStore(device_id=self.device_id)
        self.peer = peer
        self.outbox = outbox or Outbox(
            max_size=config.peer.outbox_max_size,
            max_retries=config.peer.outbox_max_retries,
        )
        self.cloud_store = cloud_store

        self.transport = TransportChannel(self.peer, self.outbox, completion_executor=self.store_executor)
        self.capture = ChangeCaptureLog(self.store, consumer="companion")
        self.merge = InboundMergeEngine(self.store, device_id=self.device_id, events=self.events)
        self.cloud = CloudSyncCoordinator(
            self.store,
            self.cloud_store,
            self.merge,
            resolver=ConflictResolver(),
            user_id=config.cloud.user_id,
            workouts_collection=config.cloud.workouts_collection,
            templates_collection=config.cloud.templates_collection,
            events=self.events,
            statistics=StatisticsUpdater(self.store, self.cloud_store) if config.cloud.update_statistics else None,
        )
        self.goals = GoalsBroadcaster(
            self.store,
            transport=self.transport,
            defaults=config.goals.defaults,
            events=self.events,
        )
        self.outbound = OutboundSyncAgent(
            self.store,
            self.capture,
            self.transport,
            device_id=self.device_id,
            resend_window=config.sync.resend_window_seconds,
            events=self.events,
            merge=self.merge,
            cloud=self.cloud,
        )
        self.router = InboundRouter(
            self.store,
            self.merge,
            self.goals,
            device_id=self.device_id,
            events=self.events,
        )
        self.network = network or NetworkMonitor(
            config.cloud.network_probe_host,
            config.cloud.network_probe_port,
            interval=config.cloud.network_probe_interval_seconds,
        )
        self.session = WorkoutSession(
            self.store,
            self.scheduler,
            self.goals,
            outbound=self.outbound,
            cloud=self.cloud,
            tick_interval=config.session.tick_interval_seconds,
            sample_interval=config.session.sample_interval_seconds,
        )

        self._wire()
        self._started = False
        self._shutdown_done = False

    def _wire(self) -> None:
        self.events.subscribe(RecordsMerged, self._on_records_merged)
        self.network.add_listener(self._on_network_change)
        self.transport.on_activated(self._on_peer_activated)

    # -- Store context ----------------------------------------------------

    def run_on_store(self, fn: Callable[..., Any], *args: Any) -> Future:
        """Dispatch work onto the store's execution context."""
        return self.store_executor.submit(self._safe_call, fn, *args)

    @staticmethod
    def _safe_call(fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except Exception:
            logger.exception(f"Error in {getattr(fn, '__name__', fn)}")
            raise

    def handle_message(self, payload: Any, timeout: float = 30.0) -> dict:
        """Handle an inbound companion message on the store context."""
        return self.store_executor.submit(self.router.handle, payload).result(timeout=timeout)

    def handle_remote_documents(self, documents: list[RemoteDocument], timeout: float = 30.0) -> Any:
        """Merge listener deliveries on the store context.

        Blocks until the merge is done so the listener only moves its cursor
        past documents that were applied.
        """
        return self.run_on_store(self.cloud.handle_remote_documents, documents).result(timeout=timeout)

    # -- Event handlers ---------------------------------------------------

    def _on_records_merged(self, event: RecordsMerged) -> None:
        if event.source != SOURCE_COMPANION:
            return
        refs = [(EntityKind.WORKOUT, workout_id) for workout_id in sorted(event.workout_ids)]
        refs += [(EntityKind.WORKOUT_TEMPLATE, template_id) for template_id in sorted(event.template_ids)]
        if refs and self.cloud.is_connected:
            self.run_on_store(self.cloud.push_batch, refs)

    def _on_network_change(self, online: bool) -> None:
        self.run_on_store(self.cloud.set_connected, online)

    def _on_peer_activated(self) -> None:
        self.goals.broadcast()
        self.outbound.resend_unsent()

    # -- Lifecycle --------------------------------------------------------

    def start(self) -> None:
        """Start listeners and the periodic jobs."""
        if self._started:
            return
        self._started = True

        self.scheduler.add_job(
            lambda: self.run_on_store(self.outbound.push_changes),
            trigger=IntervalTrigger(seconds=self.config.sync.push_interval_seconds),
            id="companion_push_job",
            replace_existing=True,
        )
        self.scheduler.add_job(
            lambda: self.run_on_store(self.transport.check_reachability),
            trigger=IntervalTrigger(seconds=self.config.cloud.network_probe_interval_seconds),
            id="peer_probe_job",
            replace_existing=True,
        )
        self.scheduler.add_job(
            lambda: self.run_on_store(self.cloud.drain_pending),
            trigger=IntervalTrigger(seconds=self.config.sync.cloud_drain_interval_seconds),
            id="cloud_drain_job",
            replace_existing=True,
        )
        self.network.start(self.scheduler)
        self.cloud.start_listeners(self.config.cloud.user_id, callback=self.handle_remote_documents)
        self.scheduler.start()

        self.run_on_store(self.network.check)
        self.run_on_store(self.transport.check_reachability)
        logger.info(
            f"Sync service started (device {self.device_id}, "
            f"push interval {self.config.sync.push_interval_seconds}s)"
        )

    def stop(self) -> None:
        """Stop schedules and release resources. Safe to call multiple times."""
        if self._shutdown_done:
            return
        self._shutdown_done = True
        logger.info("Shutting down sync service...")

        if self.session.active:
            try:
                self.session.end()
            except Exception:
                logger.exception("Failed to end workout session during shutdown")
        self.cloud.stop_listeners()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.transport.close()
        self.store_executor.shutdown(wait=True)
        for resource in (self.outbox, self.store, self.peer, self.cloud_store):
            close = getattr(resource, "close", None)
            if close is not None:
                close()
        logger.info("Sync service stopped")

    def __enter__(self) -> "SyncService":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()


def main() -> None:
    """Main entry point: run the sync service until interrupted."""
    config = Config.load()
    setup_logging(config.debug_mode)
    logger.info("Hyrox Sync starting...")
    logger.info(f"Using cloud API URL: {config.cloud.api_url}")

    stop_event = threading.Event()

    def _signal_handler(signum, frame) -> None:
        logger.info(f"Received signal {signum}")
        stop_event.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    with SyncService(config) as service:
        service.start()
        stop_event.wait()


if __name__ == "__main__":
    main()
