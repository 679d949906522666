"""Sync module - companion device and cloud synchronization."""

from .capture import CaptureBatch, ChangeCaptureLog
from .cloud import CloudSyncCoordinator, DrainStats
from .cloud_client import CloudClient
from .conflict import ConflictResolver, Resolution
from .errors import CloudWriteFailure, MalformedMessage, MergeTargetMissing, SyncError, TransportUnavailable
from .events import EventBus
from .goals import GoalsBroadcaster
from .merge import InboundMergeEngine, MergeResult
from .network import NetworkMonitor
from .outbound import OutboundSyncAgent, PushResult
from .outbox import Outbox
from .peer_client import PeerClient
from .protocols import CloudStoreProtocol, PeerLinkProtocol, QueuedLinkProtocol, RecordStoreProtocol
from .records import ChangeRecord, ChangeType, EntityKind, SyncableRecord, SyncStatus
from .router import InboundRouter
from .stats import StatisticsUpdater
from .store import RecordStore
from .transport import DeliveryMode, SendOutcome, TransportChannel

__all__ = [
    "CaptureBatch",
    "ChangeCaptureLog",
    "CloudSyncCoordinator",
    "DrainStats",
    "CloudClient",
    "ConflictResolver",
    "Resolution",
    "SyncError",
    "TransportUnavailable",
    "MalformedMessage",
    "MergeTargetMissing",
    "CloudWriteFailure",
    "EventBus",
    "GoalsBroadcaster",
    "InboundMergeEngine",
    "MergeResult",
    "NetworkMonitor",
    "OutboundSyncAgent",
    "PushResult",
    "Outbox",
    "PeerClient",
    "CloudStoreProtocol",
    "PeerLinkProtocol",
    "QueuedLinkProtocol",
    "RecordStoreProtocol",
    "ChangeRecord",
    "ChangeType",
    "EntityKind",
    "SyncableRecord",
    "SyncStatus",
    "InboundRouter",
    "StatisticsUpdater",
    "RecordStore",
    "DeliveryMode",
    "SendOutcome",
    "TransportChannel",
]
