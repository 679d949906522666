"""Change capture log over the record store.

Reads committed mutations in commit order and tracks how far one consumer
has read. The checkpoint moves only when the consumer acknowledges a batch,
so a pass whose delivery failed is captured again next time.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .protocols import RecordStoreProtocol
from .records import ChangeRecord

__all__ = ["CaptureBatch", "ChangeCaptureLog"]

logger = logging.getLogger(__name__)


@dataclass
class CaptureBatch:
    """Changes read in one capture pass and the checkpoint after them."""

    records: list[ChangeRecord] = field(default_factory=list)
    checkpoint: int = 0
    previous: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.records

    def __len__(self) -> int:
        return len(self.records)


class ChangeCaptureLog:
    """Per-consumer reader of the store's change log."""

    def __init__(self, store: RecordStoreProtocol, consumer: str = "companion", batch_limit: Optional[int] = None):
        self.store = store
        self.consumer = consumer
        self.batch_limit = batch_limit

    @property
    def checkpoint(self) -> int:
        return self.store.get_checkpoint(self.consumer)

    def capture_since(self, checkpoint: int) -> CaptureBatch:
        """Read every change committed after ``checkpoint``."""
        records, position = self.store.fetch_since(checkpoint, limit=self.batch_limit)
        if records:
            logger.debug(f"Captured {len(records)} changes for {self.consumer} ({checkpoint} -> {position})")
        return CaptureBatch(records=records, checkpoint=position, previous=checkpoint)

    def capture(self) -> CaptureBatch:
        """Read changes since this consumer's stored checkpoint."""
        return self.capture_since(self.checkpoint)

    def acknowledge(self, batch: CaptureBatch) -> None:
        """Mark a batch as owned by the consumer, advancing the checkpoint."""
        if batch.checkpoint <= batch.previous:
            return
        self.store.set_checkpoint(self.consumer, batch.checkpoint)
        logger.debug(f"Checkpoint for {self.consumer} advanced to {batch.checkpoint}")
