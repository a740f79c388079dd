"""Pending buffer: bounded FIFO of records waiting for window credit."""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Deque, Mapping

logger = logging.getLogger(__name__)

# Logmet mandatory field identifying the data owner
TENANT_ID_KEY = "ALCH_TENANT_ID"
TYPE_KEY = "type"

DEFAULT_MAX_PENDING = 50


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


@dataclass(frozen=True)
class DataRecord:
    """A caller record tagged with its tenant and type; read-only once built."""
    fields: Mapping[str, Any]
    record_type: str
    tenant_id: str
    enqueued_at: float = field(default_factory=time.time, compare=False)

    @classmethod
    def build(cls, data: Mapping[str, Any], record_type: str, tenant_id: str) -> "DataRecord":
        tagged = dict(data)
        tagged[TENANT_ID_KEY] = tenant_id
        tagged[TYPE_KEY] = record_type
        return cls(fields=_freeze(tagged), record_type=record_type, tenant_id=tenant_id)


class PendingBuffer:
    """
    FIFO of records not yet handed to the flow-control window.

    Capacity is fixed at construction. ``offer`` never blocks: it either
    accepts the record or reports that the buffer is saturated, leaving the
    retry/drop decision to the caller.
    """

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING):
        if max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        self.max_pending = max_pending
        self._records: Deque[DataRecord] = deque()

    @property
    def full(self) -> bool:
        return len(self._records) >= self.max_pending

    def offer(self, record: DataRecord) -> bool:
        """Enqueue ``record`` unless the buffer is full."""
        if self.full:
            return False
        self._records.append(record)
        logger.debug(f"Current size of pending data buffer: {len(self._records)}")
        return True

    def popleft(self) -> DataRecord:
        return self._records.popleft()

    def __len__(self) -> int:
        return len(self._records)
