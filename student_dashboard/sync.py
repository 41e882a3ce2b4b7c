"""Live mirror of the remote roster.

The store pushes the complete collection on every change. ``SyncChannel``
validates it, replaces the local ``RosterMirror`` and hands the same full
snapshot to every registered consumer, so consumers re-render from scratch
instead of patching.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from student_dashboard.errors import SubscriptionError
from student_dashboard.models import StudentRecord
from student_dashboard.store import RosterStore, Unsubscribe

logger = logging.getLogger(__name__)

NOT_SYNCED = 'not synced'
LIVE_SYNCED = 'live synced'

SnapshotConsumer = Callable[[List[StudentRecord]], None]


def record_sort_key(record: StudentRecord) -> Tuple[int, int, str]:
    """Ascending id; numeric ids compare as numbers."""
    if record.id.isdigit():
        return (0, int(record.id), record.id)
    return (1, 0, record.id)


class RosterMirror:
    """Local copy of the roster. ``replace`` is the only writer."""

    def __init__(self):
        self._records: Tuple[StudentRecord, ...] = ()
        self._by_id: Dict[str, StudentRecord] = {}
        self.version = 0

    def replace(self, records: Iterable[StudentRecord]) -> None:
        ordered = tuple(sorted(records, key=record_sort_key))
        self._records = ordered
        self._by_id = {record.id: record for record in ordered}
        self.version += 1

    def snapshot(self) -> Tuple[StudentRecord, ...]:
        return self._records

    def find(self, record_id: str) -> Optional[StudentRecord]:
        return self._by_id.get(record_id)

    def __len__(self) -> int:
        return len(self._records)


class SyncChannel:
    """Standing subscription on a ``RosterStore`` with snapshot fan-out."""

    def __init__(self, store: RosterStore, mirror: Optional[RosterMirror] = None):
        self._store = store
        self.mirror = mirror or RosterMirror()
        self._consumers: List[SnapshotConsumer] = []
        self._unsubscribe: Optional[Unsubscribe] = None
        self.status = NOT_SYNCED

    @property
    def running(self) -> bool:
        return self._unsubscribe is not None

    def add_consumer(self, consumer: SnapshotConsumer) -> None:
        if consumer not in self._consumers:
            self._consumers.append(consumer)
            # Late joiners get the current state straight away
            if self.status == LIVE_SYNCED:
                consumer(list(self.mirror.snapshot()))

    def remove_consumer(self, consumer: SnapshotConsumer) -> None:
        if consumer in self._consumers:
            self._consumers.remove(consumer)

    @property
    def consumer_count(self) -> int:
        return len(self._consumers)

    def start(self, on_snapshot: Optional[SnapshotConsumer] = None) -> bool:
        """
        Subscribe to the store.

        Args:
            on_snapshot: Optional consumer to register before subscribing

        Returns:
            True when the subscription is live. A refused subscription
            leaves the channel "not synced" and fires no callback.
        """
        if on_snapshot is not None and on_snapshot not in self._consumers:
            self._consumers.append(on_snapshot)

        if self.running:
            return True

        logger.info("Starting real-time sync")
        try:
            self._unsubscribe = self._store.subscribe(self._handle_change)
        except SubscriptionError as e:
            logger.warning("Roster subscription refused: %s", e.message)
            self.status = NOT_SYNCED
            return False
        return True

    def stop(self) -> None:
        if self._unsubscribe is None:
            return
        self._unsubscribe()
        self._unsubscribe = None
        self.status = NOT_SYNCED
        logger.info("Stopped real-time sync")

    def _handle_change(self, documents: Sequence[dict]) -> None:
        records = []
        for doc in documents:
            try:
                records.append(StudentRecord.model_validate(doc))
            except ValidationError as e:
                logger.error("Skipping malformed student document %s: %s", doc.get('id'), e)

        self.mirror.replace(records)
        self.status = LIVE_SYNCED

        snapshot = self.mirror.snapshot()
        for consumer in list(self._consumers):
            try:
                consumer(list(snapshot))
            except Exception:
                logger.exception("Snapshot consumer %r failed", consumer)
