"""Document-store interfaces for the roster and user profiles.

The real stores are external services. The in-memory implementations here
mirror their observable behaviour (store-assigned ids, server timestamps,
full-snapshot change notifications) and back development and tests.
"""

import copy
import logging
import operator
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from student_dashboard.errors import RecordNotFoundError, SubscriptionError

logger = logging.getLogger(__name__)

ChangeListener = Callable[[List[Dict[str, Any]]], None]
Unsubscribe = Callable[[], None]

QUERY_OPERATORS = {
    '==': operator.eq,
    '!=': operator.ne,
    '<': operator.lt,
    '<=': operator.le,
    '>': operator.gt,
    '>=': operator.ge,
    'in': lambda field_value, values: field_value in values,
}


def server_timestamp() -> datetime:
    return datetime.now(timezone.utc)


class RosterStore(ABC):
    """Remote collection of student documents."""

    @abstractmethod
    def add(self, record: Dict[str, Any]) -> str:
        """Insert a document and return its store-assigned id."""

    @abstractmethod
    def set(self, record_id: str, record: Dict[str, Any]) -> None:
        """Overwrite a whole document."""

    @abstractmethod
    def update(self, record_id: str, fields: Dict[str, Any]) -> None:
        """Patch selected fields of a document."""

    @abstractmethod
    def delete(self, record_id: str) -> None:
        ...

    @abstractmethod
    def subscribe(self, on_change: ChangeListener) -> Unsubscribe:
        """Listen for changes. ``on_change`` receives every document each time."""

    @abstractmethod
    def query(self, field: str, op: str, value: Any) -> List[Dict[str, Any]]:
        ...


class InMemoryRosterStore(RosterStore):
    """
    Process-local roster collection.

    ``auth_check`` mimics the remote store's security rules: subscriptions
    are refused while it returns False.
    """

    def __init__(self, auth_check: Optional[Callable[[], bool]] = None):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._listeners: List[ChangeListener] = []
        self._next_id = 1
        self._auth_check = auth_check

    def _documents(self) -> List[Dict[str, Any]]:
        return [{'id': doc_id, **copy.deepcopy(doc)} for doc_id, doc in self._docs.items()]

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._documents())
            except Exception:
                # The write is already committed
                logger.exception("Roster listener failed")

    def add(self, record: Dict[str, Any]) -> str:
        record_id = f"{self._next_id:06d}"
        self._next_id += 1

        doc = copy.deepcopy(record)
        doc.pop('id', None)
        doc['createdAt'] = server_timestamp()
        self._docs[record_id] = doc
        logger.debug("Added student %s", record_id)

        self._notify()
        return record_id

    def set(self, record_id: str, record: Dict[str, Any]) -> None:
        doc = copy.deepcopy(record)
        doc.pop('id', None)
        existing = self._docs.get(record_id)
        doc['createdAt'] = existing.get('createdAt') if existing else server_timestamp()
        self._docs[record_id] = doc
        self._notify()

    def update(self, record_id: str, fields: Dict[str, Any]) -> None:
        if record_id not in self._docs:
            raise RecordNotFoundError(f"No student with id {record_id}")
        self._docs[record_id].update(copy.deepcopy(fields))
        self._notify()

    def delete(self, record_id: str) -> None:
        if record_id not in self._docs:
            raise RecordNotFoundError(f"No student with id {record_id}")
        del self._docs[record_id]
        logger.debug("Deleted student %s", record_id)
        self._notify()

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(record_id)
        if doc is None:
            return None
        return {'id': record_id, **copy.deepcopy(doc)}

    def subscribe(self, on_change: ChangeListener) -> Unsubscribe:
        if self._auth_check is not None and not self._auth_check():
            raise SubscriptionError("Missing or insufficient permissions.")

        self._listeners.append(on_change)
        # Initial snapshot, like a live query
        on_change(self._documents())

        def unsubscribe() -> None:
            if on_change in self._listeners:
                self._listeners.remove(on_change)

        return unsubscribe

    def query(self, field: str, op: str, value: Any) -> List[Dict[str, Any]]:
        if op not in QUERY_OPERATORS:
            raise ValueError(f"Unsupported query operator: {op}")
        compare = QUERY_OPERATORS[op]

        results = []
        for doc in self._documents():
            if field not in doc:
                continue
            try:
                if compare(doc[field], value):
                    results.append(doc)
            except TypeError:
                # Mixed types never match, as in the remote store
                continue
        return results

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


class ProfileStore(ABC):
    """User profiles keyed by identity-provider user id."""

    @abstractmethod
    def get(self, uid: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def set(self, uid: str, profile: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def update(self, uid: str, fields: Dict[str, Any]) -> None:
        ...


class InMemoryProfileStore(ProfileStore):

    def __init__(self):
        self._profiles: Dict[str, Dict[str, Any]] = {}

    def get(self, uid: str) -> Optional[Dict[str, Any]]:
        profile = self._profiles.get(uid)
        return copy.deepcopy(profile) if profile is not None else None

    def set(self, uid: str, profile: Dict[str, Any]) -> None:
        self._profiles[uid] = copy.deepcopy(profile)

    def update(self, uid: str, fields: Dict[str, Any]) -> None:
        if uid not in self._profiles:
            raise RecordNotFoundError(f"No profile for user {uid}")
        self._profiles[uid].update(copy.deepcopy(fields))
