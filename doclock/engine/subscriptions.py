"""
DocLock Real-time Subscriptions — snapshot + incremental diff delivery.

Provides:
- ChangeFeed: per-(owner, collection) publish point. Stores publish after
  their transaction commits.
- Subscription: explicit handle returned by the watch_* methods. start()
  delivers the initial snapshot, each later publish delivers only what changed,
  and stop() guarantees no further callbacks.
- ListenerSlot: holds the one live subscription of a screen. Replacing it
  always stops the old handle before the new one starts.

Ordering: publishes and deliveries run under one re-entrant lock per feed, so
every subscription sees its snapshots in commit order with strictly
increasing sequence numbers.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

logger = logging.getLogger("doclock.engine.subscriptions")

FOLDERS = "folders"
DOCUMENTS = "documents"
SECURE_QRS = "secure_qrs"
NOTIFICATIONS = "notifications"
FRIENDS = "friends"
CARDS = "cards"


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class Change(BaseModel):
    type: ChangeType
    item_id: str
    item: Any = None


class Snapshot(BaseModel):
    """One delivery: the full current result plus what changed since the last one."""
    sequence: int
    items: List[Any] = Field(default_factory=list)
    changes: List[Change] = Field(default_factory=list)
    is_initial: bool = False


Listener = Callable[[Snapshot], None]


class ChangeFeed:
    """Routes commit notifications to the subscriptions of one owner/collection."""

    def __init__(self):
        self._lock = threading.RLock()
        self._subscribers: Dict[Tuple[str, str], List["Subscription"]] = defaultdict(list)
        self._sequence = 0

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _register(self, subscription: "Subscription") -> None:
        self._subscribers[subscription.key].append(subscription)

    def _unregister(self, subscription: "Subscription") -> None:
        subs = self._subscribers.get(subscription.key)
        if subs and subscription in subs:
            subs.remove(subscription)
            if not subs:
                del self._subscribers[subscription.key]

    def publish(self, owner_id: str, *collections: str) -> None:
        """Re-run every live subscription of owner_id on the given collections."""
        with self._lock:
            for collection in collections:
                for subscription in list(self._subscribers.get((owner_id, collection), ())):
                    subscription._refresh(self._next_sequence())

    def subscriber_count(self, owner_id: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                len(subs) for (owner, _), subs in self._subscribers.items()
                if owner_id is None or owner == owner_id
            )

    @property
    def lock(self) -> threading.RLock:
        return self._lock


class Subscription:
    """
    Live query handle.

    The query callable returns the current list of items (pydantic views,
    identified by ``id`` unless id_of says otherwise). On every relevant
    publish it is re-run and diffed by identity against the previous result;
    publishes that change nothing deliver nothing.

    Usage:
        with store.watch_folders(uid, parent_id, on_snapshot):
            ...
    """

    def __init__(
        self,
        feed: ChangeFeed,
        owner_id: str,
        collection: str,
        query: Callable[[], List[Any]],
        listener: Listener,
        id_of: Callable[[Any], str] = lambda item: item.id,
    ):
        self._feed = feed
        self._id_of = id_of
        self.owner_id = owner_id
        self.collection = collection
        self._query = query
        self._listener = listener
        self._previous: Dict[str, Any] = {}
        self._active = False
        self._stopped = False
        self.last_sequence = 0

    @property
    def key(self) -> Tuple[str, str]:
        return (self.owner_id, self.collection)

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> "Subscription":
        """Register and deliver the initial snapshot. A handle starts once."""
        with self._feed.lock:
            if self._active or self._stopped:
                raise RuntimeError(f"Subscription on {self.collection} cannot be started twice")
            self._active = True
            self._feed._register(self)
            self._refresh(self._feed._next_sequence(), initial=True)
        return self

    def stop(self) -> None:
        """Unregister. Idempotent; no callback runs after this returns."""
        with self._feed.lock:
            if not self._active:
                self._stopped = True
                return
            self._active = False
            self._stopped = True
            self._feed._unregister(self)
            self._previous = {}

    def __enter__(self) -> "Subscription":
        if not self._active:
            self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def _refresh(self, sequence: int, initial: bool = False) -> None:
        if not self._active:
            return
        items = self._query()
        current = {self._id_of(item): item for item in items}

        changes: List[Change] = []
        for item_id, item in current.items():
            old = self._previous.get(item_id)
            if old is None:
                changes.append(Change(type=ChangeType.ADDED, item_id=item_id, item=item))
            elif old != item:
                changes.append(Change(type=ChangeType.MODIFIED, item_id=item_id, item=item))
        for item_id, old in self._previous.items():
            if item_id not in current:
                changes.append(Change(type=ChangeType.REMOVED, item_id=item_id, item=old))

        if not initial and not changes:
            return

        self._previous = current
        self.last_sequence = sequence
        snapshot = Snapshot(sequence=sequence, items=items, changes=changes, is_initial=initial)
        try:
            self._listener(snapshot)
        except Exception:
            logger.exception(f"Listener for {self.collection}/{self.owner_id} raised")

    def __repr__(self) -> str:
        state = "active" if self._active else "stopped" if self._stopped else "new"
        return f"<Subscription({self.collection}, owner={self.owner_id!r}, {state})>"


class ListenerSlot:
    """
    Holds at most one live subscription.

    Navigation swaps handles through ``replace()``, which stops the current
    handle before starting the next, so updates for the previous folder can
    never arrive after the new one is shown.
    """

    def __init__(self):
        self._current: Optional[Subscription] = None
        self._lock = threading.Lock()

    @property
    def current(self) -> Optional[Subscription]:
        return self._current

    def replace(self, subscription: Subscription) -> Subscription:
        with self._lock:
            if self._current is not None:
                self._current.stop()
            self._current = subscription
            if not subscription.active:
                subscription.start()
            return subscription

    def clear(self) -> None:
        with self._lock:
            if self._current is not None:
                self._current.stop()
                self._current = None


_default_feed: Optional[ChangeFeed] = None


def get_change_feed() -> ChangeFeed:
    """Process-wide feed shared by stores that are not given one explicitly."""
    global _default_feed
    if _default_feed is None:
        _default_feed = ChangeFeed()
    return _default_feed
