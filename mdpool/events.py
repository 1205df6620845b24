"""Publish/subscribe channel for drive mapping changes."""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List

from .models import DriveMapping


logger = logging.getLogger(__name__)


@dataclass
class DriveChangeEvent:
    """Difference between two consecutive drive mappings, keyed by stable-id name."""
    mapping: DriveMapping
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    changed: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.changed)

    @classmethod
    def between(cls, old: DriveMapping, new: DriveMapping) -> 'DriveChangeEvent':
        old_ids = set(old.by_stable_id)
        new_ids = set(new.by_stable_id)
        changed = sorted(
            stable_id for stable_id in old_ids & new_ids
            if old.by_stable_id[stable_id] != new.by_stable_id[stable_id]
        )
        return cls(
            mapping=new,
            added=sorted(new_ids - old_ids),
            removed=sorted(old_ids - new_ids),
            changed=changed,
        )


Subscriber = Callable[[DriveChangeEvent], None]


class DriveEventBus:
    """Delivers drive change events to every subscriber."""

    def __init__(self):
        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> str:
        """Register a callback and return a token for unsubscribing."""
        token = uuid.uuid4().hex
        with self._lock:
            self._subscribers[token] = callback
        return token

    def unsubscribe(self, token: str) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    def publish(self, event: DriveChangeEvent) -> int:
        """
        Deliver an event synchronously.

        A failing subscriber is logged and skipped.

        Returns:
            Number of subscribers that handled the event without error
        """
        with self._lock:
            subscribers = list(self._subscribers.values())

        delivered = 0
        for callback in subscribers:
            try:
                callback(event)
                delivered += 1
            except Exception:
                logger.exception("Drive change subscriber failed")
        return delivered
