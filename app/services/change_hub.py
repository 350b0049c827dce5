"""In-process fan-out of row-level bookmark changes.

Routes publish after every committed insert, update and delete. Each open
change stream owns a queue; only subscribers registered for the row's owner
receive the change.
"""

import json
import logging
import queue
import threading

logger = logging.getLogger(__name__)

EVENT_INSERT = 'INSERT'
EVENT_UPDATE = 'UPDATE'
EVENT_DELETE = 'DELETE'


class Subscription:
    """A single change stream's mailbox."""

    def __init__(self, hub, user_id, maxsize=1000):
        self.hub = hub
        self.user_id = user_id
        self.queue = queue.Queue(maxsize=maxsize)
        self.closed = False

    def get(self, timeout=None):
        """Return the next change, or None when ``timeout`` elapses."""
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self):
        if not self.closed:
            self.closed = True
            self.hub.unsubscribe(self)


class ChangeHub:

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers = {}

    def subscribe(self, user_id):
        sub = Subscription(self, user_id)
        with self._lock:
            self._subscribers.setdefault(user_id, set()).add(sub)
        logger.debug('Change stream opened for user %s', user_id)
        return sub

    def unsubscribe(self, sub):
        with self._lock:
            subs = self._subscribers.get(sub.user_id)
            if subs is None:
                return
            subs.discard(sub)
            if not subs:
                del self._subscribers[sub.user_id]
        logger.debug('Change stream closed for user %s', sub.user_id)

    def subscriber_count(self, user_id=None):
        with self._lock:
            if user_id is not None:
                return len(self._subscribers.get(user_id, ()))
            return sum(len(s) for s in self._subscribers.values())

    def publish(self, event_type, row):
        """Deliver a change to every stream of ``row['user_id']``.

        A full mailbox drops the change for that stream only; delivery is
        best effort and clients recover with a refetch.
        """
        change = {'type': event_type, 'bookmark': row}
        with self._lock:
            targets = list(self._subscribers.get(row.get('user_id'), ()))
        for sub in targets:
            try:
                sub.queue.put_nowait(change)
            except queue.Full:
                logger.warning('Dropping %s change for slow stream of user %s', event_type, sub.user_id)
        return len(targets)


def format_sse(change):
    """Serialize a change as a Server-Sent Events frame."""
    return f"event: {change['type']}\ndata: {json.dumps(change['bookmark'])}\n\n"


hub = ChangeHub()
