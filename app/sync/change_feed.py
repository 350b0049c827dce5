"""Change feed subscriber: the store's per-user push stream.

The store exposes row changes as Server-Sent Events. A daemon thread reads
the stream and hands each decoded event to the owning asyncio loop, so
callbacks always run on the loop that opened the subscription.
"""

import asyncio
import json
import logging
import threading

from .errors import SyncError, MalformedEvent
from .events import parse_event

logger = logging.getLogger(__name__)


def iter_sse(lines):
    """Yield ``(event, data)`` pairs from an iterable of SSE lines.

    Comment lines (``:``) are skipped. Multi-line ``data`` fields are joined
    with newlines. Frames without data are ignored.
    """
    event, data = 'message', []
    for line in lines:
        if isinstance(line, bytes):
            line = line.decode('utf-8')
        if not line:
            if data:
                yield event, '\n'.join(data)
            event, data = 'message', []
            continue
        if line.startswith(':'):
            continue
        field, _, value = line.partition(':')
        if value.startswith(' '):
            value = value[1:]
        if field == 'event':
            event = value
        elif field == 'data':
            data.append(value)
    if data:
        yield event, '\n'.join(data)


class _Subscription:

    def __init__(self, user_id, callback, loop):
        self.user_id = user_id
        self.callback = callback
        self.loop = loop
        self.active = True
        self.response = None
        self.thread = None
        self._lock = threading.Lock()

    def attach(self, response):
        """Remember the open response; False if already torn down."""
        with self._lock:
            if not self.active:
                return False
            self.response = response
            return True

    def cancel(self):
        with self._lock:
            self.active = False
            response, self.response = self.response, None
        if response is not None:
            response.close()


class ChangeFeedSubscriber:
    """One live subscription at a time, re-opened on every user change."""

    source = 'feed'

    def __init__(self, store_client):
        self.store = store_client
        self._sub = None

    @property
    def user_id(self):
        return self._sub.user_id if self._sub else None

    def open(self, user_id, callback, loop=None):
        """Subscribe to ``user_id``'s changes, tearing down any previous one."""
        self.close()
        if loop is None:
            loop = asyncio.get_running_loop()
        sub = _Subscription(user_id, callback, loop)
        sub.thread = threading.Thread(
            target=self._run,
            args=(sub,),
            name=f'change-feed-{user_id}',
            daemon=True,
        )
        self._sub = sub
        sub.thread.start()
        logger.info('Change feed opened for user %s', user_id)

    def close(self):
        sub, self._sub = self._sub, None
        if sub is not None:
            sub.cancel()
            logger.info('Change feed closed for user %s', sub.user_id)

    def _run(self, sub):
        try:
            response = self.store.open_change_stream(sub.user_id)
        except SyncError as e:
            logger.error('Change feed for user %s could not connect: %s', sub.user_id, e)
            return
        if not sub.attach(response):
            response.close()
            return

        try:
            for event_name, data in iter_sse(response.iter_lines(decode_unicode=True)):
                if not sub.active:
                    break
                self._dispatch(sub, event_name, data)
        except Exception as e:
            # Closing the response from another thread surfaces here
            if sub.active:
                logger.warning('Change feed for user %s dropped: %s', sub.user_id, e)
        finally:
            response.close()

    def _dispatch(self, sub, event_name, data):
        try:
            event = parse_event(event_name, json.loads(data), source=self.source)
        except (MalformedEvent, ValueError) as e:
            logger.error('Dropping malformed change feed event: %s', e)
            return
        try:
            sub.loop.call_soon_threadsafe(self._deliver, sub, event)
        except RuntimeError:
            # Loop already closed
            sub.active = False

    @staticmethod
    def _deliver(sub, event):
        if sub.active:
            sub.callback(event)
