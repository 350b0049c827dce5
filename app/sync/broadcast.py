"""Same-device fan-out between open bookmark views ("tabs").

Mirrors the browser BroadcastChannel contract: a message posted on one
channel reaches every *other* open channel with the same name, never the
sender, and each receiver handles it on its own event loop.
"""

import asyncio
import json
import logging
import threading

from .errors import MalformedEvent
from .events import parse_message, to_message

logger = logging.getLogger(__name__)


class BroadcastHub:
    """Registry of open channels, keyed by name."""

    def __init__(self):
        self._lock = threading.Lock()
        self._channels = {}

    def _register(self, channel):
        with self._lock:
            self._channels.setdefault(channel.name, set()).add(channel)

    def _unregister(self, channel):
        with self._lock:
            peers = self._channels.get(channel.name)
            if peers is not None:
                peers.discard(channel)
                if not peers:
                    del self._channels[channel.name]

    def peers(self, channel):
        with self._lock:
            return [c for c in self._channels.get(channel.name, ()) if c is not channel]

    def channel_count(self, name):
        with self._lock:
            return len(self._channels.get(name, ()))


default_hub = BroadcastHub()


class BroadcastChannel:

    def __init__(self, name, loop=None, hub=None):
        self.name = name
        self.loop = loop or asyncio.get_running_loop()
        self.hub = hub or default_hub
        self.closed = False
        self._listeners = []
        self.hub._register(self)

    def add_listener(self, listener):
        self._listeners.append(listener)

    def post_message(self, message):
        """Deliver a copy of ``message`` to every other open channel.

        Messages must be JSON-serializable; each receiver gets its own copy.
        """
        if self.closed:
            raise RuntimeError(f'channel {self.name!r} is closed')
        encoded = json.dumps(message)
        delivered = 0
        for peer in self.hub.peers(self):
            try:
                peer.loop.call_soon_threadsafe(peer._receive, json.loads(encoded))
                delivered += 1
            except RuntimeError:
                logger.debug('Skipping channel on a closed loop')
        return delivered

    def _receive(self, message):
        if self.closed:
            return
        for listener in list(self._listeners):
            listener(message)

    def close(self):
        if not self.closed:
            self.closed = True
            self._listeners.clear()
            self.hub._unregister(self)


class LocalBroadcastRelay:
    """Event source over a BroadcastChannel, filtered to one user."""

    source = 'broadcast'

    def __init__(self, name='bookmarks', hub=None):
        self.name = name
        self.hub = hub or default_hub
        self._channel = None
        self._user_id = None

    @property
    def user_id(self):
        return self._user_id

    def open(self, user_id, callback, loop=None):
        self.close()
        channel = BroadcastChannel(self.name, loop=loop, hub=self.hub)

        def on_message(message):
            try:
                event = parse_message(message, source=self.source)
            except MalformedEvent as e:
                logger.error('Dropping malformed broadcast message: %s', e)
                return
            if event.user_id != user_id:
                return
            callback(event)

        channel.add_listener(on_message)
        self._channel = channel
        self._user_id = user_id

    def publish(self, event):
        """Tell the other views about a local mutation."""
        message = to_message(event)
        try:
            if self._channel is not None:
                return self._channel.post_message(message)
            channel = BroadcastChannel(self.name, hub=self.hub)
            try:
                return channel.post_message(message)
            finally:
                channel.close()
        except (RuntimeError, TypeError, ValueError) as e:
            logger.warning('Broadcast of %s failed: %s', event.kind, e)
            return 0

    def close(self):
        channel, self._channel = self._channel, None
        self._user_id = None
        if channel is not None:
            channel.close()
