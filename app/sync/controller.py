"""Bookmark list controller.

Owns the in-memory, newest-first list of the signed-in user's bookmarks and
keeps it consistent across three unordered inputs:

  1. paginated fetches from the collection store
  2. the store's change feed (other devices, and echoes of our own writes)
  3. the local broadcast relay (other views on this device)

All state lives on one asyncio loop. Network calls run in worker threads
via ``asyncio.to_thread``; everything else, including ``reconcile``, runs on
the loop, so no locking is needed. Correctness under reordering and
duplicates comes from ``reconcile`` being idempotent and keyed on id.

Known approximation: after deletes the pagination offset is not maintained
exactly. Once the loaded list is small enough (at most two pages) a delete
triggers a refetch from page 1, which resynchronizes the cursor with the
store's row count.
"""

import asyncio
import logging
from dataclasses import dataclass

from app.services.validation import is_valid_url
from .errors import (
    SyncError,
    ValidationError,
    FILL_ALL_FIELDS,
    INVALID_URL,
    LOGIN_REQUIRED,
    NOT_AUTHENTICATED,
    read_error_message,
    insert_error_message,
    delete_error_message,
)
from .events import Bookmark, ChangeEvent, INSERT, UPDATE, DELETE, parse_message

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10


def validate_bookmark(title, url):
    """Return trimmed ``(title, url)`` or raise ValidationError."""
    title = (title or '').strip()
    url = (url or '').strip()
    if not title or not url:
        raise ValidationError(FILL_ALL_FIELDS)
    if not is_valid_url(url):
        raise ValidationError(INVALID_URL)
    return title, url


@dataclass
class MutationResult:
    success: bool
    bookmark: Bookmark | None = None
    error: str = ''


class BookmarkListController:

    def __init__(self, store, page_size=DEFAULT_PAGE_SIZE, feed=None, relay=None, init_gate=None):
        """
        Args:
            store: a RemoteStoreClient (or anything with the same methods).
            page_size: rows per page; also sets the 2x bounds used by
                reconcile.
            feed: ChangeFeedSubscriber, opened per user.
            relay: LocalBroadcastRelay, opened per user and used to
                announce local mutations to other views.
            init_gate: OneShotGate awaited before the first store call.
        """
        self.store = store
        self.page_size = page_size
        self.feed = feed
        self.relay = relay
        self.init_gate = init_gate

        self.user_id = None
        self.page = 1
        self.has_more = True
        self.error = ''

        self._items = []
        self._ids = set()
        self._in_flight = 0
        # Bumped whenever the page cursor is rewound; pages fetched under an
        # older value no longer line up with the list.
        self._cursor = 0
        self._tasks = set()
        self._session = None
        self._unsubscribe = None

    # ------------------------------------------------------------------
    # Presentation-facing state
    # ------------------------------------------------------------------

    @property
    def bookmarks(self):
        return list(self._items)

    @property
    def loading(self):
        return self._in_flight > 0

    @property
    def sources(self):
        return [s for s in (self.feed, self.relay) if s is not None]

    def __len__(self):
        return len(self._items)

    def __contains__(self, bookmark_id):
        return bookmark_id in self._ids

    def snapshot(self):
        return {
            'bookmarks': [b.to_row() for b in self._items],
            'loading': self.loading,
            'error': self.error,
            'has_more': self.has_more,
            'page': self.page,
        }

    # ------------------------------------------------------------------
    # Session wiring
    # ------------------------------------------------------------------

    def bind(self, session):
        """Follow ``session``: every identity change resets the list.

        Must be called from the loop that will own this controller.
        """
        if self._unsubscribe is not None:
            self._unsubscribe()
        self._session = session
        self._unsubscribe = session.subscribe(self._on_identity_change)
        return self._spawn(self._switch_user(session.user_id))

    def _on_identity_change(self, user_id):
        self._spawn(self._switch_user(user_id))

    async def _switch_user(self, user_id):
        loop = asyncio.get_running_loop()
        for source in self.sources:
            if user_id is None:
                source.close()
            else:
                source.open(user_id, self.reconcile, loop=loop)
        await self.reset(user_id)

    async def close(self):
        """Stop listening to the session and every event source."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for source in self.sources:
            source.close()
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self):
        """Wait for background work (identity switches, refetches) to settle."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def _ensure_ready(self):
        if self.init_gate is None:
            return
        try:
            await self.init_gate.ensure_ready()
        except SyncError as e:
            # The store may already be provisioned; let the real call decide
            logger.info('Store initialization skipped: %s', e)

    def _clear(self):
        self._items = []
        self._ids = set()

    async def reset(self, user_id):
        """Forget everything and load page 1 for ``user_id`` (None = signed out)."""
        self.user_id = user_id
        self._clear()
        self._cursor += 1
        self.page = 1
        self.has_more = True
        self.error = ''
        if user_id is None:
            logger.info('No user - clearing bookmarks')
            return
        await self.fetch_page(1, replace=True)

    async def refetch(self):
        """Reload from page 1, replacing the list once the response arrives."""
        if self.user_id is None:
            return False
        self._cursor += 1
        self.page = 1
        self.has_more = True
        return await self.fetch_page(1, replace=True)

    async def fetch_page(self, page, replace=False):
        """Fetch one page and merge it into the list.

        Returns True on success. On failure ``error`` is set and the list is
        left exactly as it was. A result that arrives after the user changed
        or the cursor was rewound (reset, refetch, trim) is discarded.
        """
        user_id = self.user_id
        if user_id is None:
            return False

        cursor = self._cursor
        offset = (page - 1) * self.page_size
        self._in_flight += 1
        try:
            await self._ensure_ready()
            logger.debug('Fetching bookmarks for user %s: page=%s offset=%s', user_id, page, offset)
            result = await asyncio.to_thread(self.store.list_page, user_id, offset, self.page_size)
        except SyncError as e:
            if user_id == self.user_id and cursor == self._cursor:
                self.error = read_error_message(e)
            logger.error('Fetching page %s for user %s failed: %s', page, user_id, e)
            return False
        finally:
            self._in_flight -= 1

        if user_id != self.user_id:
            logger.debug('Discarding page %s fetched for previous user %s', page, user_id)
            return False
        if cursor != self._cursor:
            logger.debug('Discarding page %s fetched before the cursor moved', page)
            return False

        rows = [b for b in result.rows if b.user_id == user_id]
        if replace:
            self._clear()
        for bookmark in rows:
            if bookmark.id not in self._ids:
                self._items.append(bookmark)
                self._ids.add(bookmark.id)

        returned = len(result.rows)
        if result.total_count is not None:
            self.has_more = (offset + returned) < result.total_count
        else:
            self.has_more = returned == self.page_size
        self.error = ''
        logger.info(
            'Loaded %s bookmarks (page %s, total %s, has_more=%s)',
            returned, page, result.total_count, self.has_more,
        )
        return True

    async def load_more(self):
        """Fetch the next page. No-op while loading, at the end, or signed out.

        Callers driving this from scroll position should still debounce;
        ``loading`` is only a soft lock.
        """
        if self.loading or not self.has_more or self.user_id is None:
            return False
        previous, cursor = self.page, self._cursor
        self.page = previous + 1
        ok = await self.fetch_page(self.page, replace=False)
        if not ok and cursor == self._cursor:
            self.page = previous
        return ok

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add_bookmark(self, title, url):
        """Save a bookmark for the current user.

        The new row is not inserted locally; it arrives through the change
        feed (this view) and the relay (other views), and reconcile drops
        whichever copy comes second.
        """
        user_id = self.user_id
        if user_id is None:
            return MutationResult(False, error=LOGIN_REQUIRED)

        try:
            title, url = validate_bookmark(title, url)
        except ValidationError as e:
            return MutationResult(False, error=str(e))

        await self._ensure_ready()
        try:
            bookmark = await asyncio.to_thread(self.store.insert, user_id, title, url)
        except SyncError as e:
            logger.error('Adding bookmark failed: %s', e)
            return MutationResult(False, error=insert_error_message(e))

        logger.info('Bookmark added: %s', bookmark.id)
        self._announce(ChangeEvent(INSERT, bookmark.id, bookmark.user_id, bookmark))
        return MutationResult(True, bookmark=bookmark)

    async def delete_bookmark(self, bookmark_id):
        """Delete one of the current user's bookmarks.

        The store call is scoped to (id, user), so guessing another user's
        id fails remotely and the list stays untouched. On success the row
        is removed locally right away and other views are told.
        """
        user_id = self.user_id
        if user_id is None:
            return MutationResult(False, error=NOT_AUTHENTICATED)

        try:
            await asyncio.to_thread(self.store.delete, bookmark_id, user_id)
        except SyncError as e:
            logger.error('Deleting bookmark %s failed: %s', bookmark_id, e)
            return MutationResult(False, error=delete_error_message(e))

        logger.info('Bookmark deleted: %s', bookmark_id)
        if user_id == self.user_id:
            self._apply_delete(bookmark_id)
        self._announce(ChangeEvent(DELETE, bookmark_id, user_id))
        return MutationResult(True)

    def _announce(self, event):
        if self.relay is not None:
            self.relay.publish(event)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, event):
        """Apply one change event. Idempotent; safe in any order.

        Accepts a ChangeEvent or a raw relay message. A bad event is logged
        and dropped, never raised.
        """
        try:
            if isinstance(event, dict):
                event = parse_message(event, source='raw')
            self._reconcile(event)
        except Exception:
            logger.exception('Dropping change event %r', event)

    def _reconcile(self, event):
        if self.user_id is None:
            return
        # A stale subscription can still deliver the previous user's rows
        if event.user_id is not None and event.user_id != self.user_id:
            logger.debug('Ignoring %s for user %s', event.kind, event.user_id)
            return

        if event.kind == INSERT:
            self._apply_insert(event.bookmark)
        elif event.kind == UPDATE:
            self._apply_update(event.bookmark)
        elif event.kind == DELETE:
            self._apply_delete(event.bookmark_id)
        else:
            raise ValueError(f'unknown event kind {event.kind!r}')

    def _apply_insert(self, bookmark):
        if bookmark.id in self._ids:
            return
        self._items.insert(0, bookmark)
        self._ids.add(bookmark.id)

        limit = self.page_size * 2
        if len(self._items) > limit:
            for dropped in self._items[limit:]:
                self._ids.discard(dropped.id)
            del self._items[limit:]
            self._cursor += 1
            self.page = limit // self.page_size
            self.has_more = True

    def _apply_update(self, bookmark):
        if bookmark.id not in self._ids:
            return
        for index, existing in enumerate(self._items):
            if existing.id == bookmark.id:
                self._items[index] = bookmark
                return

    def _apply_delete(self, bookmark_id):
        if bookmark_id not in self._ids:
            return False
        self._items = [b for b in self._items if b.id != bookmark_id]
        self._ids.discard(bookmark_id)

        if len(self._items) <= self.page_size * 2:
            self._cursor += 1
            self._spawn(self.refetch())
        return True
