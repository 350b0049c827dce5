"""Tests for the event sources, session context and init gate."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from app.sync.broadcast import BroadcastChannel, BroadcastHub, LocalBroadcastRelay
from app.sync.change_feed import ChangeFeedSubscriber
from app.sync.errors import AuthenticationRequired, NetworkFailure
from app.sync.events import ChangeEvent, DELETE
from app.sync.init_gate import OneShotGate
from app.sync.session import SessionContext
from tests.conftest import TEST_USER_ID, OTHER_USER_ID, make_bookmark, make_token


def run(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# BroadcastChannel / LocalBroadcastRelay
# ---------------------------------------------------------------------------

class TestBroadcastChannel:

    def test_delivers_to_peers_not_sender(self):
        async def scenario():
            hub = BroadcastHub()
            sender = BroadcastChannel('bookmarks', hub=hub)
            receiver = BroadcastChannel('bookmarks', hub=hub)
            other_name = BroadcastChannel('notes', hub=hub)
            got = {'sender': [], 'receiver': [], 'other': []}
            sender.add_listener(got['sender'].append)
            receiver.add_listener(got['receiver'].append)
            other_name.add_listener(got['other'].append)

            delivered = sender.post_message({'type': 'PING'})
            await asyncio.sleep(0)
            return delivered, got

        delivered, got = run(scenario())
        assert delivered == 1
        assert got == {'sender': [], 'receiver': [{'type': 'PING'}], 'other': []}

    def test_receivers_get_copies(self):
        async def scenario():
            hub = BroadcastHub()
            sender = BroadcastChannel('bookmarks', hub=hub)
            first = BroadcastChannel('bookmarks', hub=hub)
            second = BroadcastChannel('bookmarks', hub=hub)
            got = []
            first.add_listener(got.append)
            second.add_listener(got.append)
            sender.post_message({'bookmark': {'id': 'a'}})
            await asyncio.sleep(0)
            return got

        got = run(scenario())
        assert len(got) == 2
        assert got[0] == got[1]
        assert got[0] is not got[1]

    def test_closed_channel_stops_receiving(self):
        async def scenario():
            hub = BroadcastHub()
            sender = BroadcastChannel('bookmarks', hub=hub)
            receiver = BroadcastChannel('bookmarks', hub=hub)
            got = []
            receiver.add_listener(got.append)
            receiver.close()
            delivered = sender.post_message({'type': 'PING'})
            await asyncio.sleep(0)
            return delivered, got, hub.channel_count('bookmarks')

        assert run(scenario()) == (0, [], 1)

    def test_post_on_closed_channel_raises(self):
        async def scenario():
            channel = BroadcastChannel('bookmarks', hub=BroadcastHub())
            channel.close()
            channel.post_message({})

        with pytest.raises(RuntimeError):
            run(scenario())


class TestLocalBroadcastRelay:

    def test_filters_to_current_user(self):
        async def scenario():
            hub = BroadcastHub()
            relay = LocalBroadcastRelay(hub=hub)
            received = []
            relay.open(TEST_USER_ID, received.append)
            sender = BroadcastChannel('bookmarks', hub=hub)
            mine = make_bookmark(1)
            theirs = make_bookmark(2, user_id=OTHER_USER_ID)
            sender.post_message({'type': 'INSERT', 'bookmark': mine.to_row()})
            sender.post_message({'type': 'INSERT', 'bookmark': theirs.to_row()})
            sender.post_message({'type': 'DELETE', 'bookmark': {'id': 'bm-3'}})
            sender.post_message({'type': 'INSERT', 'bookmark': {'id': 'broken'}})
            await asyncio.sleep(0)
            relay.close()
            return received, mine

        received, mine = run(scenario())
        assert len(received) == 1
        assert received[0].bookmark == mine
        assert received[0].source == 'broadcast'

    def test_publish_without_open_channel(self):
        async def scenario():
            hub = BroadcastHub()
            listener = LocalBroadcastRelay(hub=hub)
            received = []
            listener.open(TEST_USER_ID, received.append)
            publisher = LocalBroadcastRelay(hub=hub)
            delivered = publisher.publish(ChangeEvent(DELETE, 'bm-1', TEST_USER_ID))
            await asyncio.sleep(0)
            return delivered, received, hub.channel_count('bookmarks')

        delivered, received, open_channels = run(scenario())
        assert delivered == 1
        assert received[0].bookmark_id == 'bm-1'
        assert open_channels == 1

    def test_reopen_replaces_channel(self):
        async def scenario():
            hub = BroadcastHub()
            relay = LocalBroadcastRelay(hub=hub)
            relay.open(TEST_USER_ID, lambda e: None)
            relay.open(OTHER_USER_ID, lambda e: None)
            return hub.channel_count('bookmarks'), relay.user_id

        assert run(scenario()) == (1, OTHER_USER_ID)


# ---------------------------------------------------------------------------
# ChangeFeedSubscriber
# ---------------------------------------------------------------------------

def _stream(*frames):
    resp = MagicMock()
    lines = []
    for event, row in frames:
        lines += [f'event: {event}', f'data: {json.dumps(row)}', '']
    resp.iter_lines.return_value = iter([': connected', ''] + lines)
    return resp


class TestChangeFeedSubscriber:

    def test_delivers_on_loop(self):
        async def scenario():
            store = MagicMock()
            bookmark = make_bookmark(1)
            store.open_change_stream.return_value = _stream(
                ('INSERT', bookmark.to_row()),
                ('INSERT', {'id': 'broken'}),
                ('DELETE', {'id': 'bm-1', 'user_id': TEST_USER_ID}),
            )
            loop = asyncio.get_running_loop()
            received = []
            done = asyncio.Event()

            def callback(event):
                assert asyncio.get_running_loop() is loop
                received.append(event)
                if len(received) == 2:
                    done.set()

            feed = ChangeFeedSubscriber(store)
            feed.open(TEST_USER_ID, callback)
            await asyncio.wait_for(done.wait(), timeout=5)
            feed.close()
            return store, received, bookmark

        store, received, bookmark = run(scenario())
        store.open_change_stream.assert_called_once_with(TEST_USER_ID)
        assert [e.kind for e in received] == ['INSERT', 'DELETE']
        assert received[0].bookmark == bookmark
        assert received[0].source == 'feed'

    def test_reopen_tears_down_previous(self):
        async def scenario():
            store = MagicMock()
            first, second = MagicMock(), MagicMock()
            first.iter_lines.return_value = iter([])
            second.iter_lines.return_value = iter([])
            store.open_change_stream.side_effect = [first, second]
            feed = ChangeFeedSubscriber(store)

            feed.open(TEST_USER_ID, lambda e: None)
            old = feed._sub
            old.thread.join(timeout=5)
            feed.open(OTHER_USER_ID, lambda e: None)
            feed._sub.thread.join(timeout=5)
            user = feed.user_id
            feed.close()
            return old, user, feed

        old, user, feed = run(scenario())
        assert old.active is False
        assert user == OTHER_USER_ID
        assert feed.user_id is None

    def test_connect_failure_is_logged(self):
        async def scenario():
            store = MagicMock()
            store.open_change_stream.side_effect = NetworkFailure('refused')
            feed = ChangeFeedSubscriber(store)
            feed.open(TEST_USER_ID, lambda e: None)
            feed._sub.thread.join(timeout=5)
            alive = feed._sub.thread.is_alive()
            feed.close()
            return alive

        assert run(scenario()) is False


# ---------------------------------------------------------------------------
# SessionContext
# ---------------------------------------------------------------------------

class TestSessionContext:

    def test_sign_in_reads_subject(self):
        session = SessionContext()
        assert session.sign_in(make_token(TEST_USER_ID)) == TEST_USER_ID
        assert session.is_authenticated
        assert session.claims['email'] == 'test@example.com'

    def test_listeners_fire_only_on_identity_change(self):
        session = SessionContext()
        seen = []
        session.subscribe(seen.append)

        session.sign_in(make_token(TEST_USER_ID))
        session.sign_in(make_token(TEST_USER_ID))
        session.sign_in(make_token(OTHER_USER_ID))
        session.sign_out()
        session.sign_out()

        assert seen == [TEST_USER_ID, OTHER_USER_ID, None]

    def test_token_refresh_updates_token(self):
        session = SessionContext()
        first, second = make_token(), make_token(expires_in=7200)
        session.sign_in(first)
        session.sign_in(second)
        assert session.access_token == second

    def test_unsubscribe(self):
        session = SessionContext()
        seen = []
        unsubscribe = session.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        session.sign_in(make_token())
        assert seen == []

    def test_invalid_token(self):
        session = SessionContext()
        with pytest.raises(AuthenticationRequired):
            session.sign_in('garbage')
        assert session.user_id is None

    def test_failing_listener_does_not_block_others(self):
        session = SessionContext()
        seen = []

        def broken(user_id):
            raise RuntimeError('boom')

        session.subscribe(broken)
        session.subscribe(seen.append)
        session.sign_in(make_token())
        assert seen == [TEST_USER_ID]


# ---------------------------------------------------------------------------
# OneShotGate
# ---------------------------------------------------------------------------

class TestOneShotGate:

    def test_concurrent_callers_share_one_run(self):
        calls = []

        async def action():
            calls.append(1)
            await asyncio.sleep(0.01)

        async def scenario():
            gate = OneShotGate(action)
            await asyncio.gather(*(gate.ensure_ready() for _ in range(5)))
            await gate.ensure_ready()
            return gate

        gate = run(scenario())
        assert calls == [1]
        assert gate.ready is True

    def test_failure_is_shared_then_retried(self):
        attempts = []

        async def action():
            attempts.append(1)
            await asyncio.sleep(0.01)
            if len(attempts) == 1:
                raise NetworkFailure('down')

        async def scenario():
            gate = OneShotGate(action)
            results = await asyncio.gather(
                gate.ensure_ready(), gate.ensure_ready(), return_exceptions=True,
            )
            await gate.ensure_ready()
            return results, gate

        results, gate = run(scenario())
        assert all(isinstance(r, NetworkFailure) for r in results)
        assert len(attempts) == 2
        assert gate.ready is True
