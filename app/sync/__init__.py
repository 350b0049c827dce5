import asyncio


def create_controller(session, config=None, relay_hub=None):
    """Assemble a controller wired to the store, its change feed and the relay.

    Call ``controller.bind(session)`` from a running loop to start syncing.
    """
    from app.config import Config
    from .broadcast import LocalBroadcastRelay
    from .change_feed import ChangeFeedSubscriber
    from .controller import BookmarkListController
    from .init_gate import OneShotGate
    from .store_client import RemoteStoreClient

    config = config or Config
    store = RemoteStoreClient.from_config(config, session)

    async def initialize_store():
        await asyncio.to_thread(store.initialize_schema)

    return BookmarkListController(
        store,
        page_size=config.BOOKMARKS_PAGE_SIZE,
        feed=ChangeFeedSubscriber(store),
        relay=LocalBroadcastRelay(config.BROADCAST_CHANNEL, hub=relay_hub),
        init_gate=OneShotGate(initialize_store, name='Database initialization'),
    )
