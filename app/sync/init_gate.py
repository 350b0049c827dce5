import asyncio
import logging

logger = logging.getLogger(__name__)


class OneShotGate:
    """Run an async setup action once and share its outcome.

    The first caller of ``ensure_ready`` starts the action; callers arriving
    while it runs await the same attempt and see the same result or error.
    Success is remembered. After a failure the next caller starts a fresh
    attempt.
    """

    def __init__(self, action, name='setup'):
        self._action = action
        self.name = name
        self._task = None
        self.ready = False

    async def ensure_ready(self):
        if self.ready:
            return
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())
        task = self._task
        await asyncio.shield(task)

    async def _run(self):
        try:
            await self._action()
        except Exception as e:
            logger.warning('%s failed, will retry on next use: %s', self.name, e)
            self._task = None
            raise
        self.ready = True
        logger.info('%s complete', self.name)
