import enum
import logging

logger = logging.getLogger(__name__)


class State(enum.IntEnum):
    INITED = 0
    STARTED = 1
    CLOSED = 2


class LifecycleController:
    """
    Owns the store connection and the service state.

    INITED -(start)-> STARTED -(stop)-> CLOSED. CLOSED is terminal.
    """

    def __init__(self, store, index, clean_on_startup=False, scan_count=100):
        self.store = store
        self.index = index
        self.clean_on_startup = clean_on_startup
        self.scan_count = scan_count
        self.state = State.INITED

    @property
    def is_started(self):
        return self.state is State.STARTED

    async def start(self):
        """Connect the store and enter STARTED, sweeping the keyspace if configured."""
        if self.state is State.CLOSED:
            logger.error("cannot start a closed global channel service")
            return
        if self.state is State.STARTED:
            logger.warning("global channel service already started")
            return

        await self.store.connect()
        self.state = State.STARTED
        logger.debug("global channel store ready")

        if self.clean_on_startup:
            try:
                await self.index.cleanup(page_size=self.scan_count)
            except Exception:
                logger.exception("global channel startup cleanup failed")

    async def stop(self, force=False):
        # State flips before the connection teardown is awaited
        self.state = State.CLOSED
        if not self.store.connected:
            logger.error("global channel store was never connected: force=%s", force)
            return
        await self.store.close(force=force)
