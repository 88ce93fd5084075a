"""
Global channel service.

The public facade of the registry: every call is gated on the lifecycle
state. Calls made before start() or after stop() are logged and return
None without touching the store.
"""

import functools
import logging

from .conf import get_config
from .index import MembershipIndex
from .lifecycle import LifecycleController
from .pusher import FanoutPusher
from .rpc import ChannelLayerInvoker
from .stores.aio import AIOSQLiteStore

logger = logging.getLogger(__name__)


def requires_started(action):
    """Return None and log instead of running the call unless the service is started."""

    def decorator(method):
        @functools.wraps(method)
        async def wrapper(self, *args, **kwargs):
            if not self.lifecycle.is_started:
                logger.error(
                    "%s failed: args=%r state=%s",
                    action,
                    args,
                    self.lifecycle.state.name,
                )
                return None
            return await method(self, *args, **kwargs)

        return wrapper

    return decorator


class GlobalChannelService:
    name = "__globalChannel__"

    def __init__(self, store, directory, invoker, *, prefix, clean_on_startup=False, scan_count=100):
        self.index = MembershipIndex(store, prefix=prefix)
        self.lifecycle = LifecycleController(
            store,
            self.index,
            clean_on_startup=clean_on_startup,
            scan_count=scan_count,
        )
        self.pusher = FanoutPusher(self.index, directory, invoker)
        logger.debug("created global channel service: prefix=%s", prefix)

    @property
    def state(self):
        return self.lifecycle.state

    async def start(self):
        await self.lifecycle.start()

    async def stop(self, force=False):
        await self.lifecycle.stop(force=force)

    @requires_started("add member")
    async def add(self, channel, uid, server_id):
        await self.index.add(channel, uid, server_id)

    @requires_started("leave member")
    async def leave(self, channel, uid, server_id=None):
        await self.index.leave(channel, uid, server_id)

    @requires_started("leave all channels")
    async def leave_all(self, uid):
        return await self.index.leave_all(uid)

    @requires_started("destroy channel")
    async def destroy(self, channel):
        await self.index.destroy(channel)

    @requires_started("get channel len")
    async def len(self, channel):
        return await self.index.len(channel)

    @requires_started("get members")
    async def members(self, channel, server_id=None):
        return await self.index.members(channel, server_id)

    @requires_started("get ismember")
    async def ismember(self, channel, uid):
        return await self.index.ismember(channel, uid)

    @requires_started("get channels")
    async def channels(self, uid):
        return await self.index.channels(uid)

    @requires_started("push message")
    async def push_message(self, server_type, route, payload, channel, opts=None):
        """
        Push payload to every member of channel on servers of server_type.

        Returns the uids the push could not reach: uids on servers whose
        remote call failed plus uids the remote side reported as undelivered.
        An empty list means every targeted uid was accepted.
        """
        outcome = await self.pusher.push(server_type, route, payload, channel, opts)
        return outcome.failed


def create_service(directory, invoker=None, store=None, **options):
    """
    Build a GlobalChannelService from the GLOBAL_CHANNEL setting.

    Without an explicit store an AIOSQLiteStore is created; without an
    invoker a ChannelLayerInvoker on the configured channel layer is used.
    """
    config = get_config(**options)
    if store is None:
        store = AIOSQLiteStore(
            database=config["database"],
            db_path=config["db_path"],
            pool_size=config["pool_size"],
        )
    if invoker is None:
        invoker = ChannelLayerInvoker(
            alias=config["channel_layer"],
            rpc_prefix=config["rpc_prefix"],
            timeout=config["rpc_timeout"],
        )
    return GlobalChannelService(
        store,
        directory,
        invoker,
        prefix=config["prefix"],
        clean_on_startup=config["clean_on_startup"],
        scan_count=config["scan_count"],
    )
