"""
Channel membership index.

Every membership (channel, uid, server) is recorded under three key
families sharing one prefix:

    c#{channel}           mapping uid -> server
    s#{channel}:{server}  set of uids
    u#{uid}               mapping channel -> server

The writes for one add or leave go through a single store pipeline.
"""

import logging

from .conf import DEFAULT_PREFIX
from .stores import StoreUnavailable

logger = logging.getLogger(__name__)


class MembershipIndex:
    def __init__(self, store, prefix=DEFAULT_PREFIX):
        self.store = store
        self.prefix = prefix

    # Key families

    def channel_key(self, channel):
        return f"{self.prefix}c#{channel}"

    def server_key_prefix(self, channel):
        return f"{self.prefix}s#{channel}:"

    def server_key(self, channel, server):
        return f"{self.server_key_prefix(channel)}{server}"

    def user_key(self, uid):
        return f"{self.prefix}u#{uid}"

    # Writes

    async def add(self, channel, uid, server):
        """
        Join uid to channel through server.

        A uid already recorded on another server for this channel is moved:
        the old server set entry is resolved and retracted inside the same
        batch, so concurrent moves leave the uid in exactly one server set.
        """
        uid = str(uid)
        try:
            pipe = self.store.pipeline()
            pipe.remove_from_mapped_set(
                self.user_key(uid), channel, self.server_key_prefix(channel), uid, keep=server
            )
            pipe.set_member(self.channel_key(channel), uid, server)
            pipe.add_to_set(self.server_key(channel, server), uid)
            pipe.set_member(self.user_key(uid), channel, server)
            await pipe.execute()
        except StoreUnavailable as e:
            logger.warning(
                "add failed, store unavailable: channel=%s uid=%s server=%s (%s)",
                channel,
                uid,
                server,
                e,
            )
            return
        logger.debug("added uid=%s to channel=%s on server=%s", uid, channel, server)

    async def leave(self, channel, uid, server=None):
        """
        Remove uid from channel.

        The server recorded in the user and channel indexes is always
        retracted; a given server is retracted as well. Leaving a channel
        uid is not in does nothing.
        """
        uid = str(uid)
        set_prefix = self.server_key_prefix(channel)
        try:
            pipe = self.store.pipeline()
            pipe.remove_from_mapped_set(self.user_key(uid), channel, set_prefix, uid)
            pipe.remove_from_mapped_set(self.channel_key(channel), uid, set_prefix, uid)
            if server:
                pipe.remove_from_set(self.server_key(channel, server), uid)
            pipe.del_member(self.channel_key(channel), uid)
            pipe.del_member(self.user_key(uid), channel)
            await pipe.execute()
        except StoreUnavailable as e:
            logger.warning(
                "leave failed, store unavailable: channel=%s uid=%s (%s)",
                channel,
                uid,
                e,
            )

    async def destroy(self, channel):
        """Remove every member of channel."""
        try:
            members = await self.store.get_mapping(self.channel_key(channel))
        except StoreUnavailable as e:
            logger.warning("destroy failed: channel=%s (%s)", channel, e)
            return
        for uid, server in members.items():
            if not server:
                logger.warning(
                    "corrupt membership record: channel=%s uid=%s has no server",
                    channel,
                    uid,
                )
            await self.leave(channel, uid, server or None)
        logger.debug("destroyed channel=%s members=%d", channel, len(members))

    async def leave_all(self, uid):
        """Remove uid from every channel it belongs to. Returns the channels left."""
        uid = str(uid)
        left = []
        for channel, server in (await self.channels(uid, with_servers=True)).items():
            if not channel or not server:
                logger.warning(
                    "skipping corrupt user record: uid=%s channel=%r server=%r",
                    uid,
                    channel,
                    server,
                )
                continue
            await self.leave(channel, uid, server)
            left.append(channel)
        return left

    async def cleanup(self, page_size=100):
        """
        Delete every key under the registry prefix.

        Keys are scanned and deleted one page at a time. Returns the list of
        deleted keys.
        """
        cleaned = []
        cursor = None
        while True:
            cursor, keys = await self.store.scan_keys_by_prefix(
                self.prefix, cursor=cursor, count=page_size
            )
            if keys:
                await self.store.delete_keys(keys)
                cleaned.extend(keys)
            if cursor is None:
                break
        logger.warning("global channel registry cleaned: %d keys", len(cleaned))
        return cleaned

    # Reads

    async def members(self, channel, server=None):
        """Return uids in channel, restricted to one server when given."""
        try:
            if server:
                return await self.store.members_of_set(self.server_key(channel, server))
            return await self.store.mapping_keys(self.channel_key(channel))
        except StoreUnavailable as e:
            logger.warning("members failed: channel=%s server=%s (%s)", channel, server, e)
            return []

    async def ismember(self, channel, uid):
        try:
            return await self.store.has_member(self.channel_key(channel), str(uid))
        except StoreUnavailable as e:
            logger.warning("ismember failed: channel=%s uid=%s (%s)", channel, uid, e)
            return False

    async def channels(self, uid, with_servers=False):
        """Return the channels uid belongs to, or a channel -> server dict."""
        try:
            if with_servers:
                return await self.store.get_mapping(self.user_key(uid))
            return await self.store.mapping_keys(self.user_key(uid))
        except StoreUnavailable as e:
            logger.warning("channels failed: uid=%s (%s)", uid, e)
            return {} if with_servers else []

    async def len(self, channel):
        try:
            return await self.store.mapping_len(self.channel_key(channel))
        except StoreUnavailable as e:
            logger.warning("len failed: channel=%s (%s)", channel, e)
            return 0
