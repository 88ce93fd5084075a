"""
Fan-out of a push request to every server holding members of a channel.
"""

import asyncio
import inspect
import logging
from typing import Any, Protocol

import msgspec
from asgiref.sync import sync_to_async

logger = logging.getLogger(__name__)

PUSH_NAMESPACE = "sys"
PUSH_SERVICE = "channelRemote"
PUSH_METHOD = "pushMessage"


class ServerInfo(msgspec.Struct, frozen=True):
    id: str
    server_type: str = ""


class RemoteCall(msgspec.Struct):
    namespace: str
    service: str
    method: str
    args: list[Any] = []


class ClusterDirectory(Protocol):
    def get_servers_by_type(self, server_type: str) -> list[ServerInfo]: ...


class RemoteInvoker(Protocol):
    async def invoke(self, server_id: str, call: RemoteCall) -> list[str]:
        """Run call on server_id and return the uids it could not deliver to."""
        ...


class ServerOutcome(msgspec.Struct):
    server_id: str
    uids: list[str]
    failed: list[str] = []
    error: str | None = None


class PushOutcome(msgspec.Struct):
    servers: list[ServerOutcome] = []

    @property
    def targeted(self):
        return [uid for server in self.servers for uid in server.uids]

    @property
    def failed(self):
        return [uid for server in self.servers for uid in server.failed]

    @property
    def delivered(self):
        failed = set(self.failed)
        return [uid for uid in self.targeted if uid not in failed]

    @property
    def errors(self):
        return {s.server_id: s.error for s in self.servers if s.error is not None}


class FanoutPusher:
    def __init__(self, index, directory: ClusterDirectory, invoker: RemoteInvoker):
        self.index = index
        self.directory = directory
        self.invoker = invoker

    async def get_servers(self, server_type):
        servers = self.directory.get_servers_by_type
        if inspect.iscoroutinefunction(servers):
            return list(await servers(server_type) or [])
        return list(await sync_to_async(servers)(server_type) or [])

    async def push(self, server_type, route, payload, channel, opts=None):
        """
        Push payload on route to every member of channel, server by server.

        Servers are taken from the directory in the order it returns them.
        A failing server never stops the others; its uids are reported as
        failed on its ServerOutcome.
        """
        servers = await self.get_servers(server_type)
        if not servers:
            logger.warning("no servers of type %r to push to", server_type)
            return PushOutcome()

        options = {**(opts or {}), "isPush": True}
        results = await asyncio.gather(
            *(
                self._push_to_server(server.id, route, payload, channel, options)
                for server in servers
            )
        )
        outcome = PushOutcome(servers=[r for r in results if r is not None])
        if outcome.errors:
            logger.warning(
                "push to channel=%s failed on servers %s",
                channel,
                ", ".join(outcome.errors),
            )
        logger.debug(
            "global channel push: server_type=%s route=%s channel=%s targeted=%d failed=%d",
            server_type,
            route,
            channel,
            len(outcome.targeted),
            len(outcome.failed),
        )
        return outcome

    async def _push_to_server(self, server_id, route, payload, channel, options):
        uids = await self.index.members(channel, server_id)
        if not uids:
            return None

        call = RemoteCall(
            namespace=PUSH_NAMESPACE,
            service=PUSH_SERVICE,
            method=PUSH_METHOD,
            args=[route, payload, uids, options],
        )
        try:
            failed = await self.invoker.invoke(server_id, call)
        except Exception as e:
            logger.warning("remote push to server=%s failed: %r", server_id, e)
            return ServerOutcome(
                server_id=server_id, uids=uids, failed=list(uids), error=repr(e)
            )
        targeted = set(uids)
        # A remote may report the same uid more than once
        failed = dict.fromkeys(str(uid) for uid in failed or [])
        return ServerOutcome(
            server_id=server_id,
            uids=uids,
            failed=[uid for uid in failed if uid in targeted],
        )
