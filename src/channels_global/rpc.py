"""
Remote invocation over a Django Channels layer.

Each server listens on its own channel, ``{rpc_prefix}.{server_id}``. A call
is sent there together with a process-local reply channel; the receiving
RemoteDispatcher runs the registered handler and answers on that channel.
"""

import asyncio
import logging

import msgspec
from channels.layers import get_channel_layer

from .pusher import RemoteCall, ServerInfo

logger = logging.getLogger(__name__)


class RemoteInvocationFailure(Exception):
    """Exception raised when a remote call times out or the remote side errors."""

    pass


class RemoteReply(msgspec.Struct):
    type: str = "rpc.reply"
    failed: list[str] = []
    error: str | None = None


class StaticDirectory:
    """
    Cluster directory over a fixed topology.

    Args:
        servers: Mapping of server type to a list of server ids
    """

    def __init__(self, servers=None):
        self.servers = {}
        for server_type, ids in (servers or {}).items():
            for server_id in ids:
                self.add_server(server_type, server_id)

    def add_server(self, server_type, server_id):
        self.servers.setdefault(server_type, []).append(
            ServerInfo(id=server_id, server_type=server_type)
        )

    def remove_server(self, server_id):
        for server_type, infos in self.servers.items():
            self.servers[server_type] = [s for s in infos if s.id != server_id]

    def get_servers_by_type(self, server_type):
        return list(self.servers.get(server_type, []))

    def get_servers(self):
        return [info for infos in self.servers.values() for info in infos]


def server_channel_name(server_id, rpc_prefix="rpc"):
    return f"{rpc_prefix}.{server_id}"


class ChannelLayerInvoker:
    """
    Sends RemoteCall envelopes to servers through a channel layer and waits
    for their reply.
    """

    def __init__(self, channel_layer=None, *, alias="default", rpc_prefix="rpc", timeout=5.0):
        self._channel_layer = channel_layer
        self.alias = alias
        self.rpc_prefix = rpc_prefix
        self.timeout = timeout

    @property
    def channel_layer(self):
        if self._channel_layer is None:
            self._channel_layer = get_channel_layer(self.alias)
        return self._channel_layer

    async def invoke(self, server_id, call):
        layer = self.channel_layer
        reply_channel = await layer.new_channel(prefix="rpc-reply")
        await layer.send(
            server_channel_name(server_id, self.rpc_prefix),
            {
                "type": "rpc.invoke",
                "call": msgspec.to_builtins(call),
                "reply_channel": reply_channel,
            },
        )
        try:
            message = await asyncio.wait_for(layer.receive(reply_channel), self.timeout)
        except asyncio.TimeoutError:
            raise RemoteInvocationFailure(
                f"no reply from {server_id} within {self.timeout}s"
            )
        reply = msgspec.convert(message, RemoteReply)
        if reply.error is not None:
            raise RemoteInvocationFailure(f"{server_id}: {reply.error}")
        return reply.failed


class RemoteDispatcher:
    """
    Receiving side of ChannelLayerInvoker.

    Handlers are registered per (namespace, service, method) and called with
    the envelope args. A handler returns the list of uids it could not
    deliver to, or None when everything was delivered.
    """

    def __init__(self, server_id, channel_layer=None, *, alias="default", rpc_prefix="rpc"):
        self.server_id = server_id
        self.channel_layer = channel_layer or get_channel_layer(alias)
        self.channel_name = server_channel_name(server_id, rpc_prefix)
        self.handlers = {}

    def register(self, namespace, service, method, handler):
        self.handlers[(namespace, service, method)] = handler

    async def serve(self):
        """Handle calls until cancelled."""
        while True:
            message = await self.channel_layer.receive(self.channel_name)
            await self.handle(message)

    async def handle(self, message):
        reply_channel = message.get("reply_channel")
        try:
            call = msgspec.convert(message["call"], RemoteCall)
            handler = self.handlers[(call.namespace, call.service, call.method)]
        except (KeyError, msgspec.ValidationError) as e:
            logger.warning("%s: rejecting remote call: %r", self.server_id, e)
            reply = RemoteReply(error=f"bad call: {e!r}")
        else:
            try:
                result = handler(*call.args)
                if asyncio.iscoroutine(result):
                    result = await result
                reply = RemoteReply(failed=[str(uid) for uid in result or []])
            except Exception as e:
                logger.exception(
                    "%s: handler for %s.%s.%s raised",
                    self.server_id,
                    call.namespace,
                    call.service,
                    call.method,
                )
                reply = RemoteReply(error=repr(e))

        if reply_channel:
            await self.channel_layer.send(reply_channel, msgspec.to_builtins(reply))
