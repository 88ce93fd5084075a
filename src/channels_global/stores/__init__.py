"""
Base store interface for the membership registry.

A store exposes mapping and set primitives addressed by string keys, plus
a prefix scan and bulk delete. It holds no registry logic.
"""


class StoreUnavailable(Exception):
    """Exception raised when the store is not connected or a call fails."""

    pass


class Pipeline:
    """
    Collects write operations and applies them in one batch, in order.

    Stores that support transactions apply the whole batch atomically, so
    ops that read a mapping see the value left by the ops before them.
    """

    def __init__(self, store):
        self.store = store
        self.ops = []

    def set_member(self, key, field, value):
        self.ops.append(("set_member", key, field, value))
        return self

    def del_member(self, key, field):
        self.ops.append(("del_member", key, field))
        return self

    def add_to_set(self, key, member):
        self.ops.append(("add_to_set", key, member))
        return self

    def remove_from_set(self, key, member):
        self.ops.append(("remove_from_set", key, member))
        return self

    def remove_from_mapped_set(self, key, field, set_prefix, member, keep=None):
        """
        Remove member from the set named ``set_prefix + value``, where value
        is read from the mapping at key/field when the op runs. Nothing is
        removed when the field is missing or its value equals keep.
        """
        self.ops.append(("remove_from_mapped_set", key, field, set_prefix, member, keep))
        return self

    def __len__(self):
        return len(self.ops)

    async def execute(self):
        if not self.ops:
            return
        ops, self.ops = self.ops, []
        await self.store._execute_pipeline(ops)


class BaseStore:
    """
    Base class for registry stores.

    Subclasses implement the primitives below. No method retries on
    failure; every failure surfaces as StoreUnavailable.
    """

    async def connect(self):
        """Open the underlying connection."""
        raise NotImplementedError("Subclasses must implement connect")

    async def close(self, force=False):
        """
        Close the underlying connection.

        When force is false, in-flight operations are allowed to finish first.
        """
        raise NotImplementedError("Subclasses must implement close")

    @property
    def connected(self):
        raise NotImplementedError("Subclasses must implement connected")

    # Mapping keys

    async def get_member(self, key, field):
        raise NotImplementedError("Subclasses must implement get_member")

    async def get_mapping(self, key):
        """Return the whole mapping stored at key as a dict."""
        raise NotImplementedError("Subclasses must implement get_mapping")

    async def mapping_keys(self, key):
        return list((await self.get_mapping(key)).keys())

    async def mapping_len(self, key):
        raise NotImplementedError("Subclasses must implement mapping_len")

    async def has_member(self, key, field):
        return await self.get_member(key, field) is not None

    async def set_member(self, key, field, value):
        await self.pipeline().set_member(key, field, value).execute()

    async def del_member(self, key, field):
        await self.pipeline().del_member(key, field).execute()

    # Set keys

    async def add_to_set(self, key, member):
        await self.pipeline().add_to_set(key, member).execute()

    async def remove_from_set(self, key, member):
        await self.pipeline().remove_from_set(key, member).execute()

    async def members_of_set(self, key):
        raise NotImplementedError("Subclasses must implement members_of_set")

    # Keyspace

    async def scan_keys_by_prefix(self, prefix, cursor=None, count=100):
        """
        Return one page of keys starting with prefix.

        Args:
            prefix: Key prefix to match
            cursor: Value returned by the previous call, None to start
            count: Maximum number of keys per page

        Returns:
            tuple: (next_cursor, keys) where next_cursor is None once the
            scan is complete
        """
        raise NotImplementedError("Subclasses must implement scan_keys_by_prefix")

    async def delete_keys(self, keys):
        """Delete every mapping and set stored under the given keys."""
        raise NotImplementedError("Subclasses must implement delete_keys")

    def pipeline(self):
        return Pipeline(self)

    async def _execute_pipeline(self, ops):
        raise NotImplementedError("Subclasses must implement _execute_pipeline")
