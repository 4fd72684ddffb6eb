"""State store protocol for last-applied resource records.

The protocol uses Python's typing.Protocol with @runtime_checkable,
enabling duck typing and isinstance() checks at runtime.
"""

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .models import ResourceId, StateRecord


@runtime_checkable
class StateStoreProtocol(Protocol):
    """
    Protocol for state store backends.

    All backends (in-memory, local files, DynamoDB) implement this protocol
    to work with the execution engine. Records are addressed individually
    by resource id, so commits for distinct resources never contend.

    Example:
        class MyStore:
            async def load(self) -> dict[ResourceId, StateRecord]:
                ...

            async def commit(self, resource_id: ResourceId, record: StateRecord) -> None:
                ...

        store = MyStore()
        assert isinstance(store, StateStoreProtocol)  # True at runtime
    """

    async def load(self) -> "dict[ResourceId, StateRecord]":
        """
        Load every record.

        Returns:
            Mapping of resource id to record, ordered by resource id so
            that planning is deterministic.
        """
        ...

    async def commit(self, resource_id: "ResourceId", record: "StateRecord") -> None:
        """
        Durably write one record.

        The engine calls this only after the provider reported success,
        and considers dependent steps ready only once it returns.

        Raises:
            StateConflictError: If the store holds a newer record
        """
        ...

    async def delete(self, resource_id: "ResourceId") -> None:
        """
        Remove one record.

        Called after the object was deleted live. Deleting a missing
        record is not an error.
        """
        ...

    async def close(self) -> None:
        """
        Release resources held by the store.

        Safe to call multiple times.
        """
        ...
