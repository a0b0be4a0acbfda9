from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence

from fieldvault.services.crypto.encryptor import FieldEncryptor


Scope = Mapping[str, Any]


class RecordStore(Protocol):
    """Keyed record store consumed by the migration engine.

    Implementations raise StoreIOError for transient failures; the engine
    owns retries and timeouts.
    """

    def key_column(self, table: str) -> str:
        ...

    async def scan(
        self,
        table: str,
        *,
        after: Any,
        limit: int,
        scope: Scope | None = None,
    ) -> list[dict[str, Any]]:
        """Return up to ``limit`` records with key > ``after`` in ascending key order."""
        ...

    async def get(self, table: str, key: Any) -> dict[str, Any] | None:
        ...

    async def put(self, table: str, key: Any, values: Mapping[str, Any]) -> None:
        ...

    async def conditional_update(
        self,
        table: str,
        key: Any,
        *,
        expected: Mapping[str, Any],
        values: Mapping[str, Any],
    ) -> bool:
        """Apply ``values`` only if every ``expected`` field still holds the value last read."""
        ...

    async def snapshot(self, table: str, *, fields: Sequence[str], scope: Scope | None = None) -> str:
        ...

    async def restore_snapshot(self, snapshot_id: str) -> int:
        ...


class EncryptedRecordStore:
    """Transparent encrypt-before-write / decrypt-after-read wrapper around a RecordStore."""

    def __init__(self, store: RecordStore, encryptor: FieldEncryptor) -> None:
        self._store = store
        self._encryptor = encryptor

    async def get(self, table: str, key: Any) -> dict[str, Any] | None:
        record = await self._store.get(table, key)
        if record is None:
            return None
        return self._encryptor.decrypt_record(record, table=table)

    async def scan(
        self,
        table: str,
        *,
        after: Any,
        limit: int,
        scope: Scope | None = None,
    ) -> list[dict[str, Any]]:
        records = await self._store.scan(table, after=after, limit=limit, scope=scope)
        return [self._encryptor.decrypt_record(record, table=table) for record in records]

    async def put(self, table: str, key: Any, values: Mapping[str, Any]) -> None:
        await self._store.put(table, key, self._encryptor.encrypt_record(values, table=table))
