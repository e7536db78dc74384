"""Typed records over a key-value store."""

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from offlaine.storage.kv_store import KeyValueStore
from offlaine.utils.logging import logger

RecordT = TypeVar("RecordT", bound=BaseModel)


class RecordStore(Generic[RecordT]):
    """
    Typed get/set/delete for one record type.

    Keyed records live under ``"<namespace>:<record_id>"``; a store used
    without record ids holds a single record under ``namespace`` itself.
    The store only relays values - it has no ownership semantics.
    """

    def __init__(self, kv: KeyValueStore, namespace: str, record_type: type[RecordT]):
        self.kv = kv
        self.namespace = namespace
        self.record_type = record_type

    def _key(self, record_id: Optional[str]) -> str:
        if record_id is None:
            return self.namespace
        return f"{self.namespace}:{record_id}"

    async def get(self, record_id: Optional[str] = None) -> Optional[RecordT]:
        raw = await self.kv.get(self._key(record_id))
        if raw is None:
            return None

        try:
            return self.record_type.model_validate(raw)
        except ValidationError as e:
            logger.error(f"Discarding unreadable record {self._key(record_id)}: {e}")
            return None

    async def set(self, record: RecordT, record_id: Optional[str] = None) -> None:
        await self.kv.set(self._key(record_id), record.model_dump(mode="json"))

    async def delete(self, record_id: Optional[str] = None) -> None:
        await self.kv.delete(self._key(record_id))

    async def ids(self) -> list[str]:
        """Record ids stored under this namespace."""
        prefix = f"{self.namespace}:"
        return [k[len(prefix):] for k in await self.kv.keys(prefix)]

    async def list_all(self) -> list[RecordT]:
        records = []
        for record_id in await self.ids():
            record = await self.get(record_id)
            if record is not None:
                records.append(record)
        return records
