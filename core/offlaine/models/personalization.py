"""Per-model user metadata: favorites, usage counts, custom settings."""

from datetime import datetime
from typing import Any, Optional

from offlaine.models.schemas import PersonalizationRecord
from offlaine.storage.kv_store import KeyValueStore
from offlaine.storage.records import RecordStore
from offlaine.utils.logging import logger


class PersonalizationStore:
    """
    Personalization records keyed by model id.

    Records are created lazily on the first mutation and outlive transfer
    state; the download manager removes them when the model is deleted.
    """

    NAMESPACE = "model_personalization"

    def __init__(self, kv: KeyValueStore):
        self._records = RecordStore(kv, self.NAMESPACE, PersonalizationRecord)

    async def get(self, model_id: str) -> Optional[PersonalizationRecord]:
        return await self._records.get(model_id)

    async def update(self, model_id: str, **changes: Any) -> PersonalizationRecord:
        """
        Merge changes into the record, creating it if needed.

        Args:
            model_id: Model to personalize
            **changes: Any PersonalizationRecord field except model_id

        Returns:
            The stored record
        """
        changes.pop("model_id", None)
        existing = await self.get(model_id) or PersonalizationRecord(
            model_id=model_id,
            last_used=datetime.now(),
        )

        updated = PersonalizationRecord.model_validate(
            {**existing.model_dump(), **changes}
        )
        await self._records.set(updated, model_id)
        return updated

    async def record_usage(self, model_id: str) -> PersonalizationRecord:
        """Bump the usage counter and last-used time."""
        existing = await self.get(model_id)
        count = existing.usage_count if existing else 0
        return await self.update(model_id, usage_count=count + 1, last_used=datetime.now())

    async def set_favorite(self, model_id: str, favorited: bool) -> PersonalizationRecord:
        return await self.update(model_id, favorited=favorited)

    async def list_favorites(self) -> list[PersonalizationRecord]:
        return [r for r in await self._records.list_all() if r.favorited]

    async def remove(self, model_id: str) -> None:
        await self._records.delete(model_id)
        logger.debug(f"Removed personalization for {model_id}")
