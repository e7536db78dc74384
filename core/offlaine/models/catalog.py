"""
Catalog of downloadable models.
The Hugging Face client searches GGUF repositories and turns them into
ArtifactDescriptors the download manager can acquire.
"""

import asyncio
import math
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from huggingface_hub import HfApi, hf_hub_url
from pydantic import BaseModel

from offlaine.config import CATALOG_CACHE_SECONDS, HUGGINGFACE_API_BASE
from offlaine.device.recommendations import CANDIDATES
from offlaine.models.schemas import (
    MB,
    ArtifactDescriptor,
    ArtifactFile,
    ModelCategory,
    PerformanceTier,
)
from offlaine.storage.kv_store import KeyValueStore
from offlaine.storage.records import RecordStore
from offlaine.utils.logging import logger


class CatalogClient(ABC):
    """Source of candidate artifact descriptors."""

    @abstractmethod
    async def search(
        self,
        query: str = "",
        category: Optional[ModelCategory] = None,
        limit: int = 50,
    ) -> list[ArtifactDescriptor]: ...

    @abstractmethod
    async def details(self, model_id: str) -> Optional[ArtifactDescriptor]: ...

    async def curated(
        self, category: Optional[ModelCategory] = None
    ) -> list[ArtifactDescriptor]:
        """
        Featured models for discovery: the recommendation candidates, resolved
        through details(). Entries that cannot be resolved are left out.
        """
        resolved = await asyncio.gather(*(self.details(c.model_id) for c in CANDIDATES))
        return [
            d for d in resolved if d is not None and (category is None or d.category == category)
        ]


class CatalogCache(BaseModel):
    """Cached search results for one query."""

    cached_at: datetime
    models: list[ArtifactDescriptor]


def map_category_from_tags(tags: list[str]) -> ModelCategory:
    """Pick a category from Hugging Face tags, first match wins."""
    tag_str = " ".join(tags).lower()

    if "text-generation" in tag_str or "language-model" in tag_str:
        return ModelCategory.WRITING_ASSISTANT
    if "code" in tag_str or "programming" in tag_str:
        return ModelCategory.CODE_HELPER
    if "translation" in tag_str:
        return ModelCategory.LANGUAGE_TRANSLATION
    if "image" in tag_str or "vision" in tag_str:
        return ModelCategory.IMAGE_PROCESSING
    if "audio" in tag_str or "speech" in tag_str:
        return ModelCategory.VOICE_PROCESSING
    if any(t in tag_str for t in ("medical", "legal", "science")):
        return ModelCategory.SPECIALIZED
    if any(t in tag_str for t in ("creative", "story", "art")):
        return ModelCategory.CREATIVE

    return ModelCategory.WRITING_ASSISTANT


def estimate_performance_tier(size_mb: float) -> PerformanceTier:
    if size_mb < 1000:
        return PerformanceTier.LOW
    if size_mb < 4000:
        return PerformanceTier.MEDIUM
    return PerformanceTier.HIGH


def estimate_model_size(downloads: int, likes: int) -> int:
    """Rough size in MB when the repository does not list file sizes."""
    base_size = 500
    popularity_factor = math.log(downloads + 1) * 0.1
    quality_factor = math.log(likes + 1) * 0.05
    return math.floor(base_size * (1 + popularity_factor + quality_factor))


def estimate_memory_requirement(size_mb: float) -> int:
    # Inference typically needs 1.5-2x the weights
    return math.floor(size_mb * 1.8)


class HuggingFaceCatalog(CatalogClient):
    """
    Search GGUF models on Hugging Face.

    Search results are cached in the key-value store for a day; network
    failures fall back to whatever is cached, or an empty list.
    """

    # Preferred payload when a repository ships several quantizations
    PREFERRED_QUANTIZATIONS = ["Q4_K_M", "Q4_K_S", "Q4_0", "Q5_K_M", "Q8_0"]
    CACHE_NAMESPACE = "hf_models_cache"

    def __init__(
        self,
        kv: Optional[KeyValueStore] = None,
        api: Optional[HfApi] = None,
        cache_seconds: int = CATALOG_CACHE_SECONDS,
        include_checksums: bool = False,
        endpoint: str = HUGGINGFACE_API_BASE,
    ):
        self.endpoint = endpoint
        self.api = api or HfApi(endpoint=endpoint)
        self.cache_seconds = cache_seconds
        # Off by default: installs are checked by size only unless opted in
        self.include_checksums = include_checksums
        self._cache = RecordStore(kv, self.CACHE_NAMESPACE, CatalogCache) if kv else None

    async def search(
        self,
        query: str = "",
        category: Optional[ModelCategory] = None,
        limit: int = 50,
    ) -> list[ArtifactDescriptor]:
        cache_id = query.lower().strip() or "_all"

        cached = await self._get_cached(cache_id)
        if cached is not None:
            return self._filter(cached, category)[:limit]

        loop = asyncio.get_event_loop()
        try:
            models = await loop.run_in_executor(
                None,
                lambda: list(
                    self.api.list_models(
                        search=query or None,
                        filter="gguf",
                        sort="downloads",
                        direction=-1,
                        limit=limit * 2,  # Headroom for category filtering
                    )
                ),
            )
        except Exception as e:
            logger.error(f"Failed to search Hugging Face for '{query}': {e}")
            stale = await self._get_cached(cache_id, allow_expired=True)
            return self._filter(stale or [], category)[:limit]

        descriptors = [self._to_descriptor(m) for m in models]
        await self._set_cached(cache_id, descriptors)

        return self._filter(descriptors, category)[:limit]

    async def details(self, model_id: str) -> Optional[ArtifactDescriptor]:
        """
        Full descriptor with the payload file resolved.

        Returns:
            ArtifactDescriptor, or None if the repository is unknown or unreachable
        """
        loop = asyncio.get_event_loop()

        try:
            info = await loop.run_in_executor(
                None, lambda: self.api.model_info(model_id, files_metadata=True)
            )
        except Exception as e:
            logger.warning(f"Failed to get model details for {model_id}: {e}")
            return None

        descriptor = self._to_descriptor(info)
        payload = self._pick_payload(model_id, info.siblings or [])
        if payload is None:
            return descriptor

        size_mb = payload.size_bytes / MB if payload.size_bytes else descriptor.size_mb
        return descriptor.model_copy(
            update={
                "size_mb": round(size_mb, 1),
                "memory_requirement_mb": estimate_memory_requirement(size_mb),
                "performance_tier": estimate_performance_tier(size_mb),
                "download_url": payload.url,
                "files": (payload,),
            }
        )

    async def clear_cache(self) -> None:
        if self._cache is None:
            return
        for cache_id in await self._cache.ids():
            await self._cache.delete(cache_id)

    def _to_descriptor(self, model) -> ArtifactDescriptor:
        model_id = model.id
        tags = list(model.tags) if model.tags else []
        downloads = model.downloads or 0
        likes = model.likes or 0
        size_mb = estimate_model_size(downloads, likes)

        card = getattr(model, "card_data", None)
        license_name = getattr(card, "license", None) if card else None
        description = getattr(card, "description", None) if card else None

        return ArtifactDescriptor(
            id=model_id,
            name=model_id.split("/")[-1],
            description=description or "No description available",
            category=map_category_from_tags(tags),
            size_mb=size_mb,
            memory_requirement_mb=estimate_memory_requirement(size_mb),
            performance_tier=estimate_performance_tier(size_mb),
            tags=tuple(tags),
            author=getattr(model, "author", None) or model_id.split("/")[0],
            license=license_name or "Unknown",
            downloads=downloads,
            likes=likes,
            created_at=getattr(model, "created_at", None),
        )

    def _pick_payload(self, model_id: str, siblings) -> Optional[ArtifactFile]:
        """Choose the GGUF file to install, preferring mid-size quantizations."""
        gguf = [s for s in siblings if s.rfilename.endswith(".gguf")]
        if not gguf:
            return None

        def rank(sibling) -> int:
            name = sibling.rfilename.upper()
            for i, quant in enumerate(self.PREFERRED_QUANTIZATIONS):
                if quant in name:
                    return i
            return len(self.PREFERRED_QUANTIZATIONS)

        chosen = sorted(gguf, key=rank)[0]
        sha256 = None
        if self.include_checksums and getattr(chosen, "lfs", None):
            sha256 = chosen.lfs.sha256

        return ArtifactFile(
            filename="model.gguf",
            url=hf_hub_url(model_id, chosen.rfilename, endpoint=self.endpoint),
            size_bytes=chosen.size,
            sha256=sha256,
        )

    def _filter(
        self, models: list[ArtifactDescriptor], category: Optional[ModelCategory]
    ) -> list[ArtifactDescriptor]:
        if category is None:
            return list(models)
        return [m for m in models if m.category == category]

    async def _get_cached(
        self, cache_id: str, allow_expired: bool = False
    ) -> Optional[list[ArtifactDescriptor]]:
        if self._cache is None:
            return None

        entry = await self._cache.get(cache_id)
        if entry is None:
            return None

        age = (datetime.now() - entry.cached_at).total_seconds()
        if age > self.cache_seconds and not allow_expired:
            return None

        return entry.models

    async def _set_cached(self, cache_id: str, models: list[ArtifactDescriptor]) -> None:
        if self._cache is None:
            return
        await self._cache.set(CatalogCache(cached_at=datetime.now(), models=models), cache_id)
