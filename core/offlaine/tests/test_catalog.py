"""Tests for the Hugging Face catalog client, with HfApi mocked out."""

from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from offlaine.device.recommendations import CANDIDATES
from offlaine.models.catalog import (
    HuggingFaceCatalog,
    estimate_memory_requirement,
    estimate_model_size,
    estimate_performance_tier,
    map_category_from_tags,
)
from offlaine.models.schemas import MB, ModelCategory, PerformanceTier


def hf_model(model_id, tags=(), downloads=100, likes=10, siblings=None):
    return SimpleNamespace(
        id=model_id,
        tags=list(tags),
        downloads=downloads,
        likes=likes,
        author=None,
        created_at=None,
        siblings=siblings,
    )


def sibling(name, size=None, sha256=None):
    lfs = SimpleNamespace(sha256=sha256) if sha256 else None
    return SimpleNamespace(rfilename=name, size=size, lfs=lfs)


@pytest.fixture
def api():
    api = MagicMock()
    api.list_models.return_value = [
        hf_model("TheBloke/Writer-GGUF", tags=["gguf", "text-generation"]),
        hf_model("acme/coder-gguf", tags=["gguf", "code"]),
    ]
    return api


@pytest.fixture
def catalog(kv, api):
    return HuggingFaceCatalog(kv, api=api)


# ─────────────────────────────────────────────────────────────────────
# HEURISTICS
# ─────────────────────────────────────────────────────────────────────


class TestHeuristics:
    """Tag and size mapping."""

    @pytest.mark.parametrize(
        "tags,expected",
        [
            (["text-generation", "code"], ModelCategory.WRITING_ASSISTANT),
            (["code"], ModelCategory.CODE_HELPER),
            (["translation"], ModelCategory.LANGUAGE_TRANSLATION),
            (["vision"], ModelCategory.IMAGE_PROCESSING),
            (["speech"], ModelCategory.VOICE_PROCESSING),
            (["medical"], ModelCategory.SPECIALIZED),
            (["story"], ModelCategory.CREATIVE),
            ([], ModelCategory.WRITING_ASSISTANT),
        ],
    )
    def test_category_from_tags(self, tags, expected):
        assert map_category_from_tags(tags) == expected

    def test_performance_tier(self):
        assert estimate_performance_tier(999) == PerformanceTier.LOW
        assert estimate_performance_tier(1000) == PerformanceTier.MEDIUM
        assert estimate_performance_tier(4000) == PerformanceTier.HIGH

    def test_size_estimates(self):
        assert estimate_model_size(0, 0) == 500
        assert estimate_model_size(10_000, 100) > 500
        assert estimate_memory_requirement(1000) == 1800


# ─────────────────────────────────────────────────────────────────────
# SEARCH
# ─────────────────────────────────────────────────────────────────────


class TestSearch:
    """Search, cache and offline fallback."""

    @pytest.mark.asyncio
    async def test_maps_results(self, catalog):
        results = await catalog.search("writer")

        assert [d.id for d in results] == ["TheBloke/Writer-GGUF", "acme/coder-gguf"]
        assert results[0].name == "Writer-GGUF"
        assert results[0].author == "TheBloke"
        assert results[1].category == ModelCategory.CODE_HELPER

    @pytest.mark.asyncio
    async def test_category_filter(self, catalog):
        results = await catalog.search("", category=ModelCategory.CODE_HELPER)
        assert [d.id for d in results] == ["acme/coder-gguf"]

    @pytest.mark.asyncio
    async def test_cached_results_skip_network(self, catalog, api):
        await catalog.search("Writer")
        await catalog.search("writer ")

        assert api.list_models.call_count == 1

    @pytest.mark.asyncio
    async def test_expired_cache_refetches(self, kv, api):
        catalog = HuggingFaceCatalog(kv, api=api, cache_seconds=60)
        await catalog.search("writer")

        entry = await kv.get("hf_models_cache:writer")
        entry["cached_at"] = (datetime.now() - timedelta(minutes=5)).isoformat()
        await kv.set("hf_models_cache:writer", entry)

        await catalog.search("writer")
        assert api.list_models.call_count == 2

    @pytest.mark.asyncio
    async def test_network_failure_uses_stale_cache(self, kv, api):
        catalog = HuggingFaceCatalog(kv, api=api, cache_seconds=0)
        await catalog.search("writer")

        api.list_models.side_effect = OSError("offline")
        results = await catalog.search("writer")

        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_network_failure_without_cache(self, catalog, api):
        api.list_models.side_effect = OSError("offline")
        assert await catalog.search("anything") == []

    @pytest.mark.asyncio
    async def test_clear_cache(self, catalog, api, kv):
        await catalog.search("writer")
        await catalog.clear_cache()

        assert await kv.keys("hf_models_cache:") == []
        await catalog.search("writer")
        assert api.list_models.call_count == 2


# ─────────────────────────────────────────────────────────────────────
# DETAILS
# ─────────────────────────────────────────────────────────────────────


class TestDetails:
    """Payload resolution."""

    @pytest.mark.asyncio
    async def test_prefers_mid_size_quantization(self, catalog, api):
        api.model_info.return_value = hf_model(
            "TheBloke/Writer-GGUF",
            siblings=[
                sibling("README.md", 100),
                sibling("writer.Q8_0.gguf", 8000 * MB),
                sibling("writer.Q4_K_M.gguf", 4200 * MB, sha256="ab" * 32),
            ],
        )

        descriptor = await catalog.details("TheBloke/Writer-GGUF")

        assert len(descriptor.files) == 1
        payload = descriptor.files[0]
        assert payload.filename == "model.gguf"
        assert payload.url.endswith("writer.Q4_K_M.gguf")
        assert payload.size_bytes == 4200 * MB
        assert payload.sha256 is None
        assert descriptor.download_url == payload.url
        assert descriptor.size_mb == 4200.0
        assert descriptor.performance_tier == PerformanceTier.HIGH

    @pytest.mark.asyncio
    async def test_checksums_when_enabled(self, kv, api):
        catalog = HuggingFaceCatalog(kv, api=api, include_checksums=True)
        api.model_info.return_value = hf_model(
            "v/m", siblings=[sibling("m.Q4_0.gguf", 10 * MB, sha256="cd" * 32)]
        )

        descriptor = await catalog.details("v/m")
        assert descriptor.files[0].sha256 == "cd" * 32

    @pytest.mark.asyncio
    async def test_mirror_endpoint(self, kv, api):
        catalog = HuggingFaceCatalog(kv, api=api, endpoint="https://hf-mirror.example")
        api.model_info.return_value = hf_model("v/m", siblings=[sibling("m.Q4_0.gguf", 10 * MB)])

        descriptor = await catalog.details("v/m")
        assert descriptor.download_url.startswith("https://hf-mirror.example/v/m/")

    @pytest.mark.asyncio
    async def test_without_gguf_files(self, catalog, api):
        api.model_info.return_value = hf_model("v/m", siblings=[sibling("config.json")])

        descriptor = await catalog.details("v/m")

        assert descriptor.files == ()
        assert descriptor.download_url == ""

    @pytest.mark.asyncio
    async def test_unknown_repository(self, catalog, api):
        api.model_info.side_effect = OSError("404")
        assert await catalog.details("nobody/nothing") is None


# ─────────────────────────────────────────────────────────────────────
# CURATED
# ─────────────────────────────────────────────────────────────────────


class TestCurated:
    """Featured models come from the recommendation candidates."""

    @pytest.mark.asyncio
    async def test_resolves_candidates(self, catalog, api):
        def model_info(model_id, files_metadata=False):
            if model_id == CANDIDATES[0].model_id:
                raise OSError("404")
            tags = ["code"] if "Coder" in model_id else ["text-generation"]
            return hf_model(model_id, tags=tags, siblings=[sibling("m.Q4_K_M.gguf", 500 * MB)])

        api.model_info.side_effect = model_info

        curated = await catalog.curated()

        assert [d.id for d in curated] == [c.model_id for c in CANDIDATES[1:]]
        assert all(d.download_url for d in curated)

    @pytest.mark.asyncio
    async def test_category_filter(self, catalog, api):
        api.model_info.side_effect = lambda model_id, files_metadata=False: hf_model(
            model_id, tags=["code"] if "Coder" in model_id else ["text-generation"]
        )

        curated = await catalog.curated(ModelCategory.CODE_HELPER)

        assert [d.id for d in curated] == ["Qwen/Qwen2.5-Coder-3B-Instruct-GGUF"]
