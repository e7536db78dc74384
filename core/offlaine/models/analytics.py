"""Storage accounting and cleanup for installed model artifacts."""

from datetime import datetime, timedelta
from itertools import groupby
from typing import TYPE_CHECKING, Optional

from offlaine.config import COMPRESSION_ESTIMATE_BYTES, STALE_AFTER_DAYS
from offlaine.errors import OfflaineError
from offlaine.models.schemas import InstalledArtifact, OptimizationReport, StorageAnalytics
from offlaine.storage.artifacts import ArtifactFileStore
from offlaine.storage.kv_store import KeyValueStore
from offlaine.storage.records import RecordStore
from offlaine.utils.logging import logger

if TYPE_CHECKING:
    from offlaine.models.downloader import ModelDownloadManager


class StorageAnalyticsEngine:
    """
    Aggregate disk usage of installed artifacts.

    Analytics are advisory: a failed recompute is logged and yields a zeroed
    snapshot instead of raising. When a download manager is given, the
    engine recomputes after every install, delete and cancel.
    """

    KEY = "storage_analytics"

    def __init__(
        self,
        artifacts: ArtifactFileStore,
        kv: KeyValueStore,
        manager: Optional["ModelDownloadManager"] = None,
        stale_after_days: int = STALE_AFTER_DAYS,
        compression_estimate_bytes: int = COMPRESSION_ESTIMATE_BYTES,
    ):
        self.artifacts = artifacts
        self.manager = manager
        self.stale_after_days = stale_after_days
        self.compression_estimate_bytes = compression_estimate_bytes
        self._records = RecordStore(kv, self.KEY, StorageAnalytics)

        if manager is not None:
            manager.add_library_listener(self.recompute)

    async def get(self) -> StorageAnalytics:
        """Last persisted snapshot, or an empty one."""
        return await self._records.get() or StorageAnalytics()

    async def recompute(self) -> StorageAnalytics:
        """Rebuild the snapshot from what is on disk and persist it wholesale."""
        try:
            installed = await self.artifacts.list_installed()
            previous = await self._records.get()

            used = 0
            for record in installed:
                used += await self.artifacts.size_on_disk(record.model.id)

            snapshot = StorageAnalytics(
                model_count=len(installed),
                total_models_size_mb=round(sum(r.model.size_mb for r in installed), 2),
                space_used_bytes=used,
                space_available_bytes=await self.artifacts.fs.free_space(
                    self.artifacts.models_dir
                ),
                last_cleanup=previous.last_cleanup if previous else None,
                computed_at=datetime.now(),
            )
            await self._records.set(snapshot)
            return snapshot

        except Exception as e:
            logger.error(f"Failed to compute storage analytics: {e}")
            return StorageAnalytics(computed_at=datetime.now())

    async def optimize(self) -> OptimizationReport:
        """
        Reclaim space in three passes: duplicates, stale artifacts, temp files.

        Every pass only acts on what it has not already handled, so running
        optimize twice in a row reclaims nothing the second time.
        """
        report = OptimizationReport()
        installed = await self.artifacts.list_installed()

        await self._remove_duplicates(installed, report)
        await self._compress_stale(report)
        await self._clear_temp(report)

        previous = await self.get()
        await self._records.set(previous.model_copy(update={"last_cleanup": datetime.now()}))
        await self.recompute()

        logger.info(
            f"Storage optimization finished: {len(report.actions)} actions, "
            f"{report.bytes_reclaimed} bytes reclaimed"
        )
        return report

    async def _remove_duplicates(
        self, installed: list[InstalledArtifact], report: OptimizationReport
    ) -> None:
        def key(record: InstalledArtifact):
            return (record.model.name, record.model.size_mb)

        ordered = sorted(installed, key=lambda r: (key(r), r.installed_at))
        for (name, _), group in groupby(ordered, key=key):
            duplicates = list(group)[1:]
            for record in duplicates:
                try:
                    freed = await self._delete(record.model.id)
                except OfflaineError as e:
                    logger.warning(f"Skipping duplicate {record.model.id}: {e}")
                    continue
                report.bytes_reclaimed += freed
                report.actions.append(f"Removed duplicate {record.model.id} of {name}")

    async def _delete(self, model_id: str) -> int:
        if self.manager is not None:
            return await self.manager.delete(model_id)
        return await self.artifacts.remove(model_id)

    async def _compress_stale(self, report: OptimizationReport) -> None:
        cutoff = datetime.now() - timedelta(days=self.stale_after_days)

        for record in await self.artifacts.list_installed():
            if record.compressed or record.installed_at >= cutoff:
                continue

            # Placeholder codec: only flags the artifact and books an estimate
            compressed = record.model_copy(
                update={"compressed": True, "compressed_at": datetime.now()}
            )
            await self.artifacts.write_metadata(compressed)
            report.bytes_reclaimed += self.compression_estimate_bytes
            report.actions.append(f"Compressed stale model {record.model.id}")

    async def _clear_temp(self, report: OptimizationReport) -> None:
        fs = self.artifacts.fs
        temp_dir = self.artifacts.temp_dir
        if not await fs.exists(temp_dir):
            return

        size = (await fs.stat(temp_dir)).size
        await fs.unlink(temp_dir)
        if size:
            report.bytes_reclaimed += size
        report.actions.append(f"Cleared temporary files ({size} bytes)")
