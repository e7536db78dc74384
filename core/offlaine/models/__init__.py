"""Models module - Model catalog, downloading, storage analytics and personalization."""

from offlaine.models.schemas import (
    ArtifactDescriptor,
    ArtifactFile,
    DownloadProgress,
    InstalledArtifact,
    ModelCategory,
    OptimizationReport,
    PerformanceTier,
    PersonalizationRecord,
    StorageAnalytics,
    TransferState,
    TransferStatus,
)

__all__ = [
    "ArtifactDescriptor",
    "ArtifactFile",
    "DownloadProgress",
    "InstalledArtifact",
    "ModelCategory",
    "OptimizationReport",
    "PerformanceTier",
    "PersonalizationRecord",
    "StorageAnalytics",
    "TransferState",
    "TransferStatus",
]
