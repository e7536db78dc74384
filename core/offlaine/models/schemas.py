"""
Records owned by the model lifecycle manager.
All of them serialise to plain JSON for the key-value store and metadata files.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

MB = 1024 * 1024
DEFAULT_PAYLOAD_FILE = "model.gguf"


class ModelCategory(str, Enum):
    """Catalog categories, inferred from tags."""

    WRITING_ASSISTANT = "writing-assistant"
    CODE_HELPER = "code-helper"
    LANGUAGE_TRANSLATION = "language-translation"
    IMAGE_PROCESSING = "image-processing"
    VOICE_PROCESSING = "voice-processing"
    SPECIALIZED = "specialized"
    CREATIVE = "creative"
    CUSTOM = "custom"


class PerformanceTier(str, Enum):
    """Device classification, also used as a model size hint."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TransferStatus(str, Enum):
    """Lifecycle of a single artifact transfer."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TransferStatus.COMPLETED,
            TransferStatus.FAILED,
            TransferStatus.CANCELLED,
        )


class ArtifactFile(BaseModel):
    """One payload file belonging to an artifact."""

    model_config = ConfigDict(frozen=True)

    filename: str  # "model.gguf", "tokenizer.json", ...
    url: str
    size_bytes: Optional[int] = None  # Declared size, checked within tolerance
    sha256: Optional[str] = None  # Only verified when the catalog provides it


class ArtifactDescriptor(BaseModel):
    """Immutable catalog entry for a downloadable model."""

    model_config = ConfigDict(frozen=True)

    id: str  # "vendor/name"
    name: str
    description: str = ""
    category: ModelCategory = ModelCategory.WRITING_ASSISTANT
    size_mb: float  # Declared size
    memory_requirement_mb: float = 0
    performance_tier: PerformanceTier = PerformanceTier.MEDIUM
    tags: tuple[str, ...] = ()
    author: str = "Unknown"
    license: str = "Unknown"
    download_url: str = ""
    files: tuple[ArtifactFile, ...] = ()
    context_length: int = 4096
    downloads: int = 0
    likes: int = 0
    created_at: Optional[datetime] = None

    @property
    def size_bytes(self) -> int:
        return int(self.size_mb * MB)

    def payload_files(self) -> list[ArtifactFile]:
        """
        Files to fetch for this artifact.

        A descriptor without an explicit file list is a single GGUF payload
        whose declared size is the descriptor size.
        """
        if self.files:
            return list(self.files)
        return [
            ArtifactFile(
                filename=DEFAULT_PAYLOAD_FILE,
                url=self.download_url,
                size_bytes=self.size_bytes,
            )
        ]


class TransferState(BaseModel):
    """Persisted state of one artifact transfer. One per model id."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    descriptor: Optional[ArtifactDescriptor] = None  # Needed to resume after a restart
    status: TransferStatus = TransferStatus.PENDING
    progress: float = 0.0  # 0-100
    bytes_transferred: int = 0
    total_bytes: int = 0
    local_path: Optional[str] = None  # Set only once completed
    error: Optional[str] = None  # Set only once failed
    error_code: Optional[str] = None
    restarted_from_zero: bool = False
    started_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class DownloadProgress(BaseModel):
    """Read-only progress snapshot handed to observers."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_id: str
    status: TransferStatus
    progress: float
    bytes_transferred: int = 0
    total_bytes: int = 0
    download_speed: float = 0.0  # bytes/s
    estimated_time_remaining: float = 0.0  # seconds
    error: Optional[str] = None


class InstalledArtifact(BaseModel):
    """Contents of an artifact's metadata.json."""

    model: ArtifactDescriptor
    installed_at: datetime = Field(default_factory=datetime.now)
    version: str = "1.0"
    format: str = "gguf"
    files: list[str] = []
    compressed: bool = False
    compressed_at: Optional[datetime] = None


class StorageAnalytics(BaseModel):
    """Aggregate disk usage, recomputed wholesale after every install/delete."""

    model_count: int = 0
    total_models_size_mb: float = 0.0
    space_used_bytes: int = 0
    space_available_bytes: int = 0
    last_cleanup: Optional[datetime] = None
    computed_at: Optional[datetime] = None


class OptimizationReport(BaseModel):
    """Result of a storage optimization pass."""

    actions: list[str] = []
    bytes_reclaimed: int = 0


class PersonalizationRecord(BaseModel):
    """Per-model user metadata."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    custom_name: Optional[str] = None
    favorited: bool = False
    last_used: Optional[datetime] = None
    usage_count: int = 0
    custom_settings: dict[str, Any] = {}
    user_rating: Optional[int] = Field(default=None, ge=1, le=5)
    user_notes: Optional[str] = None
