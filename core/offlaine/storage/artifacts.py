"""
Directory-per-model layout for installed artifacts.

    <models_dir>/
        <sanitized id>/
            metadata.json        InstalledArtifact
            model.gguf           payload
            model.gguf.part      payload still streaming
        .temp/                   scratch space, safe to wipe
"""

import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from offlaine.config import INTEGRITY_TOLERANCE, MODELS_DIR, TEMP_DIR_NAME
from offlaine.models.schemas import ArtifactDescriptor, ArtifactFile, InstalledArtifact
from offlaine.storage.filesystem import FileSystem, LocalFileSystem
from offlaine.utils.logging import logger

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9\-_]")


def sanitize_model_id(model_id: str) -> str:
    """Directory name for a model id: anything outside [A-Za-z0-9_-] becomes '_'."""
    return _UNSAFE_CHARS.sub("_", model_id)


class ArtifactFileStore:
    """Create, verify and delete artifact directories."""

    METADATA_FILE = "metadata.json"
    PARTIAL_SUFFIX = ".part"

    def __init__(
        self,
        models_dir: Path | None = None,
        fs: FileSystem | None = None,
        tolerance: float = INTEGRITY_TOLERANCE,
    ):
        self.models_dir = Path(models_dir or MODELS_DIR)
        self.fs = fs or LocalFileSystem()
        self.tolerance = tolerance

    async def initialize(self) -> None:
        """Ensure the models directory exists."""
        await self.fs.mkdir(self.models_dir)

    # ─────────────────────────────────────────────────────────
    # PATHS
    # ─────────────────────────────────────────────────────────

    @property
    def temp_dir(self) -> Path:
        return self.models_dir / TEMP_DIR_NAME

    def model_dir(self, model_id: str) -> Path:
        return self.models_dir / sanitize_model_id(model_id)

    def payload_path(self, model_id: str, filename: str) -> Path:
        return self.model_dir(model_id) / filename

    def partial_path(self, model_id: str, filename: str) -> Path:
        return self.model_dir(model_id) / f"{filename}{self.PARTIAL_SUFFIX}"

    def metadata_path(self, model_id: str) -> Path:
        return self.model_dir(model_id) / self.METADATA_FILE

    # ─────────────────────────────────────────────────────────
    # PARTIAL PAYLOADS
    # ─────────────────────────────────────────────────────────

    async def prepare(self, model_id: str) -> Path:
        """Create the model directory for a new transfer."""
        model_dir = self.model_dir(model_id)
        await self.fs.mkdir(model_dir)
        return model_dir

    async def partial_size(self, model_id: str, filename: str) -> int:
        """Bytes already on disk for a partial payload, 0 if none."""
        path = self.partial_path(model_id, filename)
        if not await self.fs.exists(path):
            return 0
        return (await self.fs.stat(path)).size

    async def discard_partials(self, model_id: str) -> None:
        """
        Remove every partial payload of a model.

        The directory itself goes too unless it holds a previous install.
        """
        model_dir = self.model_dir(model_id)
        if not await self.fs.exists(model_dir):
            return

        if not await self.fs.exists(self.metadata_path(model_id)):
            await self.fs.unlink(model_dir)
            logger.debug(f"Removed partial directory {model_dir}")
            return

        for entry in await self.fs.read_dir(model_dir):
            if entry.name.endswith(self.PARTIAL_SUFFIX):
                await self.fs.unlink(entry.path)

    # ─────────────────────────────────────────────────────────
    # VERIFICATION & INSTALL
    # ─────────────────────────────────────────────────────────

    async def verify(self, model_id: str, files: list[ArtifactFile]) -> list[str]:
        """
        Check staged payload files before they are promoted.

        Each file must exist; a declared size must match within the size
        tolerance. This is a size heuristic, not tamper detection; a SHA-256
        is only compared when the catalog supplied one.

        Returns:
            List of problems, empty when every file passed
        """
        problems = []

        for f in files:
            path = self.partial_path(model_id, f.filename)
            if not await self.fs.exists(path):
                problems.append(f"{f.filename} missing")
                continue

            actual = (await self.fs.stat(path)).size
            if f.size_bytes:
                allowed = f.size_bytes * self.tolerance
                if abs(actual - f.size_bytes) > allowed:
                    problems.append(
                        f"{f.filename} is {actual} bytes, declared {f.size_bytes} "
                        f"(tolerance {self.tolerance:.0%})"
                    )
                    continue

            if f.sha256:
                logger.info(f"Verifying catalog checksum for {model_id}/{f.filename}")
                digest = await self.fs.sha256(path)
                if digest.lower() != f.sha256.lower():
                    problems.append(f"{f.filename} checksum mismatch")

        return problems

    async def promote(
        self, descriptor: ArtifactDescriptor, files: list[ArtifactFile]
    ) -> InstalledArtifact:
        """
        Move verified partial files into place and write metadata.json.

        metadata.json is written last, through a temporary file, so a model
        directory only ever counts as installed once its payload is complete.
        """
        model_id = descriptor.id

        for f in files:
            await self.fs.rename(
                self.partial_path(model_id, f.filename),
                self.payload_path(model_id, f.filename),
            )

        installed = InstalledArtifact(
            model=descriptor,
            installed_at=datetime.now(),
            files=[f.filename for f in files],
        )
        await self.write_metadata(installed)

        logger.info(f"Installed {model_id} to {self.model_dir(model_id)}")
        return installed

    # ─────────────────────────────────────────────────────────
    # INSTALLED ARTIFACTS
    # ─────────────────────────────────────────────────────────

    async def write_metadata(self, installed: InstalledArtifact) -> None:
        model_id = installed.model.id
        target = self.metadata_path(model_id)
        tmp = target.with_name(target.name + ".tmp")
        await self.fs.write_file(tmp, installed.model_dump_json(indent=2))
        await self.fs.rename(tmp, target)

    async def read_metadata(self, model_id: str) -> Optional[InstalledArtifact]:
        path = self.metadata_path(model_id)
        if not await self.fs.exists(path):
            return None
        return await self._read_metadata_file(path)

    async def _read_metadata_file(self, path: Path) -> Optional[InstalledArtifact]:
        try:
            return InstalledArtifact.model_validate_json(await self.fs.read_file(path))
        except (ValidationError, OSError, ValueError) as e:
            logger.warning(f"Unreadable metadata at {path}: {e}")
            return None

    async def list_installed(self) -> list[InstalledArtifact]:
        """All artifacts with a readable metadata.json."""
        if not await self.fs.exists(self.models_dir):
            return []

        installed = []
        for entry in await self.fs.read_dir(self.models_dir):
            if not entry.is_dir or entry.name == TEMP_DIR_NAME:
                continue
            metadata_path = entry.path / self.METADATA_FILE
            if not await self.fs.exists(metadata_path):
                continue
            record = await self._read_metadata_file(metadata_path)
            if record is not None:
                installed.append(record)

        return installed

    async def is_installed(self, model_id: str) -> bool:
        return await self.fs.exists(self.metadata_path(model_id))

    async def size_on_disk(self, model_id: str) -> int:
        model_dir = self.model_dir(model_id)
        if not await self.fs.exists(model_dir):
            return 0
        return (await self.fs.stat(model_dir)).size

    async def remove(self, model_id: str) -> int:
        """
        Delete a model directory.

        Returns:
            Bytes freed, 0 if nothing was there
        """
        model_dir = self.model_dir(model_id)
        if not await self.fs.exists(model_dir):
            return 0

        size = await self.size_on_disk(model_id)
        await self.fs.unlink(model_dir)
        logger.info(f"Deleted {model_dir}")
        return size

    async def validate(self, model_id: str) -> bool:
        """An installed artifact has its metadata and every payload file listed in it."""
        installed = await self.read_metadata(model_id)
        if installed is None:
            return False

        for filename in installed.files:
            if not await self.fs.exists(self.payload_path(model_id, filename)):
                return False
        return True
