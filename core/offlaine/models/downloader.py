"""
Download manager for model artifacts.

Each model id has at most one transfer. All state changes for an id go
through that id's lock, and the in-memory TransferState is the single source
of truth that gets mirrored to the key-value store.

    pending ──► downloading ◄──► paused
                    │
                    ├──► completed
                    └──► failed          (cancel: state removed, no trace)
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from offlaine.config import MAX_CONCURRENT_DOWNLOADS
from offlaine.errors import (
    AlreadyActive,
    InsufficientStorage,
    IntegrityMismatch,
    InvalidTransition,
    NotFound,
    NotInstalled,
    OfflaineError,
    TransportFailure,
)
from offlaine.models.fetcher import Fetcher
from offlaine.models.personalization import PersonalizationStore
from offlaine.models.schemas import (
    ArtifactDescriptor,
    ArtifactFile,
    DownloadProgress,
    InstalledArtifact,
    TransferState,
    TransferStatus,
)
from offlaine.storage.artifacts import ArtifactFileStore
from offlaine.storage.kv_store import KeyValueStore
from offlaine.storage.records import RecordStore
from offlaine.utils.logging import logger

ProgressCallback = Callable[[DownloadProgress], None]
LibraryListener = Callable[[], Awaitable[object]]


@dataclass
class _Transfer:
    """Runtime side of one transfer: the state plus what drives it."""

    state: TransferState
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    callbacks: list[ProgressCallback] = field(default_factory=list)
    streaming: bool = False  # Holds a transfer slot and is fetching
    finalizing: bool = False  # Verifying / installing, can no longer pause
    removed: bool = False
    speed: float = 0.0  # bytes/s, smoothed
    last_tick: Optional[tuple[float, int]] = None
    persisted_percent: int = -1
    flush_task: Optional[asyncio.Task] = None

    @property
    def model_id(self) -> str:
        return self.state.model_id


class ModelDownloadManager:
    """
    Acquire, pause, resume, cancel and delete model artifacts.

    Transfers for different ids run concurrently up to ``max_concurrent``;
    transfers beyond that wait in ``pending``. Nothing is retried here - a
    failed transfer stays failed until the caller acquires it again.
    """

    STATE_NAMESPACE = "download_state"
    SPEED_SMOOTHING = 0.3

    def __init__(
        self,
        kv: KeyValueStore,
        artifacts: ArtifactFileStore,
        fetcher: Fetcher,
        personalization: Optional[PersonalizationStore] = None,
        max_concurrent: int = MAX_CONCURRENT_DOWNLOADS,
    ):
        self.artifacts = artifacts
        self.fetcher = fetcher
        self.personalization = personalization
        self.max_concurrent = max_concurrent

        self._records = RecordStore(kv, self.STATE_NAMESPACE, TransferState)
        self._transfers: dict[str, _Transfer] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._slots = asyncio.Semaphore(max_concurrent)
        self._listeners: list[ProgressCallback] = []
        self._library_listeners: list[LibraryListener] = []

    # ─────────────────────────────────────────────────────────
    # LIFECYCLE
    # ─────────────────────────────────────────────────────────

    async def recover(self) -> list[TransferState]:
        """
        Load persisted transfers after a restart.

        Nothing is streaming yet, so transfers that were pending or
        downloading come back as paused.
        """
        await self.artifacts.initialize()

        recovered = []
        for state in await self._records.list_all():
            if state.model_id in self._transfers:
                continue

            if not state.status.is_terminal:
                state.status = TransferStatus.PAUSED
                state.updated_at = datetime.now()
                await self._records.set(state, state.model_id)

            transfer = _Transfer(state=state, lock=self._lock_for(state.model_id))
            transfer.persisted_percent = int(state.progress)
            self._transfers[state.model_id] = transfer
            recovered.append(state.model_copy())

        logger.info(f"Recovered {len(recovered)} transfer states")
        return recovered

    async def shutdown(self) -> None:
        """Stop every running transfer, leaving it paused."""
        for model_id, transfer in list(self._transfers.items()):
            if transfer.state.status in (TransferStatus.PENDING, TransferStatus.DOWNLOADING):
                try:
                    await self.pause(model_id)
                except InvalidTransition:
                    # Finalizing: let it finish
                    if transfer.task:
                        await asyncio.gather(transfer.task, return_exceptions=True)
        logger.info("Download manager stopped")

    # ─────────────────────────────────────────────────────────
    # TRANSITIONS
    # ─────────────────────────────────────────────────────────

    async def acquire(
        self,
        descriptor: ArtifactDescriptor,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TransferState:
        """
        Start downloading an artifact.

        Args:
            descriptor: Catalog entry to install
            on_progress: Optional callback receiving DownloadProgress snapshots

        Returns:
            Snapshot of the new transfer state

        Raises:
            AlreadyActive: A pending, downloading or paused transfer exists
            InsufficientStorage: Declared size exceeds free space
        """
        model_id = descriptor.id
        lock = self._lock_for(model_id)

        async with lock:
            current = self._transfers.get(model_id)
            if current and not current.state.status.is_terminal:
                raise AlreadyActive(model_id)

            files = descriptor.payload_files()
            required = sum(f.size_bytes or 0 for f in files) or descriptor.size_bytes
            available = await self.artifacts.fs.free_space(self.artifacts.models_dir)
            if required > available:
                raise InsufficientStorage(model_id, required, available)

            state = TransferState(
                model_id=model_id,
                descriptor=descriptor,
                status=TransferStatus.PENDING,
                total_bytes=required,
            )
            transfer = _Transfer(state=state, lock=lock)
            if on_progress:
                transfer.callbacks.append(on_progress)
            self._transfers[model_id] = transfer

            await self._records.set(state, model_id)
            logger.info(f"Queued download of {model_id} ({required} bytes)")

            self._start(transfer, resume=False)
            return state.model_copy()

    async def pause(self, model_id: str) -> TransferState:
        """
        Stop a running transfer and keep its partial payload.

        Raises:
            NotFound: Unknown model id
            InvalidTransition: Transfer is terminal or already being installed
        """
        transfer = self._get(model_id)

        async with transfer.lock:
            status = transfer.state.status
            if status == TransferStatus.PAUSED:
                return transfer.state.model_copy()
            if status not in (TransferStatus.PENDING, TransferStatus.DOWNLOADING):
                raise InvalidTransition(model_id, status.value, "pause")
            if transfer.finalizing:
                raise InvalidTransition(model_id, "verifying", "pause")

            task = self._request_stop(transfer)
            self._set_status(transfer, TransferStatus.PAUSED)
            await self._records.set(transfer.state, model_id)

        if task:
            await asyncio.gather(task, return_exceptions=True)

        self._emit(transfer)
        logger.info(f"Paused {model_id} at {transfer.state.progress:.1f}%")
        return transfer.state.model_copy()

    async def resume(self, model_id: str) -> TransferState:
        """
        Continue a paused transfer.

        Continues from the partial file's byte offset when the fetcher
        supports range requests; otherwise the partial payload is discarded
        and the transfer restarts from byte zero (flagged on the state).

        Raises:
            NotFound: Unknown model id
            InvalidTransition: Transfer is not paused
        """
        transfer = self._get(model_id)

        async with transfer.lock:
            status = transfer.state.status
            if status != TransferStatus.PAUSED:
                raise InvalidTransition(model_id, status.value, "resume")
            if transfer.state.descriptor is None:
                raise InvalidTransition(model_id, "missing descriptor", "resume")

            transfer.stop_event = asyncio.Event()
            transfer.last_tick = None
            self._set_status(transfer, TransferStatus.PENDING)
            await self._records.set(transfer.state, model_id)

            self._start(transfer, resume=True)
            logger.info(f"Resuming {model_id}")
            return transfer.state.model_copy()

    async def cancel(self, model_id: str) -> None:
        """
        Stop a transfer, delete its partial payload and forget it.

        Observers get a final ``cancelled`` event; nothing is persisted.

        Raises:
            NotFound: Unknown model id
            InvalidTransition: Transfer already finished
        """
        transfer = self._get(model_id)

        async with transfer.lock:
            if transfer.state.status.is_terminal:
                raise InvalidTransition(model_id, transfer.state.status.value, "cancel")
            task = self._request_stop(transfer)

        if task:
            await asyncio.gather(task, return_exceptions=True)

        async with transfer.lock:
            # The transfer may have finished while we waited for it to stop
            if transfer.state.status.is_terminal:
                raise InvalidTransition(model_id, transfer.state.status.value, "cancel")

            transfer.removed = True
            if transfer.flush_task:
                await asyncio.gather(transfer.flush_task, return_exceptions=True)

            await self.artifacts.discard_partials(model_id)
            await self._records.delete(model_id)
            if self._transfers.get(model_id) is transfer:
                del self._transfers[model_id]

            self._set_status(transfer, TransferStatus.CANCELLED)

        self._emit(transfer)
        logger.info(f"Cancelled download of {model_id}")
        await self._notify_library_changed()

    async def delete(self, model_id: str) -> int:
        """
        Remove an installed artifact with its metadata and personalization.

        Returns:
            Bytes freed on disk

        Raises:
            AlreadyActive: A transfer for this id is still in progress
            NotInstalled: Nothing installed under this id
        """
        async with self._lock_for(model_id):
            transfer = self._transfers.get(model_id)
            if transfer and not transfer.state.status.is_terminal:
                raise AlreadyActive(model_id, f"cannot delete {model_id} while transferring")

            if not await self.artifacts.is_installed(model_id):
                raise NotInstalled(model_id)

            freed = await self.artifacts.remove(model_id)

            if transfer:
                transfer.removed = True
                del self._transfers[model_id]
            await self._records.delete(model_id)

            if self.personalization:
                await self.personalization.remove(model_id)

        logger.info(f"Deleted {model_id}, freed {freed} bytes")
        await self._notify_library_changed()
        return freed

    # ─────────────────────────────────────────────────────────
    # QUERIES
    # ─────────────────────────────────────────────────────────

    async def wait(self, model_id: str) -> TransferState:
        """Wait until the current run of a transfer stops (finished, failed or paused)."""
        transfer = self._transfers.get(model_id)
        if transfer is None:
            raise NotFound(model_id)

        if transfer.task:
            await asyncio.gather(asyncio.shield(transfer.task), return_exceptions=True)
        return transfer.state.model_copy()

    def get_state(self, model_id: str) -> Optional[TransferState]:
        transfer = self._transfers.get(model_id)
        return transfer.state.model_copy() if transfer else None

    def get_progress(self, model_id: str) -> Optional[DownloadProgress]:
        transfer = self._transfers.get(model_id)
        return self._snapshot(transfer) if transfer else None

    def list_states(self) -> list[TransferState]:
        return [t.state.model_copy() for t in self._transfers.values()]

    def active_ids(self) -> list[str]:
        return [
            model_id
            for model_id, t in self._transfers.items()
            if not t.state.status.is_terminal
        ]

    async def list_installed(self) -> list[InstalledArtifact]:
        return await self.artifacts.list_installed()

    async def is_installed(self, model_id: str) -> bool:
        return await self.artifacts.is_installed(model_id)

    async def get_model_path(self, model_id: str) -> Optional[Path]:
        if not await self.artifacts.is_installed(model_id):
            return None
        return self.artifacts.model_dir(model_id)

    async def validate_integrity(self, model_id: str) -> bool:
        """Installed artifact still has its metadata and every payload file."""
        return await self.artifacts.validate(model_id)

    def add_listener(self, callback: ProgressCallback) -> Callable[[], None]:
        """Receive progress for every transfer. Returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def add_library_listener(self, listener: LibraryListener) -> None:
        """Coroutine function called after installs, deletes and cancels."""
        self._library_listeners.append(listener)

    # ─────────────────────────────────────────────────────────
    # TRANSFER TASK
    # ─────────────────────────────────────────────────────────

    def _start(self, transfer: _Transfer, resume: bool) -> None:
        transfer.task = asyncio.create_task(
            self._run(transfer, resume),
            name=f"download:{transfer.model_id}",
        )

    def _request_stop(self, transfer: _Transfer) -> Optional[asyncio.Task]:
        """Signal the transfer task to stop. Caller holds the transfer lock."""
        transfer.stop_event.set()
        task = transfer.task
        # Still queued for a slot: nothing to stop cooperatively
        if task and not transfer.streaming and not task.done():
            task.cancel()
        return task

    async def _run(self, transfer: _Transfer, resume: bool) -> None:
        model_id = transfer.model_id
        descriptor = transfer.state.descriptor

        try:
            async with self._slots:
                async with transfer.lock:
                    if transfer.stop_event.is_set():
                        return
                    transfer.streaming = True
                    self._set_status(transfer, TransferStatus.DOWNLOADING)
                    await self._records.set(transfer.state, model_id)
                self._emit(transfer)

                files = descriptor.payload_files()
                await self.artifacts.prepare(model_id)

                if not await self._stream(transfer, files, resume):
                    return

                async with transfer.lock:
                    if transfer.stop_event.is_set():
                        return
                    transfer.finalizing = True

                problems = await self.artifacts.verify(model_id, files)
                if problems:
                    raise IntegrityMismatch(model_id, problems)

                installed = await self.artifacts.promote(descriptor, files)

                async with transfer.lock:
                    state = transfer.state
                    state.progress = 100.0
                    state.local_path = str(self.artifacts.model_dir(model_id))
                    state.error = None
                    state.error_code = None
                    self._set_status(transfer, TransferStatus.COMPLETED)
                    await self._records.set(state, model_id)

            self._emit(transfer)
            logger.info(f"Download of {model_id} completed ({len(installed.files)} files)")
            await self._notify_library_changed()

        except asyncio.CancelledError:
            # Cancelled by pause/cancel while waiting for a slot
            if transfer.stop_event.is_set():
                return
            raise
        except Exception as e:
            await self._fail(transfer, e)
        finally:
            transfer.streaming = False
            transfer.finalizing = False

    async def _stream(
        self, transfer: _Transfer, files: list[ArtifactFile], resume: bool
    ) -> bool:
        """
        Fetch every payload file into its partial path.

        Returns:
            True when all files were fetched, False when stopped early
        """
        model_id = transfer.model_id
        state = transfer.state

        if resume and not self.fetcher.supports_range:
            logger.warning(
                f"Fetcher cannot continue from an offset, restarting {model_id} from zero"
            )
            await self.artifacts.discard_partials(model_id)
            await self.artifacts.prepare(model_id)
            state.restarted_from_zero = True
            state.bytes_transferred = 0

        known_total = sum(f.size_bytes or 0 for f in files)
        done_bytes = 0

        for f in files:
            offset = 0
            if resume and self.fetcher.supports_range:
                offset = await self.artifacts.partial_size(model_id, f.filename)

            if f.size_bytes and offset >= f.size_bytes:
                done_bytes += offset
                continue

            base = done_bytes

            def on_chunk(so_far: int, file_total: int, base: int = base) -> None:
                total = known_total or (base + file_total)
                self._on_chunk(transfer, base + so_far, total)

            result = await self.fetcher.fetch(
                f.url,
                self.artifacts.partial_path(model_id, f.filename),
                on_chunk=on_chunk,
                offset=offset,
                stop_event=transfer.stop_event,
            )
            if not result.completed:
                return False
            done_bytes += result.bytes_written

        return True

    def _on_chunk(self, transfer: _Transfer, bytes_so_far: int, total: int) -> None:
        """Fold one received chunk into the state, then notify observers."""
        if transfer.removed or transfer.stop_event.is_set():
            return

        state = transfer.state
        now = time.monotonic()
        if transfer.last_tick is not None:
            last_time, last_bytes = transfer.last_tick
            elapsed = now - last_time
            if elapsed > 0 and bytes_so_far >= last_bytes:
                instant = (bytes_so_far - last_bytes) / elapsed
                if transfer.speed:
                    transfer.speed += self.SPEED_SMOOTHING * (instant - transfer.speed)
                else:
                    transfer.speed = instant
        transfer.last_tick = (now, bytes_so_far)

        state.bytes_transferred = bytes_so_far
        if total > 0:
            state.total_bytes = total
            # Progress never moves backwards, even after a restart from zero
            state.progress = max(state.progress, min(100.0, bytes_so_far / total * 100))
        state.updated_at = datetime.now()

        if int(state.progress) > transfer.persisted_percent and (
            transfer.flush_task is None or transfer.flush_task.done()
        ):
            transfer.persisted_percent = int(state.progress)
            transfer.flush_task = asyncio.create_task(self._flush(transfer))

        self._emit(transfer)

    async def _flush(self, transfer: _Transfer) -> None:
        if transfer.removed:
            return
        await self._records.set(transfer.state, transfer.model_id)

    async def _fail(self, transfer: _Transfer, error: Exception) -> None:
        model_id = transfer.model_id
        if not isinstance(error, OfflaineError):
            error = TransportFailure(str(error) or type(error).__name__)

        logger.error(f"Download of {model_id} failed: {error}")

        async with transfer.lock:
            if transfer.removed:
                return
            await self.artifacts.discard_partials(model_id)

            state = transfer.state
            state.error = str(error)
            state.error_code = error.code
            state.local_path = None
            self._set_status(transfer, TransferStatus.FAILED)
            await self._records.set(state, model_id)

        self._emit(transfer)

    # ─────────────────────────────────────────────────────────
    # HELPERS
    # ─────────────────────────────────────────────────────────

    def _lock_for(self, model_id: str) -> asyncio.Lock:
        """The one lock guarding every transition for model_id, created on first use."""
        return self._locks.setdefault(model_id, asyncio.Lock())

    def _get(self, model_id: str) -> _Transfer:
        transfer = self._transfers.get(model_id)
        if transfer is None:
            raise NotFound(model_id)
        return transfer

    def _set_status(self, transfer: _Transfer, status: TransferStatus) -> None:
        transfer.state.status = status
        transfer.state.updated_at = datetime.now()
        if status != TransferStatus.DOWNLOADING:
            transfer.speed = 0.0

    def _snapshot(self, transfer: _Transfer) -> DownloadProgress:
        state = transfer.state
        remaining = max(state.total_bytes - state.bytes_transferred, 0)
        eta = remaining / transfer.speed if transfer.speed > 0 else 0.0

        return DownloadProgress(
            model_id=state.model_id,
            status=state.status,
            progress=round(state.progress, 2),
            bytes_transferred=state.bytes_transferred,
            total_bytes=state.total_bytes,
            download_speed=round(transfer.speed, 1),
            estimated_time_remaining=round(eta, 1),
            error=state.error,
        )

    def _emit(self, transfer: _Transfer) -> None:
        snapshot = self._snapshot(transfer)
        for callback in [*transfer.callbacks, *self._listeners]:
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Progress listener error for {transfer.model_id}: {e}")

    async def _notify_library_changed(self) -> None:
        for listener in self._library_listeners:
            try:
                await listener()
            except Exception as e:
                logger.error(f"Library listener failed: {e}")
