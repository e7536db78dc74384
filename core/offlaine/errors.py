"""
Error taxonomy for model acquisition and device benchmarking.

Every error carries a stable ``code`` so API layers and persisted
transfer states can refer to the failure kind without the message text.
"""

from typing import Optional


class OfflaineError(Exception):
    """Base error for OfflAIne Core."""

    code = "offlaine_error"

    def __init__(self, hint: str = "", recoverable: bool = False) -> None:
        super().__init__(f"{self.code}: {hint}" if hint else self.code)
        self.hint = hint
        self.recoverable = recoverable


class AlreadyActive(OfflaineError):
    """A non-terminal transfer already exists for this artifact."""

    code = "already_active"

    def __init__(self, model_id: str, hint: str = "") -> None:
        super().__init__(hint or f"transfer already active for {model_id}")
        self.model_id = model_id


class NotFound(OfflaineError):
    """Operation on an unknown artifact id."""

    code = "not_found"

    def __init__(self, model_id: str, hint: str = "") -> None:
        super().__init__(hint or f"no record for {model_id}")
        self.model_id = model_id


class NotInstalled(NotFound):
    """Delete or lookup of an artifact that is not on disk."""

    code = "not_installed"

    def __init__(self, model_id: str) -> None:
        super().__init__(model_id, f"{model_id} is not installed")


class IntegrityMismatch(OfflaineError):
    """Post-download verification failed."""

    code = "integrity_mismatch"

    def __init__(self, model_id: str, problems: list[str]) -> None:
        super().__init__(f"{model_id}: " + "; ".join(problems))
        self.model_id = model_id
        self.problems = problems


class TransportFailure(OfflaineError):
    """Network or file I/O error while a transfer was streaming."""

    code = "transport_failure"

    def __init__(self, hint: str, status_code: Optional[int] = None) -> None:
        super().__init__(hint, recoverable=True)
        self.status_code = status_code


class InsufficientStorage(OfflaineError):
    """Declared artifact size exceeds the free space on the device."""

    code = "insufficient_storage"

    def __init__(self, model_id: str, required_bytes: int, available_bytes: int) -> None:
        super().__init__(
            f"{model_id} needs {required_bytes} bytes, {available_bytes} available"
        )
        self.model_id = model_id
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes


class InvalidTransition(OfflaineError):
    """Requested state change is not allowed from the current state."""

    code = "invalid_transition"

    def __init__(self, model_id: str, current: str, action: str) -> None:
        super().__init__(f"cannot {action} {model_id} while {current}")
        self.model_id = model_id
        self.current = current
        self.action = action


class BenchmarkInProgress(OfflaineError):
    """A benchmark run is already executing."""

    code = "benchmark_in_progress"


class BenchmarkAborted(OfflaineError):
    """The benchmark was abandoned before every test completed."""

    code = "benchmark_aborted"
