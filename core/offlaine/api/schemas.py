"""Pydantic models for API request/response schemas."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from offlaine.models.schemas import ArtifactDescriptor


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str


class SuccessResponse(BaseModel):
    """Generic success response."""

    success: bool
    message: str | None = None


class ErrorResponse(BaseModel):
    """Error body for OfflaineError subclasses."""

    code: str
    detail: str
    recoverable: bool = False


class DownloadRequest(BaseModel):
    """Start downloading a model. Without a descriptor, it is looked up in the catalog."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    descriptor: Optional[ArtifactDescriptor] = None


class PersonalizationUpdate(BaseModel):
    """Fields a user may change on a model."""

    custom_name: Optional[str] = None
    favorited: Optional[bool] = None
    custom_settings: Optional[dict[str, Any]] = None
    user_rating: Optional[int] = Field(default=None, ge=1, le=5)
    user_notes: Optional[str] = None


class MonitorStartRequest(BaseModel):
    """Resource monitoring session request."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: Optional[str] = None
    task_type: Optional[str] = None


class ThresholdsUpdate(BaseModel):
    cpu_warning: Optional[float] = None
    cpu_critical: Optional[float] = None
    memory_warning_mb: Optional[float] = None
    memory_critical_mb: Optional[float] = None
    battery_warning: Optional[float] = None
    temperature_warning: Optional[float] = None
