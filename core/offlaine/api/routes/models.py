"""Models API routes."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from offlaine.api.schemas import DownloadRequest, PersonalizationUpdate, SuccessResponse
from offlaine.api.services import Services, get_services
from offlaine.errors import NotFound
from offlaine.models.schemas import ModelCategory
from offlaine.utils.logging import logger

router = APIRouter(prefix="/models", tags=["models"])


# ─────────────────────────────────────────────────────────
# CATALOG
# ─────────────────────────────────────────────────────────


@router.get("/search")
async def search_models(
    q: str = "",
    category: Optional[ModelCategory] = None,
    limit: int = 20,
    services: Services = Depends(get_services),
):
    """Search the catalog for GGUF models."""
    logger.info(f"Searching for models: {q}")
    results = await services.catalog.search(q, category, limit)
    return {"models": [r.model_dump(mode="json") for r in results]}


@router.get("/curated")
async def curated_models(
    category: Optional[ModelCategory] = None,
    services: Services = Depends(get_services),
):
    """Featured models, resolved against the catalog."""
    results = await services.catalog.curated(category)
    return {"models": [r.model_dump(mode="json") for r in results]}


@router.get("/installed")
async def list_installed(services: Services = Depends(get_services)):
    """List installed models with their personalization."""
    installed = await services.manager.list_installed()
    models = []
    for record in installed:
        personalization = await services.personalization.get(record.model.id)
        models.append(
            {
                **record.model_dump(mode="json"),
                "personalization": personalization.model_dump(mode="json")
                if personalization
                else None,
            }
        )
    return {"models": models}


# ─────────────────────────────────────────────────────────
# DOWNLOADS
# ─────────────────────────────────────────────────────────


@router.get("/downloads")
async def list_downloads(services: Services = Depends(get_services)):
    """Every known transfer, active or finished."""
    return {
        "downloads": [
            services.manager.get_progress(s.model_id).model_dump(mode="json")
            for s in services.manager.list_states()
        ]
    }


@router.post("/download")
async def download_model(request: DownloadRequest, services: Services = Depends(get_services)):
    """Start downloading a model."""
    descriptor = request.descriptor
    if descriptor is None:
        descriptor = await services.catalog.details(request.model_id)
        if descriptor is None:
            raise NotFound(request.model_id, f"{request.model_id} is not in the catalog")

    state = await services.manager.acquire(descriptor)
    return {"status": "started", "download": state.model_dump(mode="json")}


@router.post("/download/{model_id:path}/pause")
async def pause_download(model_id: str, services: Services = Depends(get_services)):
    state = await services.manager.pause(model_id)
    return {"download": state.model_dump(mode="json")}


@router.post("/download/{model_id:path}/resume")
async def resume_download(model_id: str, services: Services = Depends(get_services)):
    state = await services.manager.resume(model_id)
    return {"download": state.model_dump(mode="json")}


@router.post("/download/{model_id:path}/cancel")
async def cancel_download(model_id: str, services: Services = Depends(get_services)):
    await services.manager.cancel(model_id)
    return SuccessResponse(success=True, message=f"Download of {model_id} cancelled")


@router.get("/download/{model_id:path}/status")
async def download_status(model_id: str, services: Services = Depends(get_services)):
    """Check download status with progress info."""
    progress = services.manager.get_progress(model_id)
    if progress is None:
        raise HTTPException(404, "Download not found")
    return progress.model_dump(mode="json")


# ─────────────────────────────────────────────────────────
# STORAGE
# ─────────────────────────────────────────────────────────


@router.get("/storage")
async def storage_analytics(services: Services = Depends(get_services)):
    analytics = await services.analytics.recompute()
    return analytics.model_dump(mode="json")


@router.post("/storage/optimize")
async def optimize_storage(services: Services = Depends(get_services)):
    report = await services.analytics.optimize()
    return report.model_dump(mode="json")


# ─────────────────────────────────────────────────────────
# PER MODEL
# ─────────────────────────────────────────────────────────


@router.get("/{model_id:path}/details")
async def model_details(model_id: str, services: Services = Depends(get_services)):
    """Catalog details plus local install state."""
    descriptor = await services.catalog.details(model_id)
    if descriptor is None:
        raise HTTPException(404, "Model not found")

    return {
        "model": descriptor.model_dump(mode="json"),
        "installed": await services.manager.is_installed(model_id),
    }


@router.get("/{model_id:path}/personalization")
async def get_personalization(model_id: str, services: Services = Depends(get_services)):
    record = await services.personalization.get(model_id)
    if record is None:
        raise HTTPException(404, "No personalization for this model")
    return record.model_dump(mode="json")


@router.patch("/{model_id:path}/personalization")
async def update_personalization(
    model_id: str,
    update: PersonalizationUpdate,
    services: Services = Depends(get_services),
):
    record = await services.personalization.update(model_id, **update.model_dump(exclude_unset=True))
    return record.model_dump(mode="json")


@router.post("/{model_id:path}/usage")
async def record_usage(model_id: str, services: Services = Depends(get_services)):
    record = await services.personalization.record_usage(model_id)
    return record.model_dump(mode="json")


@router.delete("/{model_id:path}")
async def delete_model(model_id: str, services: Services = Depends(get_services)):
    """Delete an installed model, its metadata and personalization."""
    freed = await services.manager.delete(model_id)
    return {"status": "deleted", "bytes_freed": freed}
