"""Device capability and resource monitoring API routes."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from offlaine.api.schemas import MonitorStartRequest, SuccessResponse, ThresholdsUpdate
from offlaine.api.services import Services, get_services
from offlaine.device.tiers import describe_tier, model_size_guidance
from offlaine.models.schemas import PerformanceTier

router = APIRouter(prefix="/device", tags=["device"])


# ─────────────────────────────────────────────────────────
# BENCHMARK
# ─────────────────────────────────────────────────────────


@router.post("/benchmark")
async def run_benchmark(services: Services = Depends(get_services)):
    """Start a benchmark in the background. Poll /device/benchmark/status."""
    services.start_benchmark()
    return {"status": "started"}


@router.get("/benchmark")
async def get_benchmark(services: Services = Depends(get_services)):
    """Last complete benchmark result."""
    result = await services.device.get_cached()
    if result is None:
        raise HTTPException(404, "No benchmark has completed yet")
    return result.model_dump(mode="json")


@router.delete("/benchmark")
async def clear_benchmark(services: Services = Depends(get_services)):
    await services.device.clear_cache()
    return SuccessResponse(success=True, message="Benchmark cache cleared")


@router.get("/benchmark/status")
async def benchmark_status(services: Services = Depends(get_services)):
    status = await services.device.status()
    fraction, test_name = services.benchmark_progress
    return {
        **status.model_dump(mode="json"),
        "progress": fraction if status.state == "running" else None,
        "current_test": test_name if status.state == "running" else None,
    }


@router.post("/benchmark/abort")
async def abort_benchmark(services: Services = Depends(get_services)):
    services.device.abort()
    return SuccessResponse(success=True, message="Benchmark abort requested")


@router.get("/recommendations")
async def recommendations(
    tier: Optional[PerformanceTier] = None,
    ai_score: Optional[float] = None,
    services: Services = Depends(get_services),
):
    """
    Ranked model recommendations.

    Uses the cached benchmark unless both tier and ai_score are given.
    """
    accelerator = None
    if tier is None or ai_score is None:
        cached = await services.device.get_cached()
        if cached is None:
            raise HTTPException(404, "Run a benchmark or pass tier and ai_score")
        tier = tier or cached.performance_tier
        ai_score = cached.ai_score if ai_score is None else ai_score
        accelerator = cached.accelerator

    return {
        "tier": tier.value,
        "description": describe_tier(tier),
        "model_size": model_size_guidance(tier),
        "recommendations": [
            r.model_dump(mode="json")
            for r in services.device.recommend(tier, ai_score, accelerator)
        ],
    }


# ─────────────────────────────────────────────────────────
# RESOURCE MONITOR
# ─────────────────────────────────────────────────────────


@router.post("/monitor/start")
async def start_monitoring(
    request: MonitorStartRequest, services: Services = Depends(get_services)
):
    session_id = await services.monitor.start(request.model_id, request.task_type)
    return {"session_id": session_id}


@router.post("/monitor/stop")
async def stop_monitoring(services: Services = Depends(get_services)):
    metrics = await services.monitor.stop()
    return {"metrics": metrics.model_dump(mode="json") if metrics else None}


@router.get("/monitor/current")
async def current_usage(services: Services = Depends(get_services)):
    usage = services.monitor.current_usage()
    return {
        "monitoring": services.monitor.is_monitoring,
        "usage": usage.model_dump(mode="json") if usage else None,
    }


@router.get("/monitor/history")
async def usage_history(
    limit: Optional[int] = None,
    model_id: Optional[str] = None,
    services: Services = Depends(get_services),
):
    if model_id:
        samples = services.monitor.usage_for_model(model_id, limit)
    else:
        samples = services.monitor.usage_history(limit)
    return {"samples": [s.model_dump(mode="json") for s in samples]}


@router.delete("/monitor/history")
async def clear_history(services: Services = Depends(get_services)):
    await services.monitor.clear_history()
    return SuccessResponse(success=True)


@router.get("/monitor/report")
async def performance_report(services: Services = Depends(get_services)):
    return services.monitor.report().model_dump(mode="json")


@router.get("/monitor/thresholds")
async def get_thresholds(services: Services = Depends(get_services)):
    return services.monitor.thresholds.model_dump()


@router.patch("/monitor/thresholds")
async def update_thresholds(
    update: ThresholdsUpdate, services: Services = Depends(get_services)
):
    thresholds = services.monitor.update_thresholds(**update.model_dump(exclude_none=True))
    return thresholds.model_dump()
