"""Device tier classification from the aggregate score and static facts."""

from offlaine.models.schemas import PerformanceTier

SCORE_REFERENCE = 2000
MEMORY_REFERENCE_MB = 8000
CORES_REFERENCE = 8

SCORE_WEIGHT = 0.6
MEMORY_WEIGHT = 0.3
CORES_WEIGHT = 0.1

HIGH_THRESHOLD = 0.7
MEDIUM_THRESHOLD = 0.4

TIER_DESCRIPTIONS = {
    PerformanceTier.LOW: "Basic device suitable for small models and simple tasks",
    PerformanceTier.MEDIUM: "Mid-range device capable of running medium-sized models efficiently",
    PerformanceTier.HIGH: "High-performance device that can handle large models and complex tasks",
}

# (max, recommended) model size in MB
MODEL_SIZE_GUIDANCE = {
    PerformanceTier.LOW: (500, 250),
    PerformanceTier.MEDIUM: (2000, 1000),
    PerformanceTier.HIGH: (8000, 4000),
}


def overall_score(score: float, memory_mb: float, cores: int) -> float:
    """Weighted blend of the normalized inputs, in [0, 1]."""
    normalized_score = min(max(score, 0) / SCORE_REFERENCE, 1)
    normalized_memory = min(max(memory_mb, 0) / MEMORY_REFERENCE_MB, 1)
    normalized_cores = min(max(cores, 0) / CORES_REFERENCE, 1)

    overall = (
        normalized_score * SCORE_WEIGHT
        + normalized_memory * MEMORY_WEIGHT
        + normalized_cores * CORES_WEIGHT
    )
    # Float noise must not push an exact 0.7 / 0.4 under its threshold
    return round(overall, 9)


def classify_tier(score: float, memory_mb: float, cores: int) -> PerformanceTier:
    """
    Classify a device. Pure and deterministic.

    Args:
        score: Aggregate benchmark score
        memory_mb: Total device memory in MB
        cores: CPU core count

    Returns:
        HIGH at overall >= 0.7, MEDIUM at >= 0.4, otherwise LOW
    """
    overall = overall_score(score, memory_mb, cores)

    if overall >= HIGH_THRESHOLD:
        return PerformanceTier.HIGH
    if overall >= MEDIUM_THRESHOLD:
        return PerformanceTier.MEDIUM
    return PerformanceTier.LOW


def describe_tier(tier: PerformanceTier) -> str:
    return TIER_DESCRIPTIONS[tier]


def model_size_guidance(tier: PerformanceTier) -> dict[str, int]:
    max_mb, recommended_mb = MODEL_SIZE_GUIDANCE[tier]
    return {"max_mb": max_mb, "recommended_mb": recommended_mb}
