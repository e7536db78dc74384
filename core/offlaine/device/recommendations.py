"""
Rank candidate models for a device.

Candidates come in three fixed tiers. Which tiers are eligible depends on the
device tier and AI score; within them, compatibility is the AI score minus a
per-tier penalty.
"""

from dataclasses import dataclass, field
from typing import Optional

from offlaine.device.schemas import AcceleratorInfo, ModelRecommendation
from offlaine.models.schemas import PerformanceTier

MIN_COMPATIBILITY = 30
HEAVY_MIN_AI_SCORE = 70


@dataclass(frozen=True)
class Candidate:
    model_id: str
    name: str
    tier: str  # light / medium / heavy
    parameters_billions: float
    use_cases: list[str] = field(default_factory=list)

    @property
    def parameter_count(self) -> str:
        if self.parameters_billions < 1:
            return f"{round(self.parameters_billions * 1000)}M"
        return f"{self.parameters_billions:g}B"


TIER_PENALTY = {"light": 0, "medium": 10, "heavy": 25}

CANDIDATES: list[Candidate] = [
    Candidate(
        "Qwen/Qwen2.5-0.5B-Instruct-GGUF", "Qwen2.5 0.5B Instruct", "light", 0.5,
        ["chat", "quick answers"],
    ),
    Candidate(
        "TheBloke/TinyLlama-1.1B-Chat-v1.0-GGUF", "TinyLlama 1.1B Chat", "light", 1.1,
        ["chat", "summaries"],
    ),
    Candidate(
        "bartowski/Llama-3.2-1B-Instruct-GGUF", "Llama 3.2 1B Instruct", "light", 1.2,
        ["chat", "writing"],
    ),
    Candidate(
        "microsoft/Phi-3-mini-4k-instruct-gguf", "Phi-3 Mini", "medium", 3.8,
        ["reasoning", "writing", "code"],
    ),
    Candidate(
        "bartowski/Llama-3.2-3B-Instruct-GGUF", "Llama 3.2 3B Instruct", "medium", 3.2,
        ["chat", "writing", "translation"],
    ),
    Candidate(
        "Qwen/Qwen2.5-Coder-3B-Instruct-GGUF", "Qwen2.5 Coder 3B", "medium", 3.1,
        ["code"],
    ),
    Candidate(
        "TheBloke/Mistral-7B-Instruct-v0.2-GGUF", "Mistral 7B Instruct", "heavy", 7.2,
        ["reasoning", "writing", "analysis"],
    ),
    Candidate(
        "bartowski/Meta-Llama-3.1-8B-Instruct-GGUF", "Llama 3.1 8B Instruct", "heavy", 8.0,
        ["chat", "reasoning", "code"],
    ),
]

# bits per weight
QUANTIZATION_BITS = {"int4": 4.5, "int8": 8.5}


def eligible_tiers(device_tier: PerformanceTier, ai_score: float) -> set[str]:
    tiers = {"light"}
    if device_tier in (PerformanceTier.MEDIUM, PerformanceTier.HIGH):
        tiers.add("medium")
    if device_tier == PerformanceTier.HIGH and ai_score > HEAVY_MIN_AI_SCORE:
        tiers.add("heavy")
    return tiers


def pick_quantization(accelerator: AcceleratorInfo) -> str:
    return "int4" if accelerator.supports_int4 else "int8"


def estimate_memory_mb(candidate: Candidate, quantization: str) -> int:
    weights_mb = candidate.parameters_billions * 1000 * QUANTIZATION_BITS[quantization] / 8
    # KV cache and runtime overhead
    return int(weights_mb * 1.2 + 200)


def estimate_tokens_per_second(candidate: Candidate, quantization: str, ai_score: float) -> float:
    base = 40 / max(candidate.parameters_billions, 0.1)
    if quantization == "int4":
        base *= 1.5
    return round(base * max(ai_score, 1) / 100, 1)


def estimate_battery_impact(candidate: Candidate, ai_score: float) -> str:
    load = candidate.parameters_billions * (100 - ai_score / 2) / 100
    if load < 1:
        return "low"
    if load < 3:
        return "medium"
    return "high"


class RecommendationEngine:
    """Rank fixed model candidates against a device profile."""

    def __init__(self, candidates: Optional[list[Candidate]] = None):
        self.candidates = candidates if candidates is not None else CANDIDATES

    def recommend(
        self,
        device_tier: PerformanceTier,
        ai_score: float,
        accelerator: AcceleratorInfo,
    ) -> list[ModelRecommendation]:
        """
        Args:
            device_tier: Classified device tier
            ai_score: AI capability score, 0-100
            accelerator: Detected accelerator, decides int4 vs int8

        Returns:
            Recommendations with compatibility > 30, best first
        """
        tiers = eligible_tiers(device_tier, ai_score)
        quantization = pick_quantization(accelerator)

        results = []
        for candidate in self.candidates:
            if candidate.tier not in tiers:
                continue

            compatibility = ai_score - TIER_PENALTY[candidate.tier]
            if compatibility <= MIN_COMPATIBILITY:
                continue

            results.append(
                ModelRecommendation(
                    model_id=candidate.model_id,
                    name=candidate.name,
                    tier=candidate.tier,
                    parameter_count=candidate.parameter_count,
                    quantization=quantization,
                    estimated_tokens_per_second=estimate_tokens_per_second(
                        candidate, quantization, ai_score
                    ),
                    estimated_memory_mb=estimate_memory_mb(candidate, quantization),
                    battery_impact=estimate_battery_impact(candidate, ai_score),
                    compatibility_score=round(min(compatibility, 100), 1),
                    use_cases=list(candidate.use_cases),
                )
            )

        results.sort(key=lambda r: r.compatibility_score, reverse=True)
        return results
