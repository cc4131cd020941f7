"""Multi-touch conversion attribution: model registry and calculator."""
from __future__ import annotations

from attribution.calculator import (
    AttributionCalculator,
    AttributionResult,
    AttributedTouchpoint,
    ConversionInput,
    ModelComparison,
    MultiTouchAttribution,
    compute_weights,
)
from attribution.registry import (
    AttributionModel,
    AttributionModelConfig,
    AttributionModelRegistry,
    default_models,
)

__all__ = [
    "AttributionCalculator",
    "AttributionResult",
    "AttributedTouchpoint",
    "ConversionInput",
    "ModelComparison",
    "MultiTouchAttribution",
    "compute_weights",
    "AttributionModel",
    "AttributionModelConfig",
    "AttributionModelRegistry",
    "default_models",
]
