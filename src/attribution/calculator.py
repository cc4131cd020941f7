"""
Multi-touch conversion attribution.

Splits the credit for a conversion across the touchpoints that preceded it
using one of the registered attribution models. Every model yields weights
that sum to 1; ``total_attribution`` is still clamped to 1 to absorb
floating-point drift and any future misconfigured custom model.
"""
from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from core.config import get_settings
from core.exceptions import InsufficientDataError, InvalidInputError
from core.logging_config import get_logger
from core.types import AttributionModelType, ConversionType, InteractionType, Touchpoint
from core.utils import days_between, utcnow
from attribution.registry import AttributionModel, AttributionModelRegistry

LOGGER = get_logger(__name__)

TOP_TEMPLATES_LIMIT = 5

CONVERSION_TYPE_INSIGHTS: Dict[ConversionType, str] = {
    ConversionType.SALE: "High-value conversion - focus on nurturing similar high-intent leads",
    ConversionType.APPOINTMENT: "Appointment booking - template effective for lead qualification",
    ConversionType.INQUIRY: "Initial inquiry - template successful at generating interest",
}


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True)
class AttributedTouchpoint:
    """A touchpoint with its share of the conversion."""
    template_id: str
    interaction_type: InteractionType
    timestamp: datetime
    weight: float
    attributed_value: float
    position: int


@dataclass(frozen=True)
class AttributionResult:
    """Credit assignment for one conversion under one model. Derived, never stored."""
    lead_id: str
    conversion_id: str
    conversion_type: ConversionType
    conversion_value: float
    total_attribution: float
    touchpoints: List[AttributedTouchpoint]
    model_id: str
    confidence: float
    insights: List[str] = field(default_factory=list)

    @property
    def weights(self) -> List[float]:
        return [tp.weight for tp in self.touchpoints]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lead_id": self.lead_id,
            "conversion_id": self.conversion_id,
            "conversion_type": self.conversion_type.value,
            "conversion_value": self.conversion_value,
            "total_attribution": self.total_attribution,
            "model_id": self.model_id,
            "confidence": round(self.confidence, 4),
            "insights": list(self.insights),
            "touchpoints": [
                {
                    "template_id": tp.template_id,
                    "interaction_type": tp.interaction_type.value,
                    "timestamp": tp.timestamp.isoformat(),
                    "weight": tp.weight,
                    "attributed_value": tp.attributed_value,
                    "position": tp.position,
                }
                for tp in self.touchpoints
            ],
        }


@dataclass(frozen=True)
class ConversionInput:
    """A conversion plus the touchpoints that led to it."""
    lead_id: str
    conversion_id: str
    conversion_type: Union[ConversionType, str]
    conversion_value: float
    touchpoints: Sequence[Touchpoint]


@dataclass(frozen=True)
class ModelComparison:
    """Aggregate of one model's results over a set of conversions."""
    model_id: str
    total_attributed_value: float
    average_attribution: float
    top_templates: List[Tuple[str, float]]
    conversions_attributed: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "total_attributed_value": self.total_attributed_value,
            "average_attribution": self.average_attribution,
            "top_templates": [
                {"template_id": template_id, "attributed_value": value}
                for template_id, value in self.top_templates
            ],
            "conversions_attributed": self.conversions_attributed,
        }


@dataclass(frozen=True)
class MultiTouchAttribution:
    """One conversion attributed under every active model."""
    lead_id: str
    conversion_id: str
    results: Dict[str, AttributionResult]


# =============================================================================
# Weight functions
# =============================================================================


def _first_touch(n: int, model: AttributionModel, touchpoints: Sequence[Touchpoint]) -> List[float]:
    weights = [0.0] * n
    weights[0] = 1.0
    return weights


def _last_touch(n: int, model: AttributionModel, touchpoints: Sequence[Touchpoint]) -> List[float]:
    weights = [0.0] * n
    weights[-1] = 1.0
    return weights


def _linear(n: int, model: AttributionModel, touchpoints: Sequence[Touchpoint]) -> List[float]:
    return [1.0 / n] * n


def _time_decay(n: int, model: AttributionModel, touchpoints: Sequence[Touchpoint]) -> List[float]:
    decay = model.config.effective_decay_factor
    raw = [decay ** (n - 1 - i) for i in range(n)]
    total = math.fsum(raw)
    return [w / total for w in raw]


def _position_based(n: int, model: AttributionModel, touchpoints: Sequence[Touchpoint]) -> List[float]:
    if n == 1:
        return [1.0]

    first = model.config.effective_first_weight
    last = model.config.effective_last_weight
    if n == 2:
        # No interior to absorb the remainder: scale the endpoints up to 1
        total = first + last
        return [first / total, last / total]

    middle = (1.0 - first - last) / (n - 2)
    return [first] + [middle] * (n - 2) + [last]


def _custom(n: int, model: AttributionModel, touchpoints: Sequence[Touchpoint]) -> List[float]:
    raw = [model.config.weight_for(tp.interaction_type) for tp in touchpoints]
    total = math.fsum(raw)
    if total <= 0:
        LOGGER.warning(
            f"Custom model {model.id} assigns zero weight to every touchpoint; splitting evenly",
            extra={"model_id": model.id},
        )
        return [1.0 / n] * n
    return [w / total for w in raw]


WEIGHT_FUNCTIONS: Dict[
    AttributionModelType,
    Callable[[int, AttributionModel, Sequence[Touchpoint]], List[float]],
] = {
    AttributionModelType.FIRST_TOUCH: _first_touch,
    AttributionModelType.LAST_TOUCH: _last_touch,
    AttributionModelType.LINEAR: _linear,
    AttributionModelType.TIME_DECAY: _time_decay,
    AttributionModelType.POSITION_BASED: _position_based,
    AttributionModelType.CUSTOM: _custom,
}


def compute_weights(touchpoints: Sequence[Touchpoint], model: AttributionModel) -> List[float]:
    """
    Per-touchpoint weights for a model, in touchpoint order.

    Raises:
        InsufficientDataError: If there are no touchpoints.
    """
    if not touchpoints:
        raise InsufficientDataError("Attribution requires at least one touchpoint")
    return WEIGHT_FUNCTIONS[model.type](len(touchpoints), model, touchpoints)


def _parse_conversion_type(value: Union[ConversionType, str]) -> ConversionType:
    if isinstance(value, ConversionType):
        return value
    try:
        return ConversionType(str(value).strip().lower())
    except ValueError as e:
        raise InvalidInputError(f"Unknown conversion type: {value!r}") from e


# =============================================================================
# Calculator
# =============================================================================


class AttributionCalculator:
    """Pure attribution math over a model registry."""

    def __init__(
        self,
        registry: AttributionModelRegistry,
        recent_days: Optional[int] = None,
        default_model_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self.registry = registry
        self.recent_days = recent_days or settings.attribution_recent_days
        self.default_model_id = default_model_id or settings.default_attribution_model
        self._clock = clock

    def attribute(
        self,
        lead_id: str,
        conversion_id: str,
        conversion_type: Union[ConversionType, str],
        conversion_value: float,
        touchpoints: Sequence[Touchpoint],
        model_id: Optional[str] = None,
    ) -> AttributionResult:
        """
        Attribute one conversion under one model.

        Args:
            lead_id: Lead that converted.
            conversion_id: Identifier of the conversion.
            conversion_type: sale, appointment, inquiry or engagement.
            conversion_value: Monetary value to split.
            touchpoints: Journey in chronological order.
            model_id: Registered model id. Defaults to the configured model.

        Returns:
            AttributionResult whose weights sum to ``total_attribution``.

        Raises:
            ModelNotFoundError: Unknown model id.
            InsufficientDataError: Empty touchpoint list.
            InvalidInputError: Missing identifiers or a negative value.
        """
        if not lead_id or not str(lead_id).strip():
            raise InvalidInputError("lead_id is required for attribution")
        if not conversion_id or not str(conversion_id).strip():
            raise InvalidInputError("conversion_id is required for attribution")
        if conversion_value < 0:
            raise InvalidInputError(f"conversion_value must be non-negative, got {conversion_value}")

        kind = _parse_conversion_type(conversion_type)
        model = self.registry.get(model_id or self.default_model_id)
        weights = compute_weights(touchpoints, model)
        total_attribution = min(math.fsum(weights), 1.0)

        attributed = [
            AttributedTouchpoint(
                template_id=tp.template_id,
                interaction_type=tp.interaction_type,
                timestamp=tp.timestamp,
                weight=weights[index],
                attributed_value=weights[index] * conversion_value,
                position=index + 1,
            )
            for index, tp in enumerate(touchpoints)
        ]

        result = AttributionResult(
            lead_id=lead_id,
            conversion_id=conversion_id,
            conversion_type=kind,
            conversion_value=conversion_value,
            total_attribution=total_attribution,
            touchpoints=attributed,
            model_id=model.id,
            confidence=self.confidence(touchpoints, total_attribution),
            insights=self.insights(attributed, kind),
        )

        LOGGER.debug(
            f"Attributed conversion {conversion_id} for lead {lead_id} under {model.id}",
            extra={"lead_id": lead_id, "model_id": model.id},
        )
        return result

    def confidence(self, touchpoints: Sequence[Touchpoint], total_attribution: float) -> float:
        """
        0.5 base, up to +0.3 for journey length, +0.2 x total attribution,
        up to +0.1 for recency; capped at 0.95.
        """
        now = self._clock()
        n = len(touchpoints)
        recent = sum(1 for tp in touchpoints if days_between(tp.timestamp, now) <= self.recent_days)

        confidence = 0.5
        confidence += min(n * 0.1, 0.3)
        confidence += total_attribution * 0.2
        confidence += (recent / n) * 0.1 if n else 0.0
        return min(confidence, 0.95)

    @staticmethod
    def insights(touchpoints: Sequence[AttributedTouchpoint], conversion_type: ConversionType) -> List[str]:
        insights: List[str] = []
        if not touchpoints:
            return insights

        most_influential = max(touchpoints, key=lambda tp: tp.weight)
        insights.append(
            f"Most influential touchpoint: {most_influential.interaction_type.value} "
            f"interaction with {most_influential.template_id}"
        )

        distinct = {tp.interaction_type for tp in touchpoints}
        if len(distinct) > 1:
            insights.append(f"Customer journey included {len(distinct)} different interaction types")

        if len(touchpoints) > 1:
            journey_days = days_between(touchpoints[0].timestamp, touchpoints[-1].timestamp)
            insights.append(f"Customer journey spanned {math.floor(journey_days + 0.5)} days")

        note = CONVERSION_TYPE_INSIGHTS.get(conversion_type)
        if note:
            insights.append(note)

        return insights

    # ------------------------------------------------------------------
    # Multi-model operations
    # ------------------------------------------------------------------

    def multi_touch(
        self,
        lead_id: str,
        touchpoints: Sequence[Touchpoint],
        conversion: ConversionInput,
    ) -> MultiTouchAttribution:
        """Attribute one conversion under every active model."""
        if not touchpoints:
            raise InsufficientDataError("Attribution requires at least one touchpoint")

        results: Dict[str, AttributionResult] = {}
        for model in self.registry.list_models(active_only=True):
            results[model.id] = self.attribute(
                lead_id,
                conversion.conversion_id,
                conversion.conversion_type,
                conversion.conversion_value,
                touchpoints,
                model.id,
            )

        return MultiTouchAttribution(
            lead_id=lead_id,
            conversion_id=conversion.conversion_id,
            results=results,
        )

    def compare_models(self, conversions: Sequence[ConversionInput]) -> Dict[str, ModelComparison]:
        """
        Run every active model over the same conversions and aggregate.

        Conversions that cannot be attributed (no touchpoints, bad input) are
        skipped with a warning; differences between models are expected.

        Returns:
            Mapping of model id to its ModelComparison.
        """
        comparison: Dict[str, ModelComparison] = {}

        for model in self.registry.list_models(active_only=True):
            results: List[AttributionResult] = []
            for conversion in conversions:
                try:
                    results.append(
                        self.attribute(
                            conversion.lead_id,
                            conversion.conversion_id,
                            conversion.conversion_type,
                            conversion.conversion_value,
                            conversion.touchpoints,
                            model.id,
                        )
                    )
                except (InsufficientDataError, InvalidInputError) as e:
                    LOGGER.warning(
                        f"Skipping conversion {conversion.conversion_id} under {model.id}: {e}",
                        extra={"model_id": model.id, "lead_id": conversion.lead_id},
                    )

            template_values: Dict[str, float] = defaultdict(float)
            for result in results:
                for tp in result.touchpoints:
                    template_values[tp.template_id] += tp.attributed_value

            top_templates = sorted(template_values.items(), key=lambda item: item[1], reverse=True)

            comparison[model.id] = ModelComparison(
                model_id=model.id,
                total_attributed_value=math.fsum(r.total_attribution * r.conversion_value for r in results),
                average_attribution=(
                    math.fsum(r.total_attribution for r in results) / len(results) if results else 0.0
                ),
                top_templates=top_templates[:TOP_TEMPLATES_LIMIT],
                conversions_attributed=len(results),
            )

        return comparison


__all__ = [
    "AttributionCalculator",
    "AttributionResult",
    "AttributedTouchpoint",
    "ConversionInput",
    "ModelComparison",
    "MultiTouchAttribution",
    "compute_weights",
    "WEIGHT_FUNCTIONS",
]
